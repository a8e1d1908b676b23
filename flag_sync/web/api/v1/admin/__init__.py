"""Feature flag administration API."""
