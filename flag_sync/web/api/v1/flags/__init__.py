"""Feature flag read API."""
