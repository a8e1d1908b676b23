"""Feature flag synchronisation service."""
