"""flag_sync API package."""
