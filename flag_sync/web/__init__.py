"""WEB API for flag_sync."""
