"""Services for flag_sync."""
