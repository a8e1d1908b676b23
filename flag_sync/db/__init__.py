"""Database utilities and models."""
