from sqlalchemy.orm import DeclarativeBase

from flag_sync.db.meta import meta


class Base(DeclarativeBase):
    """Base for all models."""

    metadata = meta
