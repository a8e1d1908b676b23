"""Reusable API dependencies for flag reads and admin access."""

from __future__ import annotations

import secrets
from typing import Callable

from fastapi import Depends, Header, HTTPException, Request, status
from loguru import logger

from flag_sync.services.flags import ChangeFeed, FlagStore
from flag_sync.settings import settings


def get_flag_store(request: Request) -> FlagStore:
    """Return the application's flag store; all flag reads go through it."""

    return request.app.state.flag_store


def get_change_feed(request: Request) -> ChangeFeed | None:
    return getattr(request.app.state, "flag_change_feed", None)


def require_admin_secret(
    x_admin_secret: str | None = Header(default=None, alias="X-Admin-Secret"),
) -> None:
    """Guard admin endpoints with the shared secret from settings."""

    if not settings.admin_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="admin_not_configured")
    if x_admin_secret is None or not secrets.compare_digest(x_admin_secret, settings.admin_secret):
        logger.warning("Rejected admin request with an invalid secret")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_admin_secret")


def require_feature(name: str) -> Callable[[FlagStore], None]:
    """
    Build a dependency rejecting requests while feature ``name`` is disabled.

    Unknown flags and a store that is still loading both count as disabled.

    :param name: flag name.
    :return: dependency callable.
    """

    def dependency(store: FlagStore = Depends(get_flag_store)) -> None:
        if not store.is_enabled(name):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="feature_disabled")

    return dependency
