"""Feature flag read endpoints backed by the synchronised flag store."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from flag_sync.services.flags import FlagStore
from flag_sync.web.api.dependencies import get_flag_store
from flag_sync.web.api.v1.flags.schemas import FlagSnapshotResponse, FlagStateResponse

router = APIRouter(prefix="/v1/flags", tags=["flags"])


def _snapshot(store: FlagStore) -> FlagSnapshotResponse:
    return FlagSnapshotResponse(flags=dict(store.flags), loading=store.loading, error=store.error)


@router.get("", response_model=FlagSnapshotResponse)
async def get_feature_flags(store: FlagStore = Depends(get_flag_store)) -> FlagSnapshotResponse:
    return _snapshot(store)


@router.post("/refresh", response_model=FlagSnapshotResponse)
async def refresh_feature_flags(store: FlagStore = Depends(get_flag_store)) -> FlagSnapshotResponse:
    """Force a refresh of the cached flags without toggling the loading state."""

    await store.refetch()
    return _snapshot(store)


@router.get("/{name}", response_model=FlagStateResponse)
async def get_feature_flag(name: str, store: FlagStore = Depends(get_flag_store)) -> FlagStateResponse:
    return FlagStateResponse(name=name, enabled=store.is_enabled(name))
