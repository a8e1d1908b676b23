"""Administrative endpoints for the feature flag table."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from flag_sync.db.dependencies import get_db_session
from flag_sync.services.flags import ChangeFeed, FlagAdminService
from flag_sync.web.api.dependencies import get_change_feed, require_admin_secret
from flag_sync.web.api.v1.admin.schemas import (
    FeatureFlagCreateRequest,
    FeatureFlagList,
    FeatureFlagRead,
    FeatureFlagUpdateRequest,
)

router = APIRouter(
    prefix="/v1/admin/flags",
    tags=["admin"],
    dependencies=[Depends(require_admin_secret)],
)

_ERROR_STATUS = {
    "flag_not_found": status.HTTP_404_NOT_FOUND,
    "flag_name_exists": status.HTTP_409_CONFLICT,
    "invalid_flag_name": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def _as_http_error(exc: Exception) -> HTTPException:
    detail = exc.args[0] if exc.args else "flag_error"
    return HTTPException(status_code=_ERROR_STATUS.get(detail, status.HTTP_400_BAD_REQUEST), detail=detail)


def _service(
    session: AsyncSession = Depends(get_db_session),
    feed: ChangeFeed | None = Depends(get_change_feed),
) -> FlagAdminService:
    return FlagAdminService(session, feed)


@router.get("", response_model=FeatureFlagList)
async def list_feature_flags(service: FlagAdminService = Depends(_service)) -> FeatureFlagList:
    flags = await service.list_flags()
    return FeatureFlagList(flags=[FeatureFlagRead.model_validate(flag) for flag in flags])


@router.post("", response_model=FeatureFlagRead, status_code=status.HTTP_201_CREATED)
async def create_feature_flag(
    payload: FeatureFlagCreateRequest,
    service: FlagAdminService = Depends(_service),
) -> FeatureFlagRead:
    try:
        flag = await service.create_flag(payload.name, payload.description, payload.enabled)
    except ValueError as exc:
        raise _as_http_error(exc) from exc
    return FeatureFlagRead.model_validate(flag)


@router.patch("/{flag_id}", response_model=FeatureFlagRead)
async def update_feature_flag(
    flag_id: int,
    payload: FeatureFlagUpdateRequest,
    service: FlagAdminService = Depends(_service),
) -> FeatureFlagRead:
    try:
        flag = await service.update_flag(flag_id, enabled=payload.enabled, description=payload.description)
    except LookupError as exc:
        raise _as_http_error(exc) from exc
    return FeatureFlagRead.model_validate(flag)


@router.post("/{flag_id}/toggle", response_model=FeatureFlagRead)
async def toggle_feature_flag(
    flag_id: int,
    service: FlagAdminService = Depends(_service),
) -> FeatureFlagRead:
    try:
        flag = await service.toggle(flag_id)
    except LookupError as exc:
        raise _as_http_error(exc) from exc
    return FeatureFlagRead.model_validate(flag)


@router.delete("/{flag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_feature_flag(
    flag_id: int,
    service: FlagAdminService = Depends(_service),
) -> Response:
    try:
        await service.delete_flag(flag_id)
    except LookupError as exc:
        raise _as_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
