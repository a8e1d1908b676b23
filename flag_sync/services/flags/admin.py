"""Administrative operations on the feature flag table."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flag_sync.db.models.feature_flags import FeatureFlag
from flag_sync.observability import FLAG_ADMIN_WRITES
from flag_sync.services.flags.feed import ChangeFeed, FlagChangeEvent


class FlagAdminService:
    """CRUD helpers for flags; every committed write is announced on the feed."""

    def __init__(self, session: AsyncSession, feed: ChangeFeed | None = None) -> None:
        self._session = session
        self._feed = feed

    async def list_flags(self) -> list[FeatureFlag]:
        result = await self._session.execute(select(FeatureFlag).order_by(FeatureFlag.name))
        return list(result.scalars().all())

    async def get_flag(self, flag_id: int) -> FeatureFlag | None:
        return await self._session.get(FeatureFlag, flag_id)

    async def get_flag_by_name(self, name: str) -> FeatureFlag | None:
        result = await self._session.execute(select(FeatureFlag).where(FeatureFlag.name == name))
        return result.scalar_one_or_none()

    async def create_flag(
        self,
        name: str,
        description: str | None = None,
        enabled: bool = False,
    ) -> FeatureFlag:
        name = name.strip()
        if not name:
            raise ValueError("invalid_flag_name")
        if await self.get_flag_by_name(name) is not None:
            raise ValueError("flag_name_exists")

        flag = FeatureFlag(name=name, description=description, enabled=enabled)
        self._session.add(flag)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent create of the same name
            await self._session.rollback()
            raise ValueError("flag_name_exists") from exc
        await self._committed(flag, "INSERT")
        logger.info("Created feature flag {} enabled={}", flag.name, flag.enabled)
        return flag

    async def update_flag(
        self,
        flag_id: int,
        *,
        enabled: bool | None = None,
        description: str | None = None,
    ) -> FeatureFlag:
        flag = await self._require(flag_id)
        if enabled is not None:
            flag.enabled = enabled
        if description is not None:
            flag.description = description
        await self._commit(flag, "UPDATE")
        logger.info("Updated feature flag {} enabled={}", flag.name, flag.enabled)
        return flag

    async def set_enabled(self, flag_id: int, enabled: bool) -> FeatureFlag:
        return await self.update_flag(flag_id, enabled=enabled)

    async def toggle(self, flag_id: int) -> FeatureFlag:
        flag = await self._require(flag_id)
        return await self.update_flag(flag_id, enabled=not flag.enabled)

    async def delete_flag(self, flag_id: int) -> None:
        flag = await self._require(flag_id)
        name = flag.name
        await self._session.delete(flag)
        await self._session.commit()
        FLAG_ADMIN_WRITES.labels(operation="DELETE").inc()
        logger.info("Deleted feature flag {}", name)
        await self._announce(FlagChangeEvent(event="DELETE", name=name))

    async def _require(self, flag_id: int) -> FeatureFlag:
        flag = await self.get_flag(flag_id)
        if flag is None:
            raise LookupError("flag_not_found")
        return flag

    async def _commit(self, flag: FeatureFlag, operation: str) -> None:
        await self._session.commit()
        await self._committed(flag, operation)

    async def _committed(self, flag: FeatureFlag, operation: str) -> None:
        await self._session.refresh(flag)
        FLAG_ADMIN_WRITES.labels(operation=operation).inc()
        await self._announce(FlagChangeEvent(event=operation, name=flag.name))

    async def _announce(self, event: FlagChangeEvent) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.publish(event)
        except Exception as exc:
            # The write is committed, subscribers catch up on their next refresh
            logger.warning("Failed to publish flag change {} for {}: {}", event.event, event.name, exc)
