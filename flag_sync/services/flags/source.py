"""Remote sources the flag store reads its snapshot from."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flag_sync.db.models.feature_flags import FeatureFlag


class FlagSource(Protocol):
    """Anything able to return every flag row projected to ``(name, enabled)``."""

    async def fetch_rows(self) -> Sequence[Mapping[str, Any]]:
        ...


class SqlFlagSource:
    """Read the ``feature_flags`` table through a session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_rows(self) -> list[dict[str, Any]]:
        stmt = select(FeatureFlag.name, FeatureFlag.enabled).order_by(FeatureFlag.name)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [dict(row) for row in result.mappings()]


class RedisFlagSource:
    """Read flags mirrored into a Redis hash of ``name -> "1" | "0"``."""

    def __init__(self, redis: Redis, key: str = "feature_flags") -> None:
        self._redis = redis
        self._key = key

    async def fetch_rows(self) -> list[dict[str, Any]]:
        raw = await self._redis.hgetall(self._key)
        rows = []
        for key, value in raw.items():
            name = key.decode() if isinstance(key, bytes) else str(key)
            text = value.decode() if isinstance(value, bytes) else str(value)
            # Anything other than "1"/"0" is passed through and dropped by the store
            enabled: Any = {"1": True, "0": False}.get(text, text)
            rows.append({"name": name, "enabled": enabled})
        rows.sort(key=lambda row: row["name"])
        return rows

    async def mirror(self, flags: Mapping[str, bool]) -> None:
        """Replace the hash contents with ``flags``."""

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key)
            if flags:
                pipe.hset(self._key, mapping={name: "1" if value else "0" for name, value in flags.items()})
            await pipe.execute()
