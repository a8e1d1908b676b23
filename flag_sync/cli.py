"""Command-line helpers for administering feature flags."""

from __future__ import annotations

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from redis.asyncio import ConnectionPool, Redis

from flag_sync.db.utils import create_engine, create_session_factory, create_tables
from flag_sync.services.flags import (
    ChangeFeed,
    FlagAdminService,
    RedisFlagSource,
    SqlFlagSource,
    build_change_feed,
    build_snapshot,
)
from flag_sync.services.rabbit.lifespan import create_rabbit_pools
from flag_sync.settings import settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flag-sync",
        description="Administrative commands for feature flags",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init-db", help="Create the feature flag table")
    init_parser.set_defaults(handler=_handle_init_db)

    list_parser = subparsers.add_parser("list", help="List every feature flag")
    list_parser.set_defaults(handler=_handle_list)

    create_parser = subparsers.add_parser("create", help="Create a feature flag")
    create_parser.add_argument("name", help="Unique flag name")
    create_parser.add_argument("--description", help="Optional description")
    create_parser.add_argument("--enabled", action="store_true", help="Create the flag enabled")
    create_parser.set_defaults(handler=_handle_create)

    set_parser = subparsers.add_parser("set", help="Enable or disable an existing flag")
    set_parser.add_argument("name", help="Flag name")
    state = set_parser.add_mutually_exclusive_group(required=True)
    state.add_argument("--on", dest="enabled", action="store_true", help="Enable the flag")
    state.add_argument("--off", dest="enabled", action="store_false", help="Disable the flag")
    set_parser.set_defaults(handler=_handle_set)

    mirror_parser = subparsers.add_parser("mirror", help="Copy the flag table into a Redis hash")
    mirror_parser.add_argument("--key", default="feature_flags", help="Redis hash key")
    mirror_parser.set_defaults(handler=_handle_mirror)

    return parser


@asynccontextmanager
async def _open_feed() -> AsyncIterator[ChangeFeed | None]:
    """Open the configured change feed; the in-memory feed has no listeners here."""

    backend = settings.flags_feed_backend
    if backend == "memory":
        yield None
        return
    if backend == "redis":
        pool = ConnectionPool.from_url(str(settings.redis_url))
        try:
            yield build_change_feed(backend, redis_pool=pool)
        finally:
            await pool.disconnect()
        return
    rabbit_pools = create_rabbit_pools()
    try:
        yield build_change_feed(backend, rabbit_pools=rabbit_pools)
    finally:
        await rabbit_pools[1].close()
        await rabbit_pools[0].close()


async def _handle_init_db(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    print("Created feature flag table")
    return 0


async def _handle_list(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        async with create_session_factory(engine)() as session:
            flags = await FlagAdminService(session).list_flags()
    finally:
        await engine.dispose()
    if not flags:
        print("No feature flags")
    for flag in flags:
        print(f"{flag.name}\t{'on' if flag.enabled else 'off'}\t{flag.description or ''}")
    return 0


async def _handle_create(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        async with _open_feed() as feed, create_session_factory(engine)() as session:
            service = FlagAdminService(session, feed)
            flag = await service.create_flag(args.name, args.description, args.enabled)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()
    print("Created", f"id={flag.id}", f"name={flag.name}", f"enabled={flag.enabled}")
    return 0


async def _handle_set(args: argparse.Namespace) -> int:
    engine = create_engine()
    try:
        async with _open_feed() as feed, create_session_factory(engine)() as session:
            service = FlagAdminService(session, feed)
            flag = await service.get_flag_by_name(args.name)
            if flag is None:
                print(f"Error: unknown flag {args.name}", file=sys.stderr)
                return 1
            flag = await service.set_enabled(flag.id, args.enabled)
    finally:
        await engine.dispose()
    print("Updated", f"name={flag.name}", f"enabled={flag.enabled}")
    return 0


async def _handle_mirror(args: argparse.Namespace) -> int:
    engine = create_engine()
    redis = Redis.from_url(str(settings.redis_url))
    try:
        rows = await SqlFlagSource(create_session_factory(engine)).fetch_rows()
        flags = build_snapshot(rows)
        await RedisFlagSource(redis, args.key).mirror(flags)
    finally:
        await redis.aclose()
        await engine.dispose()
    print("Mirrored", f"flags={len(flags)}", f"key={args.key}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1
    return asyncio.run(handler(args))


if __name__ == "__main__":  # pragma: no cover - manual execution guard
    raise SystemExit(main())
