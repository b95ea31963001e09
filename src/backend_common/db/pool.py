"""Process-wide asyncpg connection pool."""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import asyncpg  # type: ignore[import-untyped]

pool: asyncpg.Pool | None = None


class SettingsProtocol(Protocol):
    database_url: Any
    db_pool_size: int


async def init_pool(database_url: str, pool_size: int) -> None:
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(dsn=database_url, max_size=pool_size)


async def close_pool(_app: Any = None) -> None:
    global pool
    if pool is not None:
        await pool.close()
        pool = None


async def get_pool() -> asyncpg.Pool:
    """Return the initialized pool (raises if the service did not start it)."""
    if pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    return pool


def create_pool_hooks(
    settings: SettingsProtocol,
) -> tuple[Callable[[Any], Awaitable[None]], Callable[[Any], Awaitable[None]]]:
    """Build ``on_startup`` / ``on_cleanup`` hooks bound to service settings."""

    async def on_startup(_app: Any = None) -> None:
        await init_pool(str(settings.database_url), settings.db_pool_size)

    async def on_cleanup(_app: Any = None) -> None:
        await close_pool(_app)

    return on_startup, on_cleanup
