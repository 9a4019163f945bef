"""PostgreSQL access: the shared async pool, query helpers, LISTEN and schema setup.

Rows come back as dicts (``dict_row``) so they feed straight into the pydantic
records in ``codeshare.models``.
"""

from __future__ import annotations

import contextlib
import re
from collections.abc import AsyncIterator
from typing import Any

import psycopg
import psycopg.rows
import psycopg_pool
from psycopg import sql

from codeshare.config import SCHEMA_PATH, settings

Params = tuple[Any, ...] | dict[str, Any] | None
Row = dict[str, Any]

_CHANNEL_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_pool: psycopg_pool.AsyncConnectionPool | None = None


async def init_pool(min_size: int = 2, max_size: int = 10, conninfo: str | None = None) -> psycopg_pool.AsyncConnectionPool:
    """Open the process-wide pool. Calling it again returns the open pool."""
    global _pool
    if _pool is None:
        pool = psycopg_pool.AsyncConnectionPool(
            conninfo=conninfo or settings.database_url,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": psycopg.rows.dict_row},
            open=False,
        )
        await pool.open()
        _pool = pool
    return _pool


async def close_pool() -> None:
    global _pool
    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()


@contextlib.asynccontextmanager
async def _cursor() -> AsyncIterator[psycopg.AsyncCursor[Row]]:
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    # The pool commits on clean exit and rolls back on error.
    async with _pool.connection() as conn, conn.cursor() as cur:
        yield cur


async def execute(query: str, params: Params = None) -> list[Row]:
    """Run ``query``; all result rows, or [] for statements without a result."""
    async with _cursor() as cur:
        await cur.execute(query, params)
        return await cur.fetchall() if cur.description is not None else []


async def execute_one(query: str, params: Params = None) -> Row | None:
    """Run ``query``; the first result row, if any."""
    async with _cursor() as cur:
        await cur.execute(query, params)
        return await cur.fetchone() if cur.description is not None else None


@contextlib.asynccontextmanager
async def listen_conn(channel: str) -> AsyncIterator[psycopg.AsyncConnection[Any]]:
    """Dedicated autocommit connection LISTENing on ``channel``.

    Not taken from the pool: it is held for as long as the change feed runs.
    """
    async with await psycopg.AsyncConnection.connect(settings.database_url, autocommit=True) as conn:
        await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(channel)))
        yield conn


def render_schema(channel: str | None = None) -> str:
    """schema.sql with the NOTIFY channel filled in.

    The triggers must notify on the channel ``PostgresChangeFeed`` listens on,
    so both read ``settings.realtime_channel``.
    """
    channel = channel or settings.realtime_channel
    if not _CHANNEL_NAME.match(channel):
        raise ValueError(f"Invalid realtime channel name: {channel!r}")
    return SCHEMA_PATH.read_text().replace("{realtime_channel}", channel)


def apply_schema(channel: str | None = None) -> None:
    """Create or update tables, functions and triggers (idempotent). Used by the CLI."""
    with psycopg.connect(settings.database_url) as conn:
        conn.execute(render_schema(channel))
