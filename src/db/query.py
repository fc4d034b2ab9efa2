"""Parameterized query helpers returning dict rows.

Values are always passed through `params`; nothing user-supplied is interpolated into SQL text.
"""

from __future__ import annotations

from typing import Any, LiteralString, cast

from psycopg import AsyncConnection
from psycopg.rows import dict_row


async def fetch_one(
        conn: AsyncConnection, sql: str, params: tuple[Any, ...] = ()
) -> dict[str, Any] | None:
    """Execute a query and return its first row as a dict (or `None`)."""

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(cast(LiteralString, sql), params)
        return await cur.fetchone()


async def fetch_all(conn: AsyncConnection, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(cast(LiteralString, sql), params)
        return await cur.fetchall()


async def execute(conn: AsyncConnection, sql: str, params: tuple[Any, ...] = ()) -> int:
    """Execute a statement and return the affected row count."""

    async with conn.cursor() as cur:
        await cur.execute(cast(LiteralString, sql), params)
        return cur.rowcount
