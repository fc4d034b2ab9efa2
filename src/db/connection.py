"""Shared Postgres connection helpers.

Ledger timestamps are stored as `TIMESTAMPTZ` and compared in UTC, so every DB session (sync or
pooled async) is locked to the UTC timezone.
"""

from __future__ import annotations

import os

import psycopg
from psycopg import AsyncConnection


def require_database_url() -> str:
    """Read `DATABASE_URL` from the environment or raise a clear error."""

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required (set it in .env or environment)")
    return database_url


def connect_utc(database_url: str) -> psycopg.Connection:
    """Connect to Postgres and lock the session timezone to UTC."""

    conn = psycopg.connect(database_url)
    conn.execute("SET TIME ZONE 'UTC'", prepare=False)
    return conn


async def ensure_utc(conn: AsyncConnection) -> None:
    """Ensure the current async session timezone is set to UTC."""

    async with conn.cursor() as cur:
        await cur.execute("SET TIME ZONE 'UTC'", prepare=False)
    # `SET` starts a transaction when autocommit is disabled; commit so the pool doesn't see INTRANS.
    await conn.commit()
