"""Async SQLite connection wrapper with WAL mode and schema initialization."""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import aiosqlite

from loom.db.schema import SCHEMA_SQL


class Database:
    """Thin async wrapper around aiosqlite with WAL mode and auto-schema.

    Every statement runs under a single lock so that a transaction opened with
    transaction() is never interleaved with (or observed by) other callers.
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls, path: str = "loom.db") -> "Database":
        """Create a connection with WAL mode, foreign keys, and schema init."""
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        db = cls(conn)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        """Execute a single SQL statement and commit."""
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            await self._conn.commit()
            return cursor

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        """Execute and return a single row."""
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        """Execute and return all rows."""
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Transaction"]:
        """Run several statements as one atomic unit.

        Commits when the block exits normally, rolls back on any exception
        and re-raises it.
        """
        async with self._lock:
            tx = Transaction(self._conn)
            try:
                yield tx
            except BaseException:
                await self._conn.rollback()
                raise
            else:
                await self._conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        await self._conn.close()


class Transaction:
    """Statement executor bound to an open transaction. Never commits."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params or ())

    async def executemany(self, sql: str, params: Iterable[tuple]) -> None:
        await self._conn.executemany(sql, params)
