"""Async SQLite wrapper used to read and produce Format B databases."""

import os
import tempfile
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

import aiosqlite


class Database:
    """Thin async wrapper around aiosqlite with optional schema bootstrap."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def connect(cls, path: str = ":memory:", schema: str | None = None) -> "Database":
        """Open a connection with foreign keys on, applying schema when given."""
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        db = cls(conn)
        if schema:
            await db._ensure_schema(schema)
        return db

    @classmethod
    @asynccontextmanager
    async def open_bytes(cls, data: bytes) -> AsyncIterator["Database"]:
        """Open a database image held in memory. The scratch copy is removed on exit."""
        with tempfile.TemporaryDirectory(prefix="cherrikka-db-") as tmp:
            path = os.path.join(tmp, "source.db")
            with open(path, "wb") as fh:
                fh.write(data)
            db = await cls.connect(path)
            try:
                yield db
            finally:
                await db.close()

    async def _ensure_schema(self, schema: str) -> None:
        """Create tables if they don't exist. Idempotent."""
        await self._conn.executescript(schema)
        await self._conn.commit()

    async def execute(self, sql: str, params: tuple | None = None) -> aiosqlite.Cursor:
        """Execute a single SQL statement."""
        cursor = await self._conn.execute(sql, params or ())
        await self._conn.commit()
        return cursor

    async def executemany(self, sql: str, rows: Iterable[tuple]) -> None:
        """Execute one statement for every parameter tuple, in one transaction."""
        await self._conn.executemany(sql, list(rows))
        await self._conn.commit()

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        """Execute and return a single row."""
        cursor = await self._conn.execute(sql, params or ())
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        """Execute and return all rows."""
        cursor = await self._conn.execute(sql, params or ())
        return list(await cursor.fetchall())

    async def table_exists(self, name: str) -> bool:
        row = await self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
        )
        return row is not None

    async def export_bytes(self) -> bytes:
        """Serialize the whole database to a standalone SQLite file image."""
        await self._conn.commit()
        with tempfile.TemporaryDirectory(prefix="cherrikka-db-") as tmp:
            path = os.path.join(tmp, "export.db")
            await self._conn.execute("VACUUM INTO ?", (path,))
            with open(path, "rb") as fh:
                return fh.read()

    async def close(self) -> None:
        """Close the database connection."""
        await self._conn.close()
