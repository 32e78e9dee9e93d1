"""
The long-lived handle over the embedded key-value database.

One sqlite file holds the three keyspaces (objects, nodes and history).
The handle is opened once at startup, passed to every component that needs
it and closed at shutdown.
"""
import logging
import os
import sqlite3
from typing import Any, Iterable, Optional

import aiosqlite

from ..errors import StoreIOError

logger = logging.getLogger(__name__)

DB_FILENAME = "store.db"


class Database:
    path: str
    conn: Optional[aiosqlite.Connection]

    def __init__(self, path: str):
        self.path = path
        self.conn = None

    @classmethod
    async def open(cls, directory: str) -> "Database":
        """Open (creating if needed) the database inside ``directory``."""
        db = cls(os.path.join(directory, DB_FILENAME))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"cannot create database directory {directory}: {e}") from e
        await db.initialize()
        return db

    async def initialize(self) -> None:
        logger.info(f"opening db at {self.path}")
        try:
            # isolation_level=None: every statement commits before it returns
            self.conn = await aiosqlite.connect(self.path, isolation_level=None)
            await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.conn.execute("PRAGMA synchronous = FULL")
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS objects (
                    hash TEXT NOT NULL PRIMARY KEY,
                    data BLOB NOT NULL
                )
            """)
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS nodes (
                    id TEXT NOT NULL PRIMARY KEY,
                    node TEXT NOT NULL
                )
            """)
            await self.conn.execute("""
                CREATE TABLE IF NOT EXISTS history (
                    sequence INTEGER NOT NULL PRIMARY KEY,
                    ts INTEGER NOT NULL,
                    tree TEXT NOT NULL,
                    parent INTEGER
                )
            """)
        except (sqlite3.Error, OSError) as e:
            raise StoreIOError(f"cannot open database {self.path}: {e}") from e

    async def close(self) -> None:
        if self.conn is not None:
            logger.info(f"closing db at {self.path}")
            await self.conn.close()
            self.conn = None

    async def __aenter__(self) -> "Database":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _connection(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise StoreIOError(f"database {self.path} is closed")
        return self.conn

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement and return the number of rows it changed."""
        try:
            cursor = await self._connection().execute(sql, tuple(params))
            count = cursor.rowcount
            await cursor.close()
            return count
        except sqlite3.Error as e:
            raise StoreIOError(f"database write failed: {e}") from e

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[tuple]:
        try:
            async with self._connection().execute(sql, tuple(params)) as cursor:
                row = await cursor.fetchone()
                return tuple(row) if row is not None else None
        except sqlite3.Error as e:
            raise StoreIOError(f"database read failed: {e}") from e

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[tuple]:
        try:
            async with self._connection().execute(sql, tuple(params)) as cursor:
                return [tuple(row) for row in await cursor.fetchall()]
        except sqlite3.Error as e:
            raise StoreIOError(f"database read failed: {e}") from e
