# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from typing import Any

import aiosqlite

from .base import DbAdapter


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens a connection per operation.

    Each statement commits on its own, so two jobs working on the same file
    only ever see each other's committed rows.
    """

    def __init__(self, db_path: str, busy_timeout: float = 10.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. ``:memory:`` is rejected because every
                operation would see a fresh empty database.
            busy_timeout: Seconds to wait for a competing writer's lock.
        """
        if not db_path or db_path == ":memory:":
            raise ValueError("SQLite adapter requires a file path (per-operation connections)")
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    async def connect(self) -> None:
        """No-op: connections are opened per operation."""

    async def close(self) -> None:
        """No-op: connections are closed per operation."""

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout)

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute a statement and commit, return affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return first row as dict or None."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                return dict(row) if row is not None else None

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (schema creation)."""
        async with self._connect() as db:
            await db.executescript(script)
            await db.commit()
