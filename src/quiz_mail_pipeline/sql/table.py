# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class with Columns-based schema (async version)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from .column import Columns

if TYPE_CHECKING:
    from .base import DbAdapter


class Table:
    """Base class for async table managers.

    Subclasses define columns and indexes in :meth:`configure` and implement
    the domain-specific statements of their owner.

    Attributes:
        name: Table name in database.
        adapter: Database adapter used for every statement.
        columns: Column definitions.
        indexes: ``(index_name, "col1, col2")`` pairs created with the table.
    """

    name: str

    def __init__(self, adapter: DbAdapter) -> None:
        self.adapter = adapter
        if not getattr(self, "name", None):
            raise ValueError(f"{type(self).__name__} must define 'name'")
        self.columns = Columns()
        self.indexes: list[tuple[str, str]] = []
        self.configure()

    def configure(self) -> None:
        """Override to define columns. Called during __init__."""

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def create_table_sql(self) -> str:
        """Generate CREATE TABLE IF NOT EXISTS statement."""
        col_defs = [col.to_sql(self.adapter.epoch_type) for col in self.columns.values()]
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    " + ",\n    ".join(col_defs) + "\n)"

    async def create_schema(self) -> None:
        """Create table and indexes if they do not exist."""
        await self.adapter.execute(self.create_table_sql())
        for index_name, cols in self.indexes:
            await self.adapter.execute(
                f"CREATE INDEX IF NOT EXISTS {index_name} ON {self.name} ({cols})"
            )

    # -------------------------------------------------------------------------
    # JSON Encoding/Decoding
    # -------------------------------------------------------------------------

    def _encode_json_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        result = dict(data)
        for col_name in self.columns.json_columns():
            if result.get(col_name) is not None and not isinstance(result[col_name], str):
                result[col_name] = json.dumps(result[col_name])
        return result

    def _decode_json_fields(self, row: dict[str, Any]) -> dict[str, Any]:
        result = dict(row)
        for col_name in self.columns.json_columns():
            value = result.get(col_name)
            if isinstance(value, str):
                try:
                    result[col_name] = json.loads(value)
                except json.JSONDecodeError:
                    pass  # plain text stored in a JSON column is returned as-is
        return result

    # -------------------------------------------------------------------------
    # Generic statements
    # -------------------------------------------------------------------------

    async def insert(self, data: dict[str, Any]) -> int:
        """Insert one row. Unknown keys are rejected."""
        unknown = set(data) - set(self.columns)
        if unknown:
            raise ValueError(f"Unknown columns for {self.name}: {sorted(unknown)}")
        record = self._encode_json_fields(data)
        cols = ", ".join(record)
        placeholders = ", ".join(f":{c}" for c in record)
        return await self.adapter.execute(
            f"INSERT INTO {self.name} ({cols}) VALUES ({placeholders})", record
        )

    async def insert_many(self, rows: list[dict[str, Any]]) -> int:
        """Insert several rows sharing the same keys in one statement.

        Either every row is stored or none is.
        """
        if not rows:
            return 0
        cols = list(rows[0])
        unknown = set(cols) - set(self.columns)
        if unknown:
            raise ValueError(f"Unknown columns for {self.name}: {sorted(unknown)}")
        params: dict[str, Any] = {}
        groups: list[str] = []
        for i, data in enumerate(rows):
            if list(data) != cols:
                raise ValueError(f"Rows for {self.name} must share the same columns")
            record = self._encode_json_fields(data)
            params.update({f"{c}_{i}": record[c] for c in cols})
            groups.append("(" + ", ".join(f":{c}_{i}" for c in cols) + ")")
        return await self.adapter.execute(
            f"INSERT INTO {self.name} ({', '.join(cols)}) VALUES {', '.join(groups)}", params
        )

    async def select(
        self,
        where: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching equality filters (``None`` values are skipped)."""
        conditions: list[str] = []
        params: dict[str, Any] = {}
        for key, value in (where or {}).items():
            if value is None:
                continue
            if key not in self.columns:
                raise ValueError(f"Unknown column for {self.name}: {key}")
            conditions.append(f"{key} = :{key}")
            params[key] = value
        query = f"SELECT * FROM {self.name}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = int(limit)
            if offset:
                query += " OFFSET :offset"
                params["offset"] = int(offset)
        rows = await self.adapter.fetch_all(query, params)
        return [self._decode_json_fields(row) for row in rows]

    async def select_one(self, where: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self.select(where, limit=1)
        return rows[0] if rows else None

    async def count_by_status(self) -> dict[str, int]:
        """Return ``{status: count}`` for tables carrying a status column."""
        rows = await self.adapter.fetch_all(
            f"SELECT status, COUNT(*) AS cnt FROM {self.name} GROUP BY status"
        )
        return {row["status"]: int(row["cnt"]) for row in rows}
