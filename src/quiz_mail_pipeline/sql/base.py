# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    Queries use ``:name`` placeholders; adapters translate them to the
    driver's own paramstyle. Every call runs in its own short transaction,
    so a single statement is the unit of atomicity the pipeline relies on.

    Attributes:
        epoch_type: Column type used for Unix epoch timestamps.
    """

    epoch_type = "INTEGER"

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection (or pool)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release database resources."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute a statement, return affected row count."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return first row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute several ``;``-separated statements (schema creation)."""
        ...

    async def fetch_value(
        self, query: str, params: dict[str, Any] | None = None, default: Any = None
    ) -> Any:
        """Return the first column of the first row, or ``default``."""
        row = await self.fetch_one(query, params)
        if not row:
            return default
        return next(iter(row.values()))

    @staticmethod
    def expand_in(prefix: str, values: list[Any]) -> tuple[str, dict[str, Any]]:
        """Build a ``:p_0, :p_1`` placeholder list and its params for ``IN`` clauses."""
        params = {f"{prefix}_{i}": value for i, value in enumerate(values)}
        placeholders = ", ".join(f":{prefix}_{i}" for i in range(len(values)))
        return placeholders, params
