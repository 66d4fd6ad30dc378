# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Key/value settings store shared with the admin UI."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..sql import Epoch, String, Table


class AppSettingsTable(Table):
    """app_settings: operator-editable key/value pairs (sender, SMTP, API key)."""

    name = "app_settings"

    def configure(self) -> None:
        c = self.columns
        c.column("setting_key", String, primary_key=True)
        c.column("setting_value", String)
        c.column("updated_at", Epoch)

    async def get(self, key: str, default: str | None = None) -> str | None:
        row = await self.select_one({"setting_key": key})
        if row is None or row["setting_value"] is None:
            return default
        return row["setting_value"]

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        placeholders, params = self.adapter.expand_in("key", keys)
        rows = await self.adapter.fetch_all(
            f"SELECT setting_key, setting_value FROM app_settings WHERE setting_key IN ({placeholders})",
            params,
        )
        return {row["setting_key"]: row["setting_value"] for row in rows}

    async def get_all(self) -> dict[str, Any]:
        rows = await self.adapter.fetch_all(
            "SELECT setting_key, setting_value FROM app_settings ORDER BY setting_key"
        )
        return {row["setting_key"]: row["setting_value"] for row in rows}

    async def set(self, key: str, value: str | None, *, now_ts: int) -> None:
        """Insert or update a setting."""
        await self.adapter.execute(
            """
            INSERT INTO app_settings (setting_key, setting_value, updated_at)
            VALUES (:key, :value, :now_ts)
            ON CONFLICT (setting_key) DO UPDATE SET
                setting_value = excluded.setting_value,
                updated_at = excluded.updated_at
            """,
            {"key": key, "value": value, "now_ts": now_ts},
        )


__all__ = ["AppSettingsTable"]
