# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email logs table manager: append-only delivery audit trail."""

from __future__ import annotations

from typing import Any

from ..models import LeadRef, LogStatus, new_id
from ..sql import Epoch, Integer, String, Table


class EmailLogsTable(Table):
    """Email logs: one row per terminal send outcome.

    Rows are inserted and read; nothing in the pipeline updates or deletes
    them. A manual resend produces a new row pointing back through
    ``original_log_id``.
    """

    name = "email_logs"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("email_type", String, nullable=False)
        c.column("recipient_email", String, nullable=False)
        c.column("sender_email", String)
        c.column("sender_name", String)
        c.column("subject", String)
        c.column("status", String, nullable=False)
        c.column("provider_message_id", String)
        c.column("error_message", String)
        c.column("language", String)
        c.column("quiz_id", String)
        c.column("quiz_lead_id", String)
        c.column("hypothesis_lead_id", String)
        c.column("original_log_id", String)
        c.column("html_body", String)
        c.column("resend_attempts", Integer, nullable=False, default=0)
        c.column("created_at", Epoch, nullable=False)
        self.indexes = [
            ("idx_email_logs_quiz_lead", "quiz_lead_id, status"),
            ("idx_email_logs_hypothesis_lead", "hypothesis_lead_id, status"),
            ("idx_email_logs_created", "created_at"),
        ]

    async def append(self, entry: dict[str, Any], *, now_ts: int) -> str:
        """Insert an audit row. Returns its id."""
        record = {key: value for key, value in entry.items() if key != "lead"}
        record.setdefault("id", new_id())
        record.setdefault("created_at", now_ts)
        record.setdefault("resend_attempts", 0)
        lead = entry.get("lead")
        if isinstance(lead, LeadRef):
            record.update(lead.as_columns())
        await self.insert(record)
        return record["id"]

    async def has_status(
        self, lead: LeadRef, status: str, email_type: str | None = None
    ) -> bool:
        query = f"SELECT id FROM email_logs WHERE {lead.column} = :lead_id AND status = :status"
        params: dict[str, Any] = {"lead_id": lead.lead_id, "status": status}
        if email_type:
            query += " AND email_type = :email_type"
            params["email_type"] = email_type
        row = await self.adapter.fetch_one(query + " LIMIT 1", params)
        return row is not None

    async def has_sent(self, lead: LeadRef, email_type: str | None = None) -> bool:
        return await self.has_status(lead, LogStatus.SENT.value, email_type)

    async def get(self, log_id: str) -> dict[str, Any] | None:
        return await self.select_one({"id": log_id})

    async def list_entries(
        self,
        *,
        status: str | None = None,
        email_type: str | None = None,
        recipient: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Audit rows for inspection, newest first.

        ``recipient`` matches as a case-insensitive substring.
        """
        conditions: list[str] = []
        params: dict[str, Any] = {"limit": int(limit), "offset": int(offset)}
        if status:
            conditions.append("status = :status")
            params["status"] = status
        if email_type:
            conditions.append("email_type = :email_type")
            params["email_type"] = email_type
        if recipient:
            conditions.append("LOWER(recipient_email) LIKE :recipient")
            params["recipient"] = f"%{recipient.lower()}%"
        query = "SELECT * FROM email_logs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id ASC LIMIT :limit OFFSET :offset"
        return await self.adapter.fetch_all(query, params)


__all__ = ["EmailLogsTable"]
