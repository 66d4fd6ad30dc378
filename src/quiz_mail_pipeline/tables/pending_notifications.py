# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pending email notifications: "this lead needs an email" intents."""

from __future__ import annotations

from typing import Any

from ..models import LeadRef, NotificationStatus, new_id
from ..sql import Epoch, Integer, String, Table

DEFAULT_MAX_ATTEMPTS = 3


class PendingNotificationsTable(Table):
    """Pending notifications filed by the reconciler, resolved by the registry.

    Uniqueness of the active row per lead is enforced by the callers through
    lookup-before-insert; a duplicate that slips through resolves as a no-op.
    """

    name = "pending_email_notifications"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("lead_type", String, nullable=False)
        c.column("lead_id", String, nullable=False)
        c.column("status", String, nullable=False, default=NotificationStatus.PENDING.value)
        c.column("attempts", Integer, nullable=False, default=0)
        c.column("max_attempts", Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
        c.column("error_message", String)
        c.column("created_at", Epoch, nullable=False)
        c.column("processed_at", Epoch)
        self.indexes = [
            ("idx_pending_notifications_lead", "lead_type, lead_id"),
            ("idx_pending_notifications_status", "status, created_at"),
        ]

    async def exists_for(self, lead: LeadRef) -> bool:
        """True when any row (in any state) references the lead."""
        row = await self.adapter.fetch_one(
            """
            SELECT id FROM pending_email_notifications
            WHERE lead_type = :lead_type AND lead_id = :lead_id
            LIMIT 1
            """,
            {"lead_type": lead.lead_type.value, "lead_id": lead.lead_id},
        )
        return row is not None

    async def create(
        self, lead: LeadRef, *, now_ts: int, max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ) -> str:
        notification_id = new_id()
        await self.insert(
            {
                "id": notification_id,
                "lead_type": lead.lead_type.value,
                "lead_id": lead.lead_id,
                "status": NotificationStatus.PENDING.value,
                "attempts": 0,
                "max_attempts": max_attempts,
                "created_at": now_ts,
            }
        )
        return notification_id

    async def fetch_due(self, *, cutoff_ts: int, limit: int) -> list[dict[str, Any]]:
        """Pending rows older than the cutoff plus failed rows with attempts left."""
        return await self.adapter.fetch_all(
            """
            SELECT * FROM pending_email_notifications
            WHERE (status = :pending AND created_at < :cutoff_ts)
               OR (status = :failed AND attempts < max_attempts)
            ORDER BY created_at ASC, id ASC
            LIMIT :limit
            """,
            {
                "pending": NotificationStatus.PENDING.value,
                "failed": NotificationStatus.FAILED.value,
                "cutoff_ts": cutoff_ts,
                "limit": limit,
            },
        )

    async def mark_processing(self, row: dict[str, Any]) -> bool:
        """Move a row to ``processing`` and count the attempt.

        Guarded on the status and attempt count that were read, so two
        overlapping resolvers cannot both take the same row.
        """
        rowcount = await self.adapter.execute(
            """
            UPDATE pending_email_notifications
            SET status = :processing, attempts = attempts + 1
            WHERE id = :id AND status = :status AND attempts = :attempts
            """,
            {
                "processing": NotificationStatus.PROCESSING.value,
                "id": row["id"],
                "status": row["status"],
                "attempts": row["attempts"],
            },
        )
        return rowcount > 0

    async def mark_sent(self, notification_id: str, *, now_ts: int) -> None:
        await self.adapter.execute(
            """
            UPDATE pending_email_notifications
            SET status = :sent, processed_at = :now_ts, error_message = NULL
            WHERE id = :id
            """,
            {"sent": NotificationStatus.SENT.value, "now_ts": now_ts, "id": notification_id},
        )

    async def mark_failed(self, notification_id: str, *, error: str, now_ts: int) -> None:
        await self.adapter.execute(
            """
            UPDATE pending_email_notifications
            SET status = :failed, error_message = :error, processed_at = :now_ts
            WHERE id = :id
            """,
            {
                "failed": NotificationStatus.FAILED.value,
                "error": error,
                "now_ts": now_ts,
                "id": notification_id,
            },
        )

    async def get(self, notification_id: str) -> dict[str, Any] | None:
        return await self.select_one({"id": notification_id})

    async def list_notifications(
        self,
        *,
        status: str | None = None,
        lead_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.select(
            {"status": status, "lead_type": lead_type},
            order_by="created_at DESC, id ASC",
            limit=limit,
            offset=offset,
        )


__all__ = ["DEFAULT_MAX_ATTEMPTS", "PendingNotificationsTable"]
