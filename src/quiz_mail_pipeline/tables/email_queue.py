# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email queue table manager: render-ready messages awaiting delivery."""

from __future__ import annotations

import uuid
from typing import Any

from ..models import LEAD_COLUMNS, LeadRef, MessageStatus, new_id
from ..sql import Epoch, Integer, String, Table

DEFAULT_MAX_RETRIES = 3

ACTIVE_STATUSES = (MessageStatus.PENDING.value, MessageStatus.PROCESSING.value)


class EmailQueueTable(Table):
    """Email queue: one row per rendered message, with retry bookkeeping.

    Fields:
    - id: UUID
    - recipient_email, sender_email, sender_name, reply_to_email: envelope
    - subject, html_body: rendered content
    - email_type, language: classification used by the audit log
    - quiz_id, quiz_lead_id, hypothesis_lead_id: typed lead reference
    - original_log_id: audit entry being re-sent (manual resend only)
    - status: pending, processing, sent, failed
    - retry_count, max_retries: retry bookkeeping
    - scheduled_for: earliest dispatch time, pushed forward on every retry
    - processing_started_at, claim_token: ownership of an in-flight claim
    - sent_at, created_at

    Transitions are owned by the delivery worker; every transition out of
    ``processing`` is guarded by the claim token so that a worker whose claim
    was reclaimed cannot overwrite the new owner's outcome.
    """

    name = "email_queue"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("recipient_email", String, nullable=False)
        c.column("sender_email", String, nullable=False)
        c.column("sender_name", String)
        c.column("reply_to_email", String)
        c.column("subject", String, nullable=False)
        c.column("html_body", String, nullable=False)
        c.column("email_type", String, nullable=False)
        c.column("language", String)
        c.column("quiz_id", String)
        c.column("quiz_lead_id", String)
        c.column("hypothesis_lead_id", String)
        c.column("original_log_id", String)
        c.column("status", String, nullable=False, default=MessageStatus.PENDING.value)
        c.column("retry_count", Integer, nullable=False, default=0)
        c.column("max_retries", Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
        c.column("error_message", String)
        c.column("scheduled_for", Epoch, nullable=False)
        c.column("processing_started_at", Epoch)
        c.column("claim_token", String)
        c.column("sent_at", Epoch)
        c.column("created_at", Epoch, nullable=False)
        self.indexes = [
            ("idx_email_queue_due", "status, scheduled_for"),
            ("idx_email_queue_quiz_lead", "quiz_lead_id"),
            ("idx_email_queue_hypothesis_lead", "hypothesis_lead_id"),
        ]

    async def enqueue(self, message: dict[str, Any], *, now_ts: int) -> str:
        """Insert a render-ready message as ``pending``. Returns its id."""
        record = self._record(message, now_ts)
        await self.insert(record)
        return record["id"]

    async def enqueue_many(self, messages: list[dict[str, Any]], *, now_ts: int) -> list[str]:
        """Insert several messages in one statement. Returns their ids.

        A lead's emails are queued together or not at all.
        """
        records = [self._record(message, now_ts) for message in messages]
        await self.insert_many(records)
        return [record["id"] for record in records]

    @staticmethod
    def _record(message: dict[str, Any], now_ts: int) -> dict[str, Any]:
        record = {
            "id": message.get("id") or new_id(),
            "recipient_email": message["recipient_email"],
            "sender_email": message["sender_email"],
            "sender_name": message.get("sender_name"),
            "reply_to_email": message.get("reply_to_email") or None,
            "subject": message["subject"],
            "html_body": message["html_body"],
            "email_type": message["email_type"],
            "language": message.get("language"),
            "quiz_id": message.get("quiz_id"),
            "original_log_id": message.get("original_log_id"),
            "status": MessageStatus.PENDING.value,
            "retry_count": 0,
            "max_retries": int(message.get("max_retries") or DEFAULT_MAX_RETRIES),
            "scheduled_for": int(message.get("scheduled_for") or now_ts),
            "created_at": now_ts,
        }
        lead = message.get("lead")
        if isinstance(lead, LeadRef):
            record.update(lead.as_columns())
        else:
            for col in LEAD_COLUMNS:
                record[col] = message.get(col)
        return record

    async def reclaim_stuck(self, threshold_ts: int) -> int:
        """Return abandoned ``processing`` rows to ``pending``. Returns the count."""
        return await self.adapter.execute(
            """
            UPDATE email_queue
            SET status = :pending, processing_started_at = NULL, claim_token = NULL
            WHERE status = :processing
              AND processing_started_at IS NOT NULL
              AND processing_started_at < :threshold_ts
            """,
            {
                "pending": MessageStatus.PENDING.value,
                "processing": MessageStatus.PROCESSING.value,
                "threshold_ts": threshold_ts,
            },
        )

    async def fetch_due(self, *, now_ts: int, limit: int) -> list[dict[str, Any]]:
        """Pending messages whose ``scheduled_for`` has passed, oldest first."""
        return await self.adapter.fetch_all(
            """
            SELECT * FROM email_queue
            WHERE status = :pending AND scheduled_for <= :now_ts
            ORDER BY scheduled_for ASC, created_at ASC, id ASC
            LIMIT :limit
            """,
            {"pending": MessageStatus.PENDING.value, "now_ts": now_ts, "limit": limit},
        )

    async def claim(self, ids: list[str], *, now_ts: int) -> tuple[str, list[dict[str, Any]]]:
        """Flip ``pending`` rows to ``processing`` in one conditional update.

        Rows another invocation claimed first keep that invocation's token and
        are not returned. Returns ``(claim_token, claimed_rows)``.
        """
        token = uuid.uuid4().hex
        if not ids:
            return token, []
        placeholders, params = self.adapter.expand_in("id", ids)
        params.update(
            {
                "token": token,
                "now_ts": now_ts,
                "pending": MessageStatus.PENDING.value,
                "processing": MessageStatus.PROCESSING.value,
            }
        )
        await self.adapter.execute(
            f"""
            UPDATE email_queue
            SET status = :processing, processing_started_at = :now_ts, claim_token = :token
            WHERE id IN ({placeholders}) AND status = :pending
            """,
            params,
        )
        rows = await self.adapter.fetch_all(
            """
            SELECT * FROM email_queue
            WHERE claim_token = :token AND status = :processing
            ORDER BY scheduled_for ASC, created_at ASC, id ASC
            """,
            {"token": token, "processing": MessageStatus.PROCESSING.value},
        )
        return token, rows

    async def mark_sent(self, msg_id: str, *, token: str, sent_ts: int) -> bool:
        """Record a successful send. Clears the error and the claim."""
        rowcount = await self.adapter.execute(
            """
            UPDATE email_queue
            SET status = :sent, sent_at = :sent_ts, error_message = NULL,
                processing_started_at = NULL, claim_token = NULL
            WHERE id = :msg_id AND claim_token = :token
            """,
            {"sent": MessageStatus.SENT.value, "sent_ts": sent_ts, "msg_id": msg_id, "token": token},
        )
        return rowcount > 0

    async def schedule_retry(
        self, msg_id: str, *, token: str, retry_count: int, scheduled_for: int, error: str
    ) -> bool:
        """Return the message to ``pending`` with a later ``scheduled_for``.

        ``scheduled_for`` never moves backwards.
        """
        rowcount = await self.adapter.execute(
            """
            UPDATE email_queue
            SET status = :pending, retry_count = :retry_count, error_message = :error,
                scheduled_for = CASE WHEN scheduled_for > :scheduled_for
                                     THEN scheduled_for ELSE :scheduled_for END,
                processing_started_at = NULL, claim_token = NULL
            WHERE id = :msg_id AND claim_token = :token
            """,
            {
                "pending": MessageStatus.PENDING.value,
                "retry_count": retry_count,
                "error": error,
                "scheduled_for": scheduled_for,
                "msg_id": msg_id,
                "token": token,
            },
        )
        return rowcount > 0

    async def mark_failed(self, msg_id: str, *, token: str, retry_count: int, error: str) -> bool:
        """Terminal failure. ``scheduled_for`` is left untouched."""
        rowcount = await self.adapter.execute(
            """
            UPDATE email_queue
            SET status = :failed, retry_count = :retry_count, error_message = :error,
                processing_started_at = NULL, claim_token = NULL
            WHERE id = :msg_id AND claim_token = :token
            """,
            {
                "failed": MessageStatus.FAILED.value,
                "retry_count": retry_count,
                "error": error,
                "msg_id": msg_id,
                "token": token,
            },
        )
        return rowcount > 0

    async def has_in_flight(self, lead: LeadRef) -> bool:
        """True when a pending or processing message references the lead."""
        row = await self.adapter.fetch_one(
            f"""
            SELECT id FROM email_queue
            WHERE {lead.column} = :lead_id AND status IN (:pending, :processing)
            LIMIT 1
            """,
            {"lead_id": lead.lead_id, "pending": ACTIVE_STATUSES[0], "processing": ACTIVE_STATUSES[1]},
        )
        return row is not None

    async def get(self, msg_id: str) -> dict[str, Any] | None:
        return await self.select_one({"id": msg_id})

    async def list_messages(
        self, *, status: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Queue rows for inspection, newest first."""
        return await self.select(
            {"status": status}, order_by="created_at DESC, id ASC", limit=limit, offset=offset
        )

    async def count_pending(self) -> int:
        value = await self.adapter.fetch_value(
            "SELECT COUNT(*) AS cnt FROM email_queue WHERE status IN (:pending, :processing)",
            {"pending": ACTIVE_STATUSES[0], "processing": ACTIVE_STATUSES[1]},
            default=0,
        )
        return int(value or 0)

    async def remove_sent_before(self, threshold_ts: int) -> int:
        """Delete ``sent`` rows older than the threshold. Audit rows are kept."""
        return await self.adapter.execute(
            """
            DELETE FROM email_queue
            WHERE status = :sent AND sent_at IS NOT NULL AND sent_at < :threshold_ts
            """,
            {"sent": MessageStatus.SENT.value, "threshold_ts": threshold_ts},
        )


__all__ = ["DEFAULT_MAX_RETRIES", "EmailQueueTable"]
