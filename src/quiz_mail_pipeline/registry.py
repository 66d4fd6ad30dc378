# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pending notification registry: resolves "this lead needs an email" intents.

Resolving a notification means handing the lead's emails to the queue; the
notification is marked ``sent`` once they are queued, not once they are
delivered. Leads that already have a delivered or queued email are
short-circuited so a duplicate notification never produces a second email.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from .audit import AuditLog
from .config_loader import ProviderConfig, load_provider_config
from .exceptions import LeadNotFoundError
from .logger import get_logger
from .models import Lead, LeadRef, RenderedEmail
from .persistence import PipelineDb
from .prometheus import PipelineMetrics
from .reconciler import DEFAULT_GRACE_SECONDS
from .render import DefaultResultRenderer, Renderer, render_lead

DEFAULT_RESOLVER_BATCH = 10


class PendingNotificationResolver:
    """Resolves due pending notifications into queued messages.

    Args:
        db: Pipeline database.
        renderer: Render boundary. When omitted a
            :class:`DefaultResultRenderer` is built for each invocation from
            the current provider configuration.
        metrics: Optional metrics collector.
        grace_seconds: Age a pending notification must reach before pickup.
        batch_size: Maximum notifications handled per invocation.
        environ: Environment used when loading the provider configuration.
    """

    def __init__(
        self,
        db: PipelineDb,
        renderer: Renderer | None = None,
        *,
        metrics: PipelineMetrics | None = None,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        batch_size: int = DEFAULT_RESOLVER_BATCH,
        environ: Mapping[str, str] | None = None,
    ):
        self.db = db
        self.audit = AuditLog(db.email_logs, db.email_queue)
        self.renderer = renderer
        self.metrics = metrics
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size
        self.environ = environ
        self.logger = get_logger("PendingNotificationResolver")

    async def run(self, now_ts: int | None = None) -> dict[str, int]:
        """Resolve one batch. Returns ``{"processed", "sent", "failed", "skipped"}``."""
        now = int(now_ts if now_ts is not None else time.time())
        config = await load_provider_config(self.db.app_settings, self.environ)
        renderer = self.renderer or DefaultResultRenderer(config.admin_email)

        summary = {"processed": 0, "sent": 0, "failed": 0, "skipped": 0}
        rows = await self.db.pending_notifications.fetch_due(
            cutoff_ts=now - self.grace_seconds, limit=self.batch_size
        )
        for row in rows:
            if not await self.db.pending_notifications.mark_processing(row):
                self.logger.debug("Notification %s taken by another run", row["id"])
                continue
            summary["processed"] += 1
            outcome = await self._resolve(row, renderer, config, now)
            summary[outcome] += 1
            if self.metrics:
                self.metrics.inc_notification(outcome)

        if summary["processed"]:
            self.logger.info(
                "Resolved %d notification(s): %d queued, %d already served, %d failed",
                summary["processed"],
                summary["sent"],
                summary["skipped"],
                summary["failed"],
            )
        return summary

    async def _resolve(
        self, row: dict[str, Any], renderer: Renderer, config: ProviderConfig, now: int
    ) -> str:
        notification_id = row["id"]
        attempts = int(row.get("attempts") or 0) + 1
        try:
            ref = LeadRef(row["lead_type"], row["lead_id"])
            if await self.audit.has_sent(ref) or await self.audit.has_queued(ref):
                await self.db.pending_notifications.mark_sent(notification_id, now_ts=now)
                self.logger.info("Lead %s already has an email, notification %s closed", ref, notification_id)
                return "skipped"

            lead = await self.db.leads.get_lead(ref)
            if lead is None:
                raise LeadNotFoundError()

            emails = await render_lead(renderer, lead)
            await self.db.email_queue.enqueue_many(
                [self._queue_entry(lead, email, config) for email in emails], now_ts=now
            )
            await self.db.pending_notifications.mark_sent(notification_id, now_ts=now)
            self.logger.info("Queued %d email(s) for lead %s", len(emails), ref)
            return "sent"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            await self.db.pending_notifications.mark_failed(notification_id, error=error, now_ts=now)
            max_attempts = int(row.get("max_attempts") or 0)
            if attempts >= max_attempts:
                self.logger.error(
                    "Notification %s for %s:%s failed permanently after %d attempt(s): %s",
                    notification_id,
                    row.get("lead_type"),
                    row.get("lead_id"),
                    attempts,
                    error,
                )
            else:
                self.logger.warning(
                    "Notification %s failed (attempt %d/%d): %s",
                    notification_id,
                    attempts,
                    max_attempts,
                    error,
                )
            return "failed"

    @staticmethod
    def _queue_entry(lead: Lead, email: RenderedEmail, config: ProviderConfig) -> dict[str, Any]:
        ref = lead.ref
        return {
            "recipient_email": email.recipient_email or lead.email,
            "sender_email": config.sender_email,
            "sender_name": config.sender_name,
            "reply_to_email": config.reply_to,
            "subject": email.subject,
            "html_body": email.html,
            "email_type": email.email_type or ref.lead_type.default_email_type,
            "language": lead.language,
            "quiz_id": lead.quiz_id,
            "lead": ref,
        }


__all__ = ["DEFAULT_RESOLVER_BATCH", "PendingNotificationResolver"]
