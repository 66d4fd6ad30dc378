# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery worker: drains the email queue through the configured transport.

One invocation:

1. loads the provider configuration and selects a transport; a missing
   configuration aborts here, before any row is touched;
2. returns claims older than the processing timeout to ``pending``;
3. claims a batch of due messages with one conditional update;
4. sends the claimed messages one at a time and records each outcome in the
   queue and, for terminal outcomes, in the audit log.

A failure on one message never stops the batch. A row left ``processing``
by an unexpected error is picked up again after the timeout.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from .audit import AuditLog
from .config_loader import ProviderConfig, load_provider_config
from .logger import get_logger, summarise_address
from .models import LeadRef, LogStatus
from .persistence import PipelineDb
from .prometheus import PipelineMetrics
from .retry import RetryStrategy
from .transports import EmailTransport, SendResult, select_transport

DEFAULT_BATCH_SIZE = 10
DEFAULT_PROCESSING_TIMEOUT = 5 * 60

TransportFactory = Callable[[ProviderConfig], EmailTransport]

_AUDIT_FIELDS = (
    "email_type",
    "recipient_email",
    "sender_email",
    "sender_name",
    "subject",
    "language",
    "quiz_id",
    "quiz_lead_id",
    "hypothesis_lead_id",
    "original_log_id",
    "html_body",
)


class DeliveryWorker:
    """Claims due queue rows and delivers them.

    Args:
        db: Pipeline database.
        transport_factory: Builds the transport from the provider config.
            Defaults to :func:`select_transport`.
        metrics: Optional metrics collector.
        batch_size: Maximum messages claimed per invocation.
        processing_timeout: Seconds after which a claim counts as abandoned.
        retry_strategy: Backoff schedule; permanent errors are retried unless
            the strategy was built with ``skip_permanent=True``.
        environ: Environment used for provider secrets (``RESEND_API_KEY``).
    """

    def __init__(
        self,
        db: PipelineDb,
        transport_factory: TransportFactory | None = None,
        *,
        metrics: PipelineMetrics | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        processing_timeout: int = DEFAULT_PROCESSING_TIMEOUT,
        retry_strategy: RetryStrategy | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.db = db
        self.audit = AuditLog(db.email_logs, db.email_queue)
        self.transport_factory = transport_factory or select_transport
        self.metrics = metrics
        self.batch_size = batch_size
        self.processing_timeout = processing_timeout
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.environ = environ
        self.logger = get_logger("DeliveryWorker")

    async def run(self, now_ts: int | None = None) -> dict[str, int]:
        """Process one batch. Returns the outcome counts.

        Raises:
            TransportConfigurationError: If no transport is configured.
            CredentialEncodingError: If the SMTP credentials cannot be sent.
        """
        now = int(now_ts if now_ts is not None else time.time())
        config = await load_provider_config(self.db.app_settings, self.environ)
        transport = self.transport_factory(config)

        summary = {"processed": 0, "sent": 0, "failed": 0, "retried": 0, "skipped": 0, "reclaimed": 0}
        async with transport:
            reclaimed = await self.db.email_queue.reclaim_stuck(now - self.processing_timeout)
            summary["reclaimed"] = reclaimed
            if reclaimed:
                self.logger.warning("Reclaimed %d abandoned message(s)", reclaimed)
                if self.metrics:
                    self.metrics.inc_reclaimed(reclaimed)

            due = await self.db.email_queue.fetch_due(now_ts=now, limit=self.batch_size)
            if not due:
                self.logger.debug("No messages due")
                await self._refresh_gauge()
                return summary

            token, claimed = await self.db.email_queue.claim([row["id"] for row in due], now_ts=now)
            if len(claimed) < len(due):
                self.logger.info(
                    "Claimed %d of %d due message(s); the rest were taken by another run",
                    len(claimed),
                    len(due),
                )
            for row in claimed:
                summary["processed"] += 1
                try:
                    outcome = await self._deliver(row, token, transport, now)
                except Exception:
                    self.logger.exception(
                        "Unexpected error while delivering message %s; it will be reclaimed", row["id"]
                    )
                    continue
                if outcome == "lost":
                    continue
                summary[outcome] += 1
                if outcome == "retried":
                    summary["failed"] += 1

        self.logger.info(
            "Delivery batch via %s: %d processed, %d sent, %d failed (%d to retry), %d skipped",
            transport.name,
            summary["processed"],
            summary["sent"],
            summary["failed"],
            summary["retried"],
            summary["skipped"],
        )
        await self._refresh_gauge()
        return summary

    async def _deliver(
        self, row: dict[str, Any], token: str, transport: EmailTransport, now: int
    ) -> str:
        msg_id = row["id"]
        email_type = row["email_type"]
        lead = LeadRef.from_row(row)

        if lead is not None and not row.get("original_log_id"):
            if await self.audit.has_sent(lead, email_type):
                await self.db.email_queue.mark_sent(msg_id, token=token, sent_ts=now)
                self.logger.info(
                    "Message %s skipped: %s already delivered to lead %s", msg_id, email_type, lead
                )
                return "skipped"

        result = await self._send(transport, row)

        if result.success:
            if not await self.db.email_queue.mark_sent(msg_id, token=token, sent_ts=now):
                self.logger.warning("Message %s was sent after its claim expired", msg_id)
            await self.audit.append(
                self._audit_entry(row, LogStatus.SENT, provider_message_id=result.provider_message_id),
                now_ts=now,
            )
            if self.metrics:
                self.metrics.inc_sent(email_type)
            self.logger.info(
                "Message %s (%s) sent to %s",
                msg_id,
                email_type,
                summarise_address(row["recipient_email"]),
            )
            return "sent"

        retry_count = int(row.get("retry_count") or 0) + 1
        max_retries = int(row.get("max_retries") or 0)
        error = result.error or "Unknown error"

        if self.retry_strategy.should_retry(retry_count, max_retries, result.permanent):
            scheduled_for = self.retry_strategy.next_attempt_at(retry_count, now)
            if not await self.db.email_queue.schedule_retry(
                msg_id, token=token, retry_count=retry_count, scheduled_for=scheduled_for, error=error
            ):
                self._claim_lost(msg_id, error)
                return "lost"
            if self.metrics:
                self.metrics.inc_retried(email_type)
            self.logger.warning(
                "Message %s failed (attempt %d/%d): %s - retrying in %ds",
                msg_id,
                retry_count,
                max_retries,
                error,
                scheduled_for - now,
            )
            return "retried"

        if not await self.db.email_queue.mark_failed(msg_id, token=token, retry_count=retry_count, error=error):
            self._claim_lost(msg_id, error)
            return "lost"
        await self.audit.append(
            self._audit_entry(row, LogStatus.FAILED, error_message=error, resend_attempts=retry_count),
            now_ts=now,
        )
        if self.metrics:
            self.metrics.inc_failed(email_type)
        self.logger.error(
            "Message %s (%s) to %s failed permanently after %d attempt(s): %s",
            msg_id,
            email_type,
            summarise_address(row["recipient_email"]),
            retry_count,
            error,
        )
        return "failed"

    def _claim_lost(self, msg_id: str, error: str) -> None:
        self.logger.warning(
            "Message %s failed (%s) but its claim was lost to another run; outcome not recorded",
            msg_id,
            error,
        )

    async def _send(self, transport: EmailTransport, row: dict[str, Any]) -> SendResult:
        try:
            return await transport.send(row)
        except Exception as exc:
            self.logger.warning("Transport %s raised for message %s: %s", transport.name, row["id"], exc)
            return SendResult.failed(str(exc) or type(exc).__name__)

    @staticmethod
    def _audit_entry(row: dict[str, Any], status: LogStatus, **extra: Any) -> dict[str, Any]:
        entry = {field: row.get(field) for field in _AUDIT_FIELDS}
        entry["status"] = status.value
        entry.update(extra)
        return entry

    async def _refresh_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_pending(await self.db.email_queue.count_pending())


__all__ = ["DEFAULT_BATCH_SIZE", "DEFAULT_PROCESSING_TIMEOUT", "DeliveryWorker"]
