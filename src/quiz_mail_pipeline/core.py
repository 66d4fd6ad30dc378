# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pipeline orchestrator.

:class:`MailPipeline` owns the database and the three jobs (delivery
worker, pending notification resolver, orphan reconciler). It runs them on
demand (HTTP trigger, CLI) or on internal tickers in a long-lived process,
and answers the operator commands exposed by the API and the CLI.

Each job is serialised by its own lock, so a ticker and an HTTP trigger in
the same process never run the same job concurrently. Separate processes
may still overlap; the jobs are written to tolerate that.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .config_loader import SECRET_SETTING_KEYS, Settings, load_provider_config
from .exceptions import LogEntryNotFoundError
from .logger import get_logger
from .models import LeadRef
from .persistence import PipelineDb
from .prometheus import PipelineMetrics
from .reconciler import OrphanReconciler
from .registry import PendingNotificationResolver
from .render import Renderer
from .retry import RetryStrategy
from .worker import DeliveryWorker, TransportFactory

JOB_NAMES = ("worker", "resolver", "reconciler")


class MailPipeline:
    """Entry point of the pipeline.

    Args:
        settings: Process settings; defaults are used when omitted.
        db: Database to use instead of the one named by ``settings.db_path``.
        renderer: Render boundary handed to the resolver.
        transport_factory: Transport selection handed to the worker.
        metrics: Metrics collector; a private one is created when omitted.
        environ: Environment used for provider secrets.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: PipelineDb | None = None,
        renderer: Renderer | None = None,
        transport_factory: TransportFactory | None = None,
        metrics: PipelineMetrics | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.settings = settings or Settings()
        self.db = db or PipelineDb(self.settings.db_path)
        self.metrics = metrics or PipelineMetrics()
        self.environ = environ
        self.logger = get_logger("MailPipeline")

        self.worker = DeliveryWorker(
            self.db,
            transport_factory,
            metrics=self.metrics,
            batch_size=self.settings.batch_size,
            processing_timeout=self.settings.processing_timeout_seconds,
            retry_strategy=RetryStrategy(skip_permanent=self.settings.skip_retry_on_permanent),
            environ=environ,
        )
        self.resolver = PendingNotificationResolver(
            self.db,
            renderer,
            metrics=self.metrics,
            grace_seconds=self.settings.grace_seconds,
            environ=environ,
        )
        self.reconciler = OrphanReconciler(
            self.db,
            metrics=self.metrics,
            grace_seconds=self.settings.grace_seconds,
            batch_size=self.settings.reconciler_batch_size,
        )

        self._active = self.settings.scheduler_active
        self._stop = asyncio.Event()
        self._locks = {name: asyncio.Lock() for name in JOB_NAMES}
        self._wake_events = {name: asyncio.Event() for name in JOB_NAMES}
        self._tasks: list[asyncio.Task] = []
        self._last_runs: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------ jobs
    async def init(self) -> None:
        """Create the schema if needed."""
        await self.db.init_db()

    async def process_email_queue(self, now_ts: int | None = None) -> dict[str, int]:
        """Run the delivery worker once."""
        return await self._run_job("worker", self.worker.run, now_ts)

    async def process_pending_emails(self, now_ts: int | None = None) -> dict[str, int]:
        """Run the pending notification resolver once."""
        return await self._run_job("resolver", self.resolver.run, now_ts)

    async def reconcile_orphans(self, now_ts: int | None = None) -> dict[str, int]:
        """Run the orphan reconciler once."""
        return await self._run_job("reconciler", self.reconciler.run, now_ts)

    async def _run_job(
        self, name: str, job: Callable[[int | None], Awaitable[dict[str, int]]], now_ts: int | None
    ) -> dict[str, int]:
        async with self._locks[name]:
            started = time.time()
            summary = await job(now_ts)
            self._last_runs[name] = {"at": int(started), "summary": summary}
            return summary

    # ------------------------------------------------------------ operations
    async def resend(
        self, log_id: str, recipient_email: str | None = None, now_ts: int | None = None
    ) -> str:
        """Queue a copy of an audited email. Returns the new queue id.

        The copy carries ``original_log_id`` so the worker delivers it even
        though the lead already has a successful send, and its outcome is
        audited as a new entry.

        Raises:
            LogEntryNotFoundError: If ``log_id`` does not exist.
            ValueError: If the entry has no stored body to send.
        """
        entry = await self.db.email_logs.get(log_id)
        if entry is None:
            raise LogEntryNotFoundError(log_id)
        if not entry.get("html_body"):
            raise ValueError(f"Email log {log_id} has no stored body to resend")
        now = int(now_ts if now_ts is not None else time.time())
        config = await load_provider_config(self.db.app_settings, self.environ)
        message = {
            "recipient_email": recipient_email or entry["recipient_email"],
            "sender_email": config.sender_email,
            "sender_name": config.sender_name,
            "reply_to_email": config.reply_to,
            "subject": entry.get("subject") or "",
            "html_body": entry["html_body"],
            "email_type": entry["email_type"],
            "language": entry.get("language"),
            "quiz_id": entry.get("quiz_id"),
            "lead": LeadRef.from_row(entry),
            "original_log_id": log_id,
        }
        msg_id = await self.db.email_queue.enqueue(message, now_ts=now)
        self.logger.info("Queued resend %s of email log %s", msg_id, log_id)
        self._wake_events["worker"].set()
        return msg_id

    async def cleanup(self, older_than_seconds: int | None = None) -> int:
        """Delete sent queue rows older than the retention window."""
        retention = (
            older_than_seconds if older_than_seconds is not None else self.settings.queue_retention_seconds
        )
        removed = await self.db.email_queue.remove_sent_before(int(time.time()) - int(retention))
        if removed:
            self.logger.info("Removed %d delivered message(s) from the queue", removed)
        return removed

    async def stats(self) -> dict[str, Any]:
        return await self.db.stats()

    async def status(self) -> dict[str, Any]:
        return {
            "ok": True,
            "active": self._active,
            "running": bool(self._tasks),
            "last_runs": dict(self._last_runs),
        }

    async def list_settings(self, reveal_secrets: bool = False) -> dict[str, Any]:
        """Stored settings; secrets are masked unless ``reveal_secrets``."""
        values = await self.db.app_settings.get_all()
        if reveal_secrets:
            return values
        return {
            key: ("********" if key in SECRET_SETTING_KEYS and value else value)
            for key, value in values.items()
        }

    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``: wake every ticker
        - ``suspend`` / ``activate``: pause or resume the tickers
        - ``processEmailQueue``, ``processPendingEmails``, ``reconcileOrphans``: run a job
        - ``resend``: queue a copy of an audited email (``log_id``, ``recipient_email``)
        - ``cleanup``: remove delivered queue rows (``older_than_seconds``)
        - ``setSetting``: store an ``app_settings`` value (``key``, ``value``)

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        match cmd:
            case "run now":
                for event in self._wake_events.values():
                    event.set()
                return {"ok": True}
            case "suspend":
                self._active = False
                return {"ok": True, "active": False}
            case "activate":
                self._active = True
                return {"ok": True, "active": True}
            case "processEmailQueue":
                return {"ok": True, **await self.process_email_queue()}
            case "processPendingEmails":
                return {"ok": True, **await self.process_pending_emails()}
            case "reconcileOrphans":
                return {"ok": True, **await self.reconcile_orphans()}
            case "resend":
                log_id = payload.get("log_id")
                if not log_id:
                    return {"ok": False, "error": "log_id required"}
                try:
                    msg_id = await self.resend(log_id, payload.get("recipient_email"))
                except LogEntryNotFoundError as exc:
                    return {"ok": False, "error": str(exc)}
                return {"ok": True, "id": msg_id}
            case "cleanup":
                removed = await self.cleanup(payload.get("older_than_seconds"))
                return {"ok": True, "removed": removed}
            case "setSetting":
                key = payload.get("key")
                if not key:
                    return {"ok": False, "error": "key required"}
                await self.db.app_settings.set(key, payload.get("value"), now_ts=int(time.time()))
                return {"ok": True}
            case _:
                return {"ok": False, "error": "unknown command"}

    # ------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialise the schema and start one ticker per job."""
        await self.init()
        self._stop.clear()
        intervals = {
            "worker": self.settings.worker_interval,
            "resolver": self.settings.resolver_interval,
            "reconciler": self.settings.reconciler_interval,
        }
        jobs = {
            "worker": self.process_email_queue,
            "resolver": self.process_pending_emails,
            "reconciler": self.reconcile_orphans,
        }
        self._tasks = [
            asyncio.create_task(self._ticker(name, jobs[name], intervals[name]), name=f"{name}-ticker")
            for name in JOB_NAMES
        ]
        self.logger.info("Pipeline started (scheduler %s)", "active" if self._active else "suspended")

    async def stop(self) -> None:
        """Stop the tickers, letting a running job finish, and close the database."""
        self._stop.set()
        for event in self._wake_events.values():
            event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.db.close()

    async def _ticker(
        self, name: str, job: Callable[[], Awaitable[dict[str, int]]], interval: float
    ) -> None:
        while not self._stop.is_set():
            if self._active:
                try:
                    await job()
                except Exception as exc:
                    self.logger.exception("Unhandled error in %s ticker: %s", name, exc)
            await self._wait_for_wakeup(name, interval)

    async def _wait_for_wakeup(self, name: str, timeout: float | None) -> None:
        """Sleep until the interval elapses, the job is woken, or the pipeline stops."""
        if self._stop.is_set():
            return
        event = self._wake_events[name]
        if timeout is None or math.isinf(timeout):
            await event.wait()
        else:
            try:
                await asyncio.wait_for(event.wait(), timeout=max(0.0, float(timeout)))
            except asyncio.TimeoutError:
                return
        event.clear()


__all__ = ["JOB_NAMES", "MailPipeline"]
