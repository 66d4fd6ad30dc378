# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Audit log: the append-only record of terminal send outcomes.

The worker writes here; the resolver and the worker read it back to decide
whether a lead has already been served. Entries are never updated.
"""

from __future__ import annotations

import time
from typing import Any

from .models import LeadRef, LogStatus
from .tables import EmailLogsTable, EmailQueueTable


class AuditLog:
    """Facade over ``email_logs`` with the queries the pipeline relies on."""

    def __init__(self, email_logs: EmailLogsTable, email_queue: EmailQueueTable):
        self.email_logs = email_logs
        self.email_queue = email_queue

    async def append(self, entry: dict[str, Any], now_ts: int | None = None) -> str:
        """Record an outcome. ``entry`` may carry a ``lead`` :class:`LeadRef`."""
        if entry.get("status") not in {s.value for s in LogStatus}:
            raise ValueError(f"Invalid audit status: {entry.get('status')!r}")
        return await self.email_logs.append(entry, now_ts=now_ts or int(time.time()))

    async def has_sent(self, lead: LeadRef, email_type: str | None = None) -> bool:
        """True when a successful send is recorded for the lead (and type)."""
        return await self.email_logs.has_sent(lead, email_type)

    async def has_queued(self, lead: LeadRef) -> bool:
        """True when a message for the lead is still waiting in the queue."""
        return await self.email_queue.has_in_flight(lead)


__all__ = ["AuditLog"]
