# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Orphan reconciler: files a pending notification for leads nobody served.

A lead is an orphan once it is older than the grace window and no audit
row, queue row or pending notification references it. The reconciler only
inserts; running it twice in a row files nothing the second time.
"""

from __future__ import annotations

import time

from .logger import get_logger
from .models import LeadType
from .persistence import PipelineDb
from .prometheus import PipelineMetrics

DEFAULT_GRACE_SECONDS = 30
DEFAULT_RECONCILER_BATCH = 20


class OrphanReconciler:
    def __init__(
        self,
        db: PipelineDb,
        *,
        metrics: PipelineMetrics | None = None,
        grace_seconds: int = DEFAULT_GRACE_SECONDS,
        batch_size: int = DEFAULT_RECONCILER_BATCH,
    ):
        self.db = db
        self.metrics = metrics
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size
        self.logger = get_logger("OrphanReconciler")

    async def run(self, now_ts: int | None = None) -> dict[str, int]:
        """Scan each lead type once. Returns ``{"orphansChecked", "created"}``.

        ``orphansChecked`` counts the orphans the scan returned, not every lead
        older than the grace window: leads already traced are filtered out by
        the query itself. ``created`` counts the notifications filed, which is
        lower when a lead gains a trace between the scan and the insert.
        """
        now = int(now_ts if now_ts is not None else time.time())
        cutoff = now - self.grace_seconds
        checked = 0
        created = 0
        for lead_type in LeadType:
            orphans = await self.db.leads.find_orphans(
                lead_type, cutoff_ts=cutoff, limit=self.batch_size
            )
            checked += len(orphans)
            filed = 0
            for ref in orphans:
                # Another run may have filed it since the scan.
                if await self.db.pending_notifications.exists_for(ref):
                    continue
                await self.db.pending_notifications.create(ref, now_ts=now)
                filed += 1
                self.logger.info("Filed pending notification for orphaned lead %s", ref)
            created += filed
            if self.metrics:
                self.metrics.inc_orphans(lead_type.value, filed)
        if checked:
            self.logger.info("Reconciler checked %d orphan(s), filed %d", checked, created)
        return {"orphansChecked": checked, "created": created}


__all__ = ["DEFAULT_GRACE_SECONDS", "DEFAULT_RECONCILER_BATCH", "OrphanReconciler"]
