# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the pipeline.

All metrics use the ``qmp_`` prefix (quiz-mail-pipeline).

Metrics exposed:
    - ``qmp_sent_total``: Counter of delivered emails per email type.
    - ``qmp_failed_total``: Counter of terminal delivery failures per email type.
    - ``qmp_retried_total``: Counter of failures rescheduled for retry per email type.
    - ``qmp_reclaimed_total``: Counter of abandoned claims returned to the queue.
    - ``qmp_orphans_total``: Counter of pending notifications filed per lead type.
    - ``qmp_notifications_total``: Counter of resolved notifications per outcome.
    - ``qmp_pending_messages``: Gauge of messages pending or processing.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class PipelineMetrics:
    """Prometheus metrics collector for the pipeline.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private
                registry is created when omitted, so several pipelines (and
                tests) can coexist in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "qmp_sent_total", "Total delivered emails", ["email_type"], registry=self.registry
        )
        self.failed = Counter(
            "qmp_failed_total", "Total terminal delivery failures", ["email_type"], registry=self.registry
        )
        self.retried = Counter(
            "qmp_retried_total", "Total failures rescheduled for retry", ["email_type"], registry=self.registry
        )
        self.reclaimed = Counter(
            "qmp_reclaimed_total", "Total abandoned claims returned to pending", registry=self.registry
        )
        self.orphans = Counter(
            "qmp_orphans_total", "Total pending notifications filed for orphaned leads",
            ["lead_type"], registry=self.registry,
        )
        self.notifications = Counter(
            "qmp_notifications_total", "Total resolved pending notifications",
            ["outcome"], registry=self.registry,
        )
        self.pending = Gauge(
            "qmp_pending_messages", "Current pending or processing messages", registry=self.registry
        )

    def inc_sent(self, email_type: str) -> None:
        self.sent.labels(email_type=email_type or "unknown").inc()

    def inc_failed(self, email_type: str) -> None:
        self.failed.labels(email_type=email_type or "unknown").inc()

    def inc_retried(self, email_type: str) -> None:
        self.retried.labels(email_type=email_type or "unknown").inc()

    def inc_reclaimed(self, count: int = 1) -> None:
        if count:
            self.reclaimed.inc(count)

    def inc_orphans(self, lead_type: str, count: int = 1) -> None:
        if count:
            self.orphans.labels(lead_type=lead_type).inc(count)

    def inc_notification(self, outcome: str) -> None:
        """Count a resolved notification (``sent``, ``skipped`` or ``failed``)."""
        self.notifications.labels(outcome=outcome).inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)


__all__ = ["PipelineMetrics"]
