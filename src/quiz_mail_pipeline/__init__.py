"""Asynchronous result-email delivery pipeline for the quiz funnel builder.

This package turns completed quiz submissions ("leads") into reliably sent
result emails. It provides:

- An orphan reconciler that notices leads with no email trace
- A pending-notification registry that renders and enqueues emails
- A delivery worker with exponential backoff and stuck-item reclaim
- Interchangeable HTTP API (Resend) and SMTP transports
- An append-only audit log used for idempotency and operator history
- FastAPI trigger endpoints, a click CLI and Prometheus metrics

Example:
    Running one delivery pass from code::

        from quiz_mail_pipeline.config_loader import Settings
        from quiz_mail_pipeline.core import MailPipeline

        pipeline = MailPipeline(Settings(db_path="/data/quiz_mail.db"))
        await pipeline.init()
        summary = await pipeline.process_email_queue()
        # {"processed": 3, "sent": 3, "failed": 0, ...}
"""

__version__ = "0.4.0"
