"""Logging helpers for the quiz mail pipeline.

Handlers, levels and formats are configured once by the entry points
(``cli`` and ``server``) through :func:`configure_logging`; modules only ask
for named loggers.

Example:
    Typical usage in a module::

        from quiz_mail_pipeline.logger import get_logger

        logger = get_logger("DeliveryWorker")
        logger.info("Batch finished")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "QuizMailPipeline") -> logging.Logger:
    """Return the standard library logger bound to ``name``."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for an entry point.

    ``force=True`` replaces handlers installed by a previous call so that
    uvicorn reloads and repeated CLI invocations do not duplicate output.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )


def summarise_address(value: str | None) -> str:
    """Return a compact representation of an address for log lines."""
    if not value:
        return "-"
    value = value.strip()
    if len(value) > 80:
        return f"{value[:77]}..."
    return value
