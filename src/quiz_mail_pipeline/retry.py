# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy for failed deliveries.

The schedule is exponential in the attempt number: after the n-th failure
a message waits ``2**n`` minutes before it becomes due again. A message
whose retry count reaches its ``max_retries`` fails permanently.

Error classification follows SMTP semantics (4xx temporary, 5xx permanent)
with pattern matching on the message for exceptions that carry no code.
"""

from __future__ import annotations

import asyncio

import aiosmtplib

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 60

_TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "rate limit",
    "throttl",
)

_PERMANENT_PATTERNS = (
    "wrong_version_number",  # TLS/STARTTLS mismatch
    "certificate verify failed",
    "ssl handshake",
    "certificate has expired",
    "self signed certificate",
    "authentication failed",
    "535",  # Authentication credentials invalid
    "534",  # Authentication mechanism too weak
    "530",  # Authentication required
    "invalid recipient",
    "validation_error",
)


class RetryStrategy:
    """Backoff schedule and retry decision for queued messages.

    Attributes:
        base_delay: Seconds waited after the first failure; doubled per attempt.
        skip_permanent: When true, errors classified as permanent fail the
            message immediately instead of consuming the remaining attempts.
    """

    def __init__(self, base_delay: int = DEFAULT_BASE_DELAY, skip_permanent: bool = False):
        self.base_delay = base_delay
        self.skip_permanent = skip_permanent

    def calculate_delay(self, retry_count: int) -> int:
        """Seconds to wait after the ``retry_count``-th failure (1-based)."""
        return (2 ** max(retry_count, 0)) * self.base_delay

    def next_attempt_at(self, retry_count: int, now_ts: int) -> int:
        return now_ts + self.calculate_delay(retry_count)

    def is_exhausted(self, retry_count: int, max_retries: int) -> bool:
        """True once ``retry_count`` failures reach the message's budget."""
        return retry_count >= max_retries

    def should_retry(self, retry_count: int, max_retries: int, permanent: bool = False) -> bool:
        if self.is_exhausted(retry_count, max_retries):
            return False
        if permanent and self.skip_permanent:
            return False
        return True

    @staticmethod
    def classify_error(exc: BaseException) -> tuple[bool, int | None]:
        """Classify an exception as temporary or permanent.

        Returns:
            tuple: (is_temporary, smtp_code)
        """
        smtp_code = None
        if isinstance(exc, aiosmtplib.SMTPResponseException):
            smtp_code = exc.code

        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return True, smtp_code

        if smtp_code:
            if 400 <= smtp_code < 500:
                return True, smtp_code
            if 500 <= smtp_code < 600:
                return False, smtp_code

        return classify_message(str(exc)), smtp_code


def classify_message(message: str) -> bool:
    """Classify an error text. Returns True when the error looks temporary."""
    error_msg = message.lower()
    for pattern in _TEMPORARY_PATTERNS:
        if pattern in error_msg:
            return True
    for pattern in _PERMANENT_PATTERNS:
        if pattern in error_msg:
            return False
    # Unknown errors are retried.
    return True


def classify_http_status(status: int) -> bool:
    """Classify an HTTP API response status. Returns True when temporary."""
    if status == 429 or status >= 500:
        return True
    return not 400 <= status < 500


__all__ = [
    "DEFAULT_BASE_DELAY",
    "DEFAULT_MAX_RETRIES",
    "RetryStrategy",
    "classify_http_status",
    "classify_message",
]
