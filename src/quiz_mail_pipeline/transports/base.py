# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transport contract shared by the HTTP API and SMTP providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class SendResult:
    """Outcome of one send attempt.

    Attributes:
        success: True when the provider accepted the message.
        error: Human-readable failure reason.
        provider_message_id: Identifier assigned by the provider, if any.
        permanent: True when the failure will not go away on retry
            (rejected credentials, invalid recipient, TLS mismatch).
    """

    success: bool
    error: str | None = None
    provider_message_id: str | None = None
    permanent: bool = False

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> SendResult:
        return cls(True, None, provider_message_id)

    @classmethod
    def failed(cls, error: str, permanent: bool = False) -> SendResult:
        return cls(False, error or "Unknown error", None, permanent)


class EmailTransport(ABC):
    """Sends one queued message through exactly one provider.

    A transport instance lives for one worker invocation. It may keep a
    connection open between messages; :meth:`aclose` releases it. Transports
    never retry: the queue owns the retry schedule.
    """

    name = "transport"

    @abstractmethod
    async def send(self, message: dict[str, Any]) -> SendResult:
        """Send a queued message row. Provider errors come back as a failed result."""
        ...

    async def aclose(self) -> None:
        """Release provider resources."""

    async def __aenter__(self) -> EmailTransport:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


__all__ = ["EmailTransport", "SendResult"]
