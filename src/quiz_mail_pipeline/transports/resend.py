# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP API transport (Resend)."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from ..logger import get_logger, summarise_address
from ..retry import classify_http_status, classify_message
from .base import EmailTransport, SendResult

RESEND_API_URL = "https://api.resend.com/emails"


class ResendTransport(EmailTransport):
    """Posts messages to the Resend REST API.

    The :class:`aiohttp.ClientSession` is created on first use and shared by
    every message of the invocation. A session passed in by the caller is
    left open by :meth:`aclose`.
    """

    name = "resend"

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = RESEND_API_URL,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self.logger = get_logger("ResendTransport")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    @staticmethod
    def build_payload(message: dict[str, Any]) -> dict[str, Any]:
        """Request body for the ``/emails`` endpoint."""
        sender_name = message.get("sender_name")
        sender_email = message["sender_email"]
        payload: dict[str, Any] = {
            "from": f"{sender_name} <{sender_email}>" if sender_name else sender_email,
            "to": [message["recipient_email"]],
            "subject": message["subject"],
            "html": message["html_body"],
        }
        if message.get("reply_to_email"):
            payload["reply_to"] = message["reply_to_email"]
        return payload

    async def send(self, message: dict[str, Any]) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            session = self._get_session()
            async with session.post(
                self.api_url, json=self.build_payload(message), headers=headers
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    body = {}
                if resp.status >= 400:
                    error = body.get("message") or body.get("error") or f"HTTP {resp.status}"
                    temporary = classify_http_status(resp.status)
                    self.logger.warning(
                        "Resend rejected message %s to %s (HTTP %d): %s",
                        message.get("id"),
                        summarise_address(message.get("recipient_email")),
                        resp.status,
                        error,
                    )
                    return SendResult.failed(str(error), permanent=not temporary)
                return SendResult.ok(body.get("id"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            error = str(exc) or type(exc).__name__
            return SendResult.failed(error, permanent=not classify_message(error))

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


__all__ = ["RESEND_API_URL", "ResendTransport"]
