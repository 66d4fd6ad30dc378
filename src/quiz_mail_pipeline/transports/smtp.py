# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport built on aiosmtplib.

TLS behaviour follows the port and the ``smtp_tls`` flag:

- port 465 with TLS: implicit TLS (``use_tls=True``)
- any other port with TLS: STARTTLS (``start_tls=True``)
- TLS disabled: plain SMTP

One connection is opened lazily on the first message and reused for the
rest of the invocation. A failed send drops the connection so the next
message starts from a clean session.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

import aiosmtplib

from ..exceptions import CredentialEncodingError
from ..logger import get_logger, summarise_address
from ..retry import RetryStrategy
from .base import EmailTransport, SendResult

_FORBIDDEN_CREDENTIAL_CHARS = ("\x00", "\r", "\n")


def validate_credential(label: str, value: str | None) -> None:
    """Reject credentials that the AUTH exchange cannot carry.

    aiosmtplib encodes AUTH PLAIN/LOGIN payloads as UTF-8 and base64; NUL
    separates the PLAIN fields and CR/LF end the command line.

    Raises:
        CredentialEncodingError: naming the credential and the offending character.
    """
    if value is None:
        return
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise CredentialEncodingError(
            f"SMTP {label} is not valid UTF-8 (position {exc.start}); re-enter it in the email settings"
        ) from exc
    for char in _FORBIDDEN_CREDENTIAL_CHARS:
        if char in value:
            raise CredentialEncodingError(
                f"SMTP {label} contains a control character ({char!r}) that cannot be sent in SMTP AUTH"
            )


def build_message(message: dict[str, Any]) -> EmailMessage:
    """Build the MIME message for a queued row.

    Non-ASCII display names and subjects are RFC 2047 encoded by the
    ``email`` package on serialisation.
    """
    msg = EmailMessage()
    msg["From"] = formataddr((message.get("sender_name") or "", message["sender_email"]))
    msg["To"] = message["recipient_email"]
    msg["Subject"] = message["subject"]
    if reply_to := message.get("reply_to_email"):
        msg["Reply-To"] = reply_to
    domain = message["sender_email"].rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg.set_content(message["html_body"], subtype="html")
    return msg


class SmtpTransport(EmailTransport):
    """Delivers messages through one SMTP server."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        if not host:
            raise ValueError("host is required")
        validate_credential("username", username)
        validate_credential("password", password)
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self._smtp: aiosmtplib.SMTP | None = None
        self.logger = get_logger("SmtpTransport")

    def _client(self) -> aiosmtplib.SMTP:
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout
            )
        if self.use_tls:
            return aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=self.timeout
            )
        return aiosmtplib.SMTP(
            hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=self.timeout
        )

    async def _connection(self) -> aiosmtplib.SMTP:
        if self._smtp is not None:
            return self._smtp
        smtp = self._client()

        async def _do_connect() -> None:
            await smtp.connect()
            if self.username and self.password:
                await smtp.login(self.username, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        self._smtp = smtp
        return smtp

    async def send(self, message: dict[str, Any]) -> SendResult:
        msg = build_message(message)
        try:
            smtp = await self._connection()
            errors, _response = await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            await self._drop_connection()
            is_temporary, smtp_code = RetryStrategy.classify_error(exc)
            error = str(exc) or type(exc).__name__
            if smtp_code:
                error = f"{error} (SMTP {smtp_code})"
            self.logger.warning(
                "SMTP send of message %s to %s failed: %s",
                message.get("id"),
                summarise_address(message.get("recipient_email")),
                error,
            )
            return SendResult.failed(error, permanent=not is_temporary)
        if errors:
            # Single recipient: any refusal means the message was not delivered.
            code, text = next(iter(errors.values()))
            error = f"Recipient refused: {code} {text}"
            return SendResult.failed(error, permanent=500 <= int(code) < 600)
        return SendResult.ok(msg["Message-ID"])

    async def _drop_connection(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            smtp.close()
        except (aiosmtplib.SMTPException, OSError) as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def aclose(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self.logger.debug("SMTP QUIT failed, closing socket: %s", exc)
            smtp.close()


__all__ = ["SmtpTransport", "build_message", "validate_credential"]
