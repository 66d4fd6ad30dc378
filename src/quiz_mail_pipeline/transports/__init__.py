# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email transports and provider selection."""

from __future__ import annotations

from ..config_loader import ProviderConfig
from ..exceptions import TransportConfigurationError
from .base import EmailTransport, SendResult
from .resend import RESEND_API_URL, ResendTransport
from .smtp import SmtpTransport, build_message, validate_credential


def select_transport(config: ProviderConfig) -> EmailTransport:
    """Pick the transport for an invocation.

    The HTTP API wins when an API key is configured, SMTP is used when a host
    is configured.

    Raises:
        TransportConfigurationError: If neither provider is configured.
        CredentialEncodingError: If the SMTP credentials cannot be sent.
    """
    if config.api_key:
        return ResendTransport(config.api_key)
    if config.smtp_host:
        return SmtpTransport(
            config.smtp_host,
            config.smtp_port,
            config.smtp_username,
            config.smtp_password,
            use_tls=config.smtp_tls,
        )
    raise TransportConfigurationError()


__all__ = [
    "RESEND_API_URL",
    "EmailTransport",
    "ResendTransport",
    "SendResult",
    "SmtpTransport",
    "build_message",
    "select_transport",
    "validate_credential",
]
