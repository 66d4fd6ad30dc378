# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised by the pipeline."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for pipeline errors. ``code`` is a stable machine-readable tag."""

    code = "pipeline_error"

    def __init__(self, message: str = "Pipeline error"):
        super().__init__(message)


class TransportConfigurationError(PipelineError):
    """Raised when neither the API transport nor the SMTP transport is configured."""

    code = "missing_transport_configuration"

    def __init__(self, message: str = "No email transport configured (set RESEND_API_KEY or smtp_host)"):
        super().__init__(message)


class CredentialEncodingError(PipelineError):
    """Raised when SMTP credentials cannot be carried by the AUTH exchange."""

    code = "invalid_credential_encoding"


class LeadNotFoundError(PipelineError):
    """Raised when a pending notification points at a lead that no longer exists."""

    code = "lead_not_found"

    def __init__(self, message: str = "Lead not found"):
        super().__init__(message)


class RenderError(PipelineError):
    """Raised when the render boundary returns something that cannot be queued."""

    code = "render_error"


class LogEntryNotFoundError(PipelineError):
    """Raised when a manual resend names an audit entry that does not exist."""

    code = "log_entry_not_found"

    def __init__(self, log_id: str):
        super().__init__(f"Email log not found: {log_id}")
        self.log_id = log_id
