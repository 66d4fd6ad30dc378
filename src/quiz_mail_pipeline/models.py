# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Domain types shared by the pipeline components.

Models:
    - LeadType / LeadRef: tagged reference to one of the lead tables
    - Lead / ResultContent: a lead as handed to the render boundary
    - RenderedEmail: what the render boundary returns
    - MessageStatus / NotificationStatus / LogStatus: row states
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class LeadType(str, Enum):
    """Kinds of lead the pipeline knows about.

    Each kind lives in its own table and is referenced from the core tables
    through its own nullable column.
    """

    QUIZ = "quiz"
    HYPOTHESIS = "hypothesis"

    @property
    def column(self) -> str:
        """Typed reference column used by email_queue and email_logs."""
        return f"{self.value}_lead_id"

    @property
    def table(self) -> str:
        """Table holding leads of this kind."""
        return f"{self.value}_leads"

    @property
    def default_email_type(self) -> str:
        return "quiz_result_user" if self is LeadType.QUIZ else "hypothesis_results"


LEAD_COLUMNS = tuple(lead_type.column for lead_type in LeadType)


@dataclass(frozen=True)
class LeadRef:
    """Reference to exactly one lead of exactly one kind."""

    lead_type: LeadType
    lead_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "lead_type", LeadType(self.lead_type))
        if not self.lead_id:
            raise ValueError("lead_id is required")

    @property
    def column(self) -> str:
        return self.lead_type.column

    def as_columns(self) -> dict[str, str | None]:
        """Spread the reference over the typed columns (one set, others NULL)."""
        return {col: (self.lead_id if col == self.column else None) for col in LEAD_COLUMNS}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> LeadRef | None:
        """Read the reference back from a row carrying typed lead columns."""
        for lead_type in LeadType:
            value = row.get(lead_type.column)
            if value:
                return cls(lead_type, value)
        return None

    def __str__(self) -> str:
        return f"{self.lead_type.value}:{self.lead_id}"


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class LogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    QUEUED = "queued"


@dataclass
class ResultContent:
    """Localized result level matched to a lead's score."""

    title: str
    description: str = ""
    insights: list[Any] = field(default_factory=list)


@dataclass
class Lead:
    """A quiz respondent as seen by the render boundary. Read-only."""

    ref: LeadRef
    email: str
    score: int = 0
    total_questions: int = 0
    language: str = "en"
    quiz_id: str | None = None
    quiz_title: str | None = None
    created_at: int | None = None
    session_id: str | None = None
    result: ResultContent | None = None

    @property
    def percentage(self) -> int:
        if not self.total_questions:
            return 0
        return round(self.score / self.total_questions * 100)


@dataclass
class RenderedEmail:
    """One email produced by the render boundary.

    ``email_type`` defaults to the lead type's user-facing type and
    ``recipient_email`` to the lead's address.
    """

    subject: str
    html: str
    email_type: str | None = None
    recipient_email: str | None = None


def new_id() -> str:
    """Return a new UUID primary key."""
    return str(uuid.uuid4())


def localized(value: Any, language: str, fallback: str = "") -> str:
    """Pick ``language`` from a ``{lang: text}`` mapping, falling back to English."""
    if not value:
        return fallback
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get(language) or value.get("en") or fallback
    return fallback
