"""Test doubles and builders shared by the test modules."""

from typing import Any

from quiz_mail_pipeline.models import LeadRef, LeadType
from quiz_mail_pipeline.persistence import PipelineDb
from quiz_mail_pipeline.transports import EmailTransport, SendResult

NOW = 1_700_000_000


class DummyTransport(EmailTransport):
    """Transport that records messages and replays scripted results."""

    name = "dummy"

    def __init__(self, results=None):
        self.sent: list[dict[str, Any]] = []
        self.results = list(results or [])
        self.closed = False

    async def send(self, message):
        self.sent.append(dict(message))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return SendResult.ok(f"provider-{len(self.sent)}")

    async def aclose(self):
        self.closed = True


def message_for(lead: LeadRef | None = None, **overrides) -> dict[str, Any]:
    message = {
        "recipient_email": "user@example.com",
        "sender_email": "noreply@sparkly.hr",
        "sender_name": "Sparkly",
        "subject": "Your Quiz Results",
        "html_body": "<p>Results</p>",
        "email_type": "quiz_result_user",
        "language": "en",
        "quiz_id": "quiz-1",
    }
    if lead is not None:
        message["lead"] = lead
    message.update(overrides)
    return message


async def add_lead(
    db: PipelineDb,
    lead_type: LeadType,
    lead_id: str,
    *,
    created_at: int,
    email: str = "lead@example.com",
    score: int = 7,
    total_questions: int = 10,
    quiz_id: str | None = "quiz-1",
    language: str = "en",
) -> LeadRef:
    await db.leads.table_for(lead_type).insert(
        {
            "id": lead_id,
            "email": email,
            "score": score,
            "total_questions": total_questions,
            "language": language,
            "quiz_id": quiz_id,
            "created_at": created_at,
        }
    )
    return LeadRef(lead_type, lead_id)
