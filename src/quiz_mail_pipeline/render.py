# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Render boundary: turning a lead into one or more emails.

The pipeline does not own templates. Callers provide a renderer, a callable
taking a :class:`~quiz_mail_pipeline.models.Lead` and returning a
:class:`~quiz_mail_pipeline.models.RenderedEmail` or a sequence of them. It
may be a plain function or a coroutine function, and it may raise.

:class:`DefaultResultRenderer` produces plain result emails so a standalone
deployment has something to send.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Sequence
from html import escape
from typing import Union

from .exceptions import RenderError
from .models import Lead, LeadType, RenderedEmail

RenderOutput = Union[RenderedEmail, Sequence[RenderedEmail]]
Renderer = Callable[[Lead], Union[RenderOutput, Awaitable[RenderOutput]]]

_FOOTER = """
      <p style="color: #666; font-size: 12px; margin-top: 40px;">
        This email was sent automatically from Sparkly.hr
      </p>"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="UTF-8">
    <title>{escape(title)}</title>
  </head>
  <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
{body}
  </body>
</html>
"""


def _score_line(lead: Lead) -> str:
    return f"Score: {lead.score}/{lead.total_questions} ({lead.percentage}%)"


class DefaultResultRenderer:
    """Minimal result emails.

    Quiz leads get one email with the matched result level. Hypothesis leads
    get a user email and, when ``admin_email`` is set, a notification for
    the admin.
    """

    def __init__(self, admin_email: str | None = None):
        self.admin_email = admin_email

    def __call__(self, lead: Lead) -> list[RenderedEmail]:
        if lead.ref.lead_type is LeadType.QUIZ:
            return [self.quiz_result(lead)]
        emails = [self.hypothesis_result(lead)]
        if self.admin_email:
            emails.append(self.hypothesis_admin(lead))
        return emails

    def quiz_result(self, lead: Lead) -> RenderedEmail:
        title = lead.result.title if lead.result else "Your Results"
        description = lead.result.description if lead.result else ""
        body = f"""      <h1 style="color: #333;">Your Quiz Results</h1>
      <p>Thank you for completing the quiz!</p>
      <div style="background: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <h2 style="color: #6366f1; margin-top: 0;">{escape(title)}</h2>
        <p style="font-size: 24px; font-weight: bold; color: #333;">{_score_line(lead)}</p>
        <p>{escape(description)}</p>
      </div>{_FOOTER}"""
        return RenderedEmail(
            subject=f"Your Quiz Results: {title}",
            html=_page("Your Quiz Results", body),
            email_type="quiz_result_user",
        )

    def hypothesis_result(self, lead: Lead) -> RenderedEmail:
        quiz_title = lead.quiz_title or "Quiz"
        body = f"""      <h1 style="color: #333;">Your Quiz Results</h1>
      <p>Thank you for completing the {escape(quiz_title)} quiz!</p>
      <div style="background: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <p style="font-size: 24px; font-weight: bold; color: #333;">{_score_line(lead)}</p>
      </div>{_FOOTER}"""
        return RenderedEmail(
            subject=f"Your {quiz_title} Results",
            html=_page("Your Quiz Results", body),
            email_type="hypothesis_results",
        )

    def hypothesis_admin(self, lead: Lead) -> RenderedEmail:
        quiz_title = lead.quiz_title or "Quiz"
        body = f"""      <h1 style="color: #333;">New Quiz Completion</h1>
      <p>A new respondent has completed the {escape(quiz_title)} quiz.</p>
      <div style="background: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
        <p><strong>Email:</strong> {escape(lead.email)}</p>
        <p><strong>Score:</strong> {lead.score}/{lead.total_questions} ({lead.percentage}%)</p>
        <p><strong>Language:</strong> {escape(lead.language.upper())}</p>
      </div>"""
        return RenderedEmail(
            subject=f"New {quiz_title} Completion: {lead.email}",
            html=_page("New Quiz Completion", body),
            email_type="hypothesis_admin",
            recipient_email=self.admin_email,
        )


async def render_lead(renderer: Renderer, lead: Lead) -> list[RenderedEmail]:
    """Call the renderer and normalise its output.

    Raises:
        RenderError: If the output is empty or is not made of
            :class:`RenderedEmail` with a subject and a body.
    """
    output = renderer(lead)
    if inspect.isawaitable(output):
        output = await output
    emails = [output] if isinstance(output, RenderedEmail) else list(output or [])
    if not emails:
        raise RenderError(f"Renderer produced no email for lead {lead.ref}")
    for email in emails:
        if not isinstance(email, RenderedEmail):
            raise RenderError(f"Renderer returned {type(email).__name__}, expected RenderedEmail")
        if not email.subject or not email.html:
            raise RenderError(f"Renderer returned an email without subject or body for lead {lead.ref}")
    return emails


__all__ = ["DefaultResultRenderer", "Renderer", "render_lead"]
