# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lead tables and the quiz content needed to describe a lead.

Leads are written by the quiz front end; the pipeline only reads them. The
tables are created with ``IF NOT EXISTS`` so a standalone deployment has a
schema to work against, and an existing one is left alone.
"""

from __future__ import annotations

from typing import Any

from ..models import Lead, LeadRef, LeadType, ResultContent, localized
from ..sql import Epoch, Integer, Json, String, Table


class LeadTable(Table):
    """Common shape of the two lead tables."""

    lead_type: LeadType

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("email", String, nullable=False)
        c.column("score", Integer, nullable=False, default=0)
        c.column("total_questions", Integer, nullable=False, default=0)
        c.column("language", String, default="en")
        c.column("quiz_id", String)
        c.column("created_at", Epoch, nullable=False)
        self.indexes = [(f"idx_{self.name}_created", "created_at")]

    async def find_orphans(self, *, cutoff_ts: int, limit: int) -> list[dict[str, Any]]:
        """Leads older than the cutoff with no trace anywhere in the pipeline.

        A lead counts as traced once any audit row, queue row or pending
        notification references it, whatever its status.
        """
        column = self.lead_type.column
        return await self.adapter.fetch_all(
            f"""
            SELECT l.id, l.created_at FROM {self.name} l
            WHERE l.created_at < :cutoff_ts
              AND NOT EXISTS (SELECT 1 FROM email_logs g WHERE g.{column} = l.id)
              AND NOT EXISTS (SELECT 1 FROM email_queue q WHERE q.{column} = l.id)
              AND NOT EXISTS (
                  SELECT 1 FROM pending_email_notifications p
                  WHERE p.lead_type = :lead_type AND p.lead_id = l.id
              )
            ORDER BY l.created_at ASC, l.id ASC
            LIMIT :limit
            """,
            {"cutoff_ts": cutoff_ts, "lead_type": self.lead_type.value, "limit": limit},
        )

    async def get(self, lead_id: str) -> dict[str, Any] | None:
        return await self.select_one({"id": lead_id})


class QuizLeadsTable(LeadTable):
    name = LeadType.QUIZ.table
    lead_type = LeadType.QUIZ


class HypothesisLeadsTable(LeadTable):
    name = LeadType.HYPOTHESIS.table
    lead_type = LeadType.HYPOTHESIS

    def configure(self) -> None:
        super().configure()
        self.columns.column("session_id", String)


class QuizzesTable(Table):
    """Quizzes: only the fields the emails need. ``title`` is ``{lang: text}``."""

    name = "quizzes"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("slug", String)
        c.column("title", Json)
        c.column("created_at", Epoch)


class QuizResultLevelsTable(Table):
    """Score ranges of a quiz with their localized result content."""

    name = "quiz_result_levels"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("quiz_id", String, nullable=False)
        c.column("min_score", Integer, nullable=False)
        c.column("max_score", Integer, nullable=False)
        c.column("title", Json)
        c.column("description", Json)
        c.column("insights", Json)
        self.indexes = [("idx_quiz_result_levels_quiz", "quiz_id, min_score")]

    async def for_score(self, quiz_id: str, score: int) -> dict[str, Any] | None:
        """Level whose range contains ``score``; the highest level otherwise."""
        levels = await self.select({"quiz_id": quiz_id}, order_by="min_score ASC")
        if not levels:
            return None
        for level in levels:
            if level["min_score"] <= score <= level["max_score"]:
                return level
        return levels[-1]


class LeadDirectory:
    """Read access to leads, dispatched on :class:`LeadType`."""

    def __init__(
        self,
        quiz_leads: QuizLeadsTable,
        hypothesis_leads: HypothesisLeadsTable,
        quizzes: QuizzesTable,
        result_levels: QuizResultLevelsTable,
    ):
        self.tables: dict[LeadType, LeadTable] = {
            LeadType.QUIZ: quiz_leads,
            LeadType.HYPOTHESIS: hypothesis_leads,
        }
        self.quizzes = quizzes
        self.result_levels = result_levels

    def table_for(self, lead_type: LeadType) -> LeadTable:
        return self.tables[LeadType(lead_type)]

    async def find_orphans(
        self, lead_type: LeadType, *, cutoff_ts: int, limit: int
    ) -> list[LeadRef]:
        rows = await self.table_for(lead_type).find_orphans(cutoff_ts=cutoff_ts, limit=limit)
        return [LeadRef(lead_type, row["id"]) for row in rows]

    async def get_lead(self, ref: LeadRef) -> Lead | None:
        """Load a lead with its quiz title and, for quiz leads, its result level."""
        row = await self.table_for(ref.lead_type).get(ref.lead_id)
        if row is None:
            return None
        language = row.get("language") or "en"
        score = int(row.get("score") or 0)
        quiz_id = row.get("quiz_id")
        quiz_title = None
        result = None
        if quiz_id:
            quiz = await self.quizzes.select_one({"id": quiz_id})
            if quiz is not None:
                quiz_title = localized(quiz.get("title"), language, "Quiz")
            if ref.lead_type is LeadType.QUIZ:
                level = await self.result_levels.for_score(quiz_id, score)
                if level is not None:
                    result = ResultContent(
                        title=localized(level.get("title"), language, "Your Results"),
                        description=localized(level.get("description"), language, ""),
                        insights=list(level.get("insights") or []),
                    )
        return Lead(
            ref=ref,
            email=row["email"],
            score=score,
            total_questions=int(row.get("total_questions") or 0),
            language=language,
            quiz_id=quiz_id,
            quiz_title=quiz_title,
            created_at=row.get("created_at"),
            session_id=row.get("session_id"),
            result=result,
        )


__all__ = [
    "HypothesisLeadsTable",
    "LeadDirectory",
    "LeadTable",
    "QuizLeadsTable",
    "QuizResultLevelsTable",
    "QuizzesTable",
]
