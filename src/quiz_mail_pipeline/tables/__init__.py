# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for the pipeline schema."""

from .app_settings import AppSettingsTable
from .email_logs import EmailLogsTable
from .email_queue import EmailQueueTable
from .leads import (
    HypothesisLeadsTable,
    LeadDirectory,
    LeadTable,
    QuizLeadsTable,
    QuizResultLevelsTable,
    QuizzesTable,
)
from .pending_notifications import PendingNotificationsTable

__all__ = [
    "AppSettingsTable",
    "EmailLogsTable",
    "EmailQueueTable",
    "HypothesisLeadsTable",
    "LeadDirectory",
    "LeadTable",
    "PendingNotificationsTable",
    "QuizLeadsTable",
    "QuizResultLevelsTable",
    "QuizzesTable",
]
