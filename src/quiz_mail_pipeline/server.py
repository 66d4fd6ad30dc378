# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn quiz_mail_pipeline.server:app --host 0.0.0.0 --port 8000

Configuration is read with :func:`~quiz_mail_pipeline.config_loader.load_settings`
(``QMP_CONFIG`` and ``QMP_*`` environment variables).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import Settings, load_settings
from .core import MailPipeline
from .logger import configure_logging


def build_app(settings: Settings | None = None) -> FastAPI:
    """Create a pipeline and the application serving it."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    pipeline = MailPipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the tickers with the application and stop them on shutdown."""
        await pipeline.start()
        yield
        await pipeline.stop()

    return create_app(pipeline, api_token=settings.api_token, lifespan=lifespan)


app = build_app()
