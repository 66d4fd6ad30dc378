"""FastAPI application factory and HTTP schemas for the quiz mail pipeline.

This module provides the REST interface of the pipeline:

- Job triggers (``/functions/...``) called by an external scheduler, each
  answering CORS preflight requests
- Read-only views of the audit log, the queue and the pending notifications
- Operator commands (manual resend, queue cleanup, scheduler control)
- Health checks and Prometheus metrics exposure

Authentication uses the ``X-API-Token`` header when a token is configured.

Example:
    Creating and running the API application::

        from quiz_mail_pipeline.core import MailPipeline
        from quiz_mail_pipeline.api import create_app

        pipeline = MailPipeline(settings)
        app = create_app(pipeline, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from .core import MailPipeline
from .exceptions import LogEntryNotFoundError
from .logger import get_logger

logger = get_logger("PipelineAPI")

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type", API_TOKEN_HEADER_NAME]


async def require_token(request: Request, api_token: Optional[str] = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: bool
    running: bool
    last_runs: Dict[str, Any] = {}


class EmailLogInfo(BaseModel):
    """Audit entry as returned by ``/email-logs``."""
    id: str
    email_type: str
    recipient_email: str
    sender_email: Optional[str] = None
    sender_name: Optional[str] = None
    subject: Optional[str] = None
    status: str
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    language: Optional[str] = None
    quiz_id: Optional[str] = None
    quiz_lead_id: Optional[str] = None
    hypothesis_lead_id: Optional[str] = None
    original_log_id: Optional[str] = None
    html_body: Optional[str] = None
    resend_attempts: int = 0
    created_at: int


class EmailLogsResponse(CommandStatus):
    entries: List[EmailLogInfo]


class QueuedMessageInfo(BaseModel):
    """Queue row as returned by ``/email-queue`` (body omitted)."""
    id: str
    recipient_email: str
    sender_email: str
    sender_name: Optional[str] = None
    subject: str
    email_type: str
    language: Optional[str] = None
    quiz_id: Optional[str] = None
    quiz_lead_id: Optional[str] = None
    hypothesis_lead_id: Optional[str] = None
    original_log_id: Optional[str] = None
    status: str
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    scheduled_for: int
    processing_started_at: Optional[int] = None
    sent_at: Optional[int] = None
    created_at: int


class QueueResponse(CommandStatus):
    messages: List[QueuedMessageInfo]


class PendingNotificationInfo(BaseModel):
    id: str
    lead_type: str
    lead_id: str
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    created_at: int
    processed_at: Optional[int] = None


class PendingNotificationsResponse(CommandStatus):
    notifications: List[PendingNotificationInfo]


class StatsResponse(CommandStatus):
    email_queue: Dict[str, int]
    email_logs: Dict[str, int]
    pending_notifications: Dict[str, int]


class ResendPayload(BaseModel):
    recipient_email: Optional[str] = None


class ResendResponse(CommandStatus):
    id: Optional[str] = None


class CleanupPayload(BaseModel):
    older_than_seconds: Optional[int] = None


class CleanupResponse(CommandStatus):
    removed: int = 0


class SettingPayload(BaseModel):
    value: Optional[str] = None


class SettingsResponse(CommandStatus):
    settings: Dict[str, Optional[str]]


def create_app(
    svc: MailPipeline,
    api_token: Optional[str] = None,
    lifespan: Optional[Callable[[FastAPI], AsyncContextManager]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`quiz_mail_pipeline.core.MailPipeline` serving requests.
    api_token:
        Optional secret protecting every endpoint except ``/health`` and CORS
        preflight requests.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Quiz Mail Pipeline", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.pipeline = svc
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    functions = APIRouter(prefix="/functions", tags=["functions"])
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    async def run_function(name: str, job: Callable[[], Any]) -> JSONResponse:
        try:
            summary = await job()
        except Exception as exc:
            logger.exception("Invocation of %s failed: %s", name, exc)
            return JSONResponse(status_code=500, content={"error": str(exc) or type(exc).__name__})
        return JSONResponse(status_code=200, content={"success": True, **summary})

    @functions.options("/{name}")
    async def preflight(name: str):
        """Answer CORS preflight requests that reach the router."""
        return Response(status_code=200)

    @functions.post("/process-email-queue", dependencies=[auth_dependency])
    async def process_email_queue():
        return await run_function("process-email-queue", svc.process_email_queue)

    @functions.post("/process-pending-emails", dependencies=[auth_dependency])
    async def process_pending_emails():
        return await run_function("process-pending-emails", svc.process_pending_emails)

    @functions.post("/reconcile-orphans", dependencies=[auth_dependency])
    async def reconcile_orphans():
        return await run_function("reconcile-orphans", svc.reconcile_orphans)

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, dependencies=[auth_dependency])
    async def get_status():
        return StatusResponse.model_validate(await svc.status())

    @api.get("/email-logs", response_model=EmailLogsResponse, dependencies=[auth_dependency])
    async def email_logs(
        status_filter: Optional[str] = Query(None, alias="status"),
        email_type: Optional[str] = None,
        recipient: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        entries = await svc.db.email_logs.list_entries(
            status=status_filter, email_type=email_type, recipient=recipient, limit=limit, offset=offset
        )
        return EmailLogsResponse(ok=True, entries=[EmailLogInfo.model_validate(e) for e in entries])

    @api.get("/email-queue", response_model=QueueResponse, dependencies=[auth_dependency])
    async def email_queue(
        status_filter: Optional[str] = Query(None, alias="status"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        rows = await svc.db.email_queue.list_messages(status=status_filter, limit=limit, offset=offset)
        return QueueResponse(ok=True, messages=[QueuedMessageInfo.model_validate(r) for r in rows])

    @api.get(
        "/pending-notifications", response_model=PendingNotificationsResponse, dependencies=[auth_dependency]
    )
    async def pending_notifications(
        status_filter: Optional[str] = Query(None, alias="status"),
        lead_type: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        rows = await svc.db.pending_notifications.list_notifications(
            status=status_filter, lead_type=lead_type, limit=limit, offset=offset
        )
        return PendingNotificationsResponse(
            ok=True, notifications=[PendingNotificationInfo.model_validate(r) for r in rows]
        )

    @api.get("/stats", response_model=StatsResponse, dependencies=[auth_dependency])
    async def stats():
        return StatsResponse(ok=True, **await svc.stats())

    @api.post("/email-logs/{log_id}/resend", response_model=ResendResponse, dependencies=[auth_dependency])
    async def resend(log_id: str, payload: Optional[ResendPayload] = None):
        recipient = payload.recipient_email if payload else None
        try:
            msg_id = await svc.resend(log_id, recipient)
        except LogEntryNotFoundError as exc:
            raise HTTPException(404, str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(400, str(exc)) from exc
        return ResendResponse(ok=True, id=msg_id)

    @api.get("/settings", response_model=SettingsResponse, dependencies=[auth_dependency])
    async def list_settings():
        return SettingsResponse(ok=True, settings=await svc.list_settings())

    @api.put("/settings/{key}", response_model=BasicOkResponse, dependencies=[auth_dependency])
    async def set_setting(key: str, payload: SettingPayload):
        result = await svc.handle_command("setSetting", {"key": key, "value": payload.value})
        return BasicOkResponse.model_validate(result)

    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        return BasicOkResponse.model_validate(await svc.handle_command("run now"))

    @commands.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Suspend the internal tickers."""
        return BasicOkResponse.model_validate(await svc.handle_command("suspend"))

    @commands.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Resume the internal tickers."""
        return BasicOkResponse.model_validate(await svc.handle_command("activate"))

    @commands.post("/cleanup", response_model=CleanupResponse, response_model_exclude_none=True)
    async def cleanup(payload: Optional[CleanupPayload] = None):
        older_than = payload.older_than_seconds if payload else None
        result = await svc.handle_command("cleanup", {"older_than_seconds": older_than})
        return CleanupResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the pipeline."""
        return Response(content=svc.metrics.generate_latest(), media_type=CONTENT_TYPE_LATEST)

    api.include_router(functions)
    api.include_router(commands)
    return api
