import types

import pytest
from fastapi.testclient import TestClient

from quiz_mail_pipeline.api import API_TOKEN_HEADER_NAME, create_app
from quiz_mail_pipeline.exceptions import LogEntryNotFoundError, TransportConfigurationError

API_TOKEN = "secret-token"

LOG_ENTRY = {
    "id": "log-1",
    "email_type": "quiz_result_user",
    "recipient_email": "ana@example.com",
    "status": "sent",
    "created_at": 1_700_000_000,
}


class DummyTable:
    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    async def list_entries(self, **kwargs):
        self.calls.append(kwargs)
        return self.rows

    async def list_messages(self, **kwargs):
        self.calls.append(kwargs)
        return self.rows

    async def list_notifications(self, **kwargs):
        self.calls.append(kwargs)
        return self.rows


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.db = types.SimpleNamespace(
            email_logs=DummyTable([LOG_ENTRY]),
            email_queue=DummyTable([]),
            pending_notifications=DummyTable([]),
        )
        self.worker_error = None

    async def process_email_queue(self):
        if self.worker_error:
            raise self.worker_error
        return {"processed": 2, "sent": 1, "failed": 0, "retried": 1, "skipped": 0, "reclaimed": 0}

    async def process_pending_emails(self):
        return {"processed": 1, "sent": 1, "failed": 0, "skipped": 0}

    async def reconcile_orphans(self):
        return {"orphansChecked": 3, "created": 1}

    async def status(self):
        return {"ok": True, "active": True, "running": False, "last_runs": {}}

    async def stats(self):
        return {"email_queue": {"pending": 1}, "email_logs": {"sent": 4}, "pending_notifications": {}}

    async def resend(self, log_id, recipient_email=None):
        self.calls.append(("resend", log_id, recipient_email))
        if log_id == "missing":
            raise LogEntryNotFoundError(log_id)
        if log_id == "empty":
            raise ValueError("Email log empty has no stored body to resend")
        return "msg-new"

    async def list_settings(self):
        return {"smtp_host": "smtp.local", "smtp_password": "********"}

    async def handle_command(self, cmd, payload=None):
        self.calls.append((cmd, payload))
        if cmd == "cleanup":
            return {"ok": True, "removed": 4}
        return {"ok": True}


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    response = client.get("/status")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_functions_require_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    assert client.post("/functions/process-email-queue").status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))

    assert client.get("/status").status_code == 200


def test_health_does_not_require_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    assert client.get("/health").json() == {"status": "ok"}


def test_function_triggers_return_summary(client_and_service):
    client, _ = client_and_service

    queue = client.post("/functions/process-email-queue")
    pending = client.post("/functions/process-pending-emails")
    orphans = client.post("/functions/reconcile-orphans")

    assert queue.status_code == 200
    assert queue.json() == {"success": True, "processed": 2, "sent": 1, "failed": 0, "retried": 1,
                            "skipped": 0, "reclaimed": 0}
    assert pending.json()["success"] is True
    assert orphans.json() == {"success": True, "orphansChecked": 3, "created": 1}


def test_function_failure_returns_500_with_error(client_and_service):
    client, svc = client_and_service
    svc.worker_error = TransportConfigurationError()

    response = client.post("/functions/process-email-queue")

    assert response.status_code == 500
    assert "No email transport configured" in response.json()["error"]


def test_preflight_is_answered_without_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))

    plain = client.options("/functions/process-email-queue")
    cors = client.options(
        "/functions/process-email-queue",
        headers={"Origin": "https://admin.example", "Access-Control-Request-Method": "POST"},
    )

    assert plain.status_code == 200
    assert cors.status_code == 200
    assert cors.headers["access-control-allow-origin"] == "*"


def test_inspection_endpoints(client_and_service):
    client, svc = client_and_service

    logs = client.get("/email-logs", params={"status": "sent", "recipient": "ana", "limit": 5})
    queue = client.get("/email-queue")
    pending = client.get("/pending-notifications", params={"lead_type": "quiz"})
    stats = client.get("/stats")

    assert logs.json()["entries"][0]["id"] == "log-1"
    assert svc.db.email_logs.calls[0] == {
        "status": "sent", "email_type": None, "recipient": "ana", "limit": 5, "offset": 0
    }
    assert queue.json() == {"ok": True, "error": None, "messages": []}
    assert svc.db.pending_notifications.calls[0]["lead_type"] == "quiz"
    assert pending.json()["notifications"] == []
    assert stats.json()["email_logs"] == {"sent": 4}


def test_resend_endpoint(client_and_service):
    client, svc = client_and_service

    response = client.post("/email-logs/log-1/resend", json={"recipient_email": "other@example.com"})

    assert response.json()["id"] == "msg-new"
    assert svc.calls[-1] == ("resend", "log-1", "other@example.com")


def test_resend_without_body_uses_original_recipient(client_and_service):
    client, svc = client_and_service

    client.post("/email-logs/log-1/resend")

    assert svc.calls[-1] == ("resend", "log-1", None)


def test_resend_errors(client_and_service):
    client, _ = client_and_service

    assert client.post("/email-logs/missing/resend").status_code == 404
    assert client.post("/email-logs/empty/resend").status_code == 400


def test_settings_endpoints(client_and_service):
    client, svc = client_and_service

    listed = client.get("/settings")
    updated = client.put("/settings/smtp_host", json={"value": "smtp.new"})

    assert listed.json()["settings"]["smtp_password"] == "********"
    assert updated.json()["ok"] is True
    assert svc.calls[-1] == ("setSetting", {"key": "smtp_host", "value": "smtp.new"})


def test_commands_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/suspend").json() == {"ok": True}
    assert client.post("/commands/activate").json() == {"ok": True}
    assert client.post("/commands/cleanup", json={"older_than_seconds": 60}).json() == {"ok": True, "removed": 4}
    assert svc.calls[-1] == ("cleanup", {"older_than_seconds": 60})


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.content == b"metrics-data"
