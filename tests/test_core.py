import asyncio
import time

import pytest

from quiz_mail_pipeline.config_loader import Settings
from quiz_mail_pipeline.core import MailPipeline
from quiz_mail_pipeline.exceptions import LogEntryNotFoundError
from quiz_mail_pipeline.models import LeadRef, LeadType

from tests.helpers import DummyTransport, add_lead, message_for


@pytest.fixture
def transport():
    return DummyTransport()


@pytest.fixture
def pipeline(db, transport):
    settings = Settings(db_path=db.adapter.db_path, worker_interval=3600, resolver_interval=3600,
                        reconciler_interval=3600)
    return MailPipeline(settings, db=db, transport_factory=lambda config: transport, environ={})


async def audited_entry(db, now, **overrides):
    entry = {
        "email_type": "quiz_result_user",
        "recipient_email": "ana@example.com",
        "subject": "Your Quiz Results",
        "status": "sent",
        "html_body": "<p>Results</p>",
        "language": "en",
        "quiz_id": "quiz-1",
        "lead": LeadRef(LeadType.QUIZ, "lead-1"),
    }
    entry.update(overrides)
    return await db.email_logs.append(entry, now_ts=now)


@pytest.mark.asyncio
async def test_full_flow_from_orphan_to_audit(pipeline, db, transport, now):
    await add_lead(db, LeadType.QUIZ, "lead-1", created_at=now - 300, email="ana@example.com")

    assert (await pipeline.reconcile_orphans(now_ts=now))["created"] == 1
    assert (await pipeline.process_pending_emails(now_ts=now + 60))["sent"] == 1
    assert (await pipeline.process_email_queue(now_ts=now + 60))["sent"] == 1

    assert [m["recipient_email"] for m in transport.sent] == ["ana@example.com"]
    entries = await db.email_logs.list_entries()
    assert [(e["status"], e["quiz_lead_id"]) for e in entries] == [("sent", "lead-1")]

    # Nothing left to do on a second pass.
    assert (await pipeline.reconcile_orphans(now_ts=now + 120))["created"] == 0
    assert (await pipeline.process_email_queue(now_ts=now + 120))["processed"] == 0
    assert set((await pipeline.status())["last_runs"]) == {"worker", "resolver", "reconciler"}


@pytest.mark.asyncio
async def test_resend_queues_copy_with_original_reference(pipeline, db, now):
    log_id = await audited_entry(db, now)

    msg_id = await pipeline.resend(log_id, now_ts=now)

    row = await db.email_queue.get(msg_id)
    assert row["original_log_id"] == log_id
    assert row["recipient_email"] == "ana@example.com"
    assert row["html_body"] == "<p>Results</p>"
    assert row["quiz_lead_id"] == "lead-1"
    assert row["sender_email"] == "noreply@sparkly.hr"


@pytest.mark.asyncio
async def test_resend_to_another_recipient_is_delivered(pipeline, db, transport, now):
    log_id = await audited_entry(db, now - 100)

    await pipeline.resend(log_id, "other@example.com", now_ts=now)
    summary = await pipeline.process_email_queue(now_ts=now)

    assert summary["sent"] == 1
    assert transport.sent[0]["recipient_email"] == "other@example.com"
    entries = await db.email_logs.list_entries()
    assert entries[0]["original_log_id"] == log_id
    # The original entry is untouched.
    original = await db.email_logs.get(log_id)
    assert original["recipient_email"] == "ana@example.com"


@pytest.mark.asyncio
async def test_resend_unknown_log_raises(pipeline):
    with pytest.raises(LogEntryNotFoundError):
        await pipeline.resend("missing")


@pytest.mark.asyncio
async def test_resend_without_body_raises(pipeline, db, now):
    log_id = await audited_entry(db, now, html_body=None)

    with pytest.raises(ValueError, match="no stored body"):
        await pipeline.resend(log_id)


@pytest.mark.asyncio
async def test_cleanup_uses_retention(pipeline, db):
    current = int(time.time())
    msg_id = await db.email_queue.enqueue(message_for(), now_ts=current - 10_000)
    token, _ = await db.email_queue.claim([msg_id], now_ts=current)
    await db.email_queue.mark_sent(msg_id, token=token, sent_ts=current - 9_000)

    assert await pipeline.cleanup(older_than_seconds=10_000) == 0
    assert await pipeline.cleanup(older_than_seconds=60) == 1


@pytest.mark.asyncio
async def test_list_settings_masks_secrets(pipeline, db, now):
    await db.app_settings.set("smtp_password", "hunter2", now_ts=now)
    await db.app_settings.set("resend_api_key", "", now_ts=now)
    await db.app_settings.set("smtp_host", "smtp.local", now_ts=now)

    masked = await pipeline.list_settings()
    revealed = await pipeline.list_settings(reveal_secrets=True)

    assert masked == {"resend_api_key": "", "smtp_host": "smtp.local", "smtp_password": "********"}
    assert revealed["smtp_password"] == "hunter2"


@pytest.mark.asyncio
async def test_handle_command(pipeline, db):
    assert await pipeline.handle_command("suspend") == {"ok": True, "active": False}
    assert (await pipeline.status())["active"] is False
    assert await pipeline.handle_command("activate") == {"ok": True, "active": True}
    assert await pipeline.handle_command("run now") == {"ok": True}
    assert await pipeline.handle_command("setSetting", {"key": "smtp_host", "value": "smtp.x"}) == {"ok": True}
    assert await db.app_settings.get("smtp_host") == "smtp.x"
    assert (await pipeline.handle_command("setSetting", {}))["ok"] is False
    assert (await pipeline.handle_command("resend", {}))["error"] == "log_id required"
    assert (await pipeline.handle_command("resend", {"log_id": "nope"}))["ok"] is False
    assert (await pipeline.handle_command("processEmailQueue"))["processed"] == 0
    assert await pipeline.handle_command("bogus") == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_tickers_run_jobs_and_stop(pipeline, db, transport):
    await db.email_queue.enqueue(message_for(), now_ts=int(time.time()) - 1)
    pipeline._active = True

    await pipeline.start()
    try:
        for _ in range(100):
            if transport.sent:
                break
            await asyncio.sleep(0.05)
    finally:
        await pipeline.stop()

    assert len(transport.sent) == 1
    assert (await pipeline.status())["running"] is False


@pytest.mark.asyncio
async def test_suspended_tickers_do_not_run_jobs(pipeline, db, transport):
    await db.email_queue.enqueue(message_for(), now_ts=int(time.time()) - 1)

    await pipeline.start()
    await asyncio.sleep(0.1)
    await pipeline.stop()

    assert transport.sent == []
