import sqlite3

import pytest

from quiz_mail_pipeline.models import LeadRef, LeadType
from quiz_mail_pipeline.persistence import PipelineDb
from quiz_mail_pipeline.sql import SqliteAdapter, create_adapter
from quiz_mail_pipeline.sql.postgresql import PostgresAdapter

from tests.helpers import add_lead, message_for


# --- SQL layer ---

def test_create_adapter_for_sqlite_paths(tmp_path):
    path = str(tmp_path / "a.db")

    assert isinstance(create_adapter(path), SqliteAdapter)
    assert create_adapter(f"sqlite:{path}").db_path == path


def test_create_adapter_rejects_unknown_scheme_and_memory():
    with pytest.raises(ValueError, match="Unknown database type"):
        create_adapter("mysql://host/db")
    with pytest.raises(ValueError):
        create_adapter(":memory:")
    with pytest.raises(ValueError):
        create_adapter("")


def test_postgres_placeholder_conversion_keeps_casts():
    query = "SELECT :id::text, created_at FROM t WHERE status = :status AND x = 'a:b'"

    converted = PostgresAdapter.convert_placeholders(query)

    assert converted.startswith("SELECT %(id)s::text")
    assert "status = %(status)s" in converted


def test_expand_in_builds_placeholders():
    placeholders, params = SqliteAdapter.expand_in("id", ["a", "b"])

    assert placeholders == ":id_0, :id_1"
    assert params == {"id_0": "a", "id_1": "b"}


@pytest.mark.asyncio
async def test_init_db_is_idempotent(tmp_path):
    database = PipelineDb(str(tmp_path / "twice.db"))
    await database.init_db()
    await database.init_db()

    assert await database.stats() == {"email_queue": {}, "email_logs": {}, "pending_notifications": {}}


@pytest.mark.asyncio
async def test_insert_rejects_unknown_columns(db, now):
    with pytest.raises(ValueError, match="Unknown columns"):
        await db.email_logs.insert({"id": "x", "bogus": 1})


# --- email_queue ---

@pytest.mark.asyncio
async def test_enqueue_spreads_lead_reference(db, now):
    msg_id = await db.email_queue.enqueue(message_for(LeadRef(LeadType.HYPOTHESIS, "h1")), now_ts=now)

    row = await db.email_queue.get(msg_id)
    assert row["hypothesis_lead_id"] == "h1"
    assert row["quiz_lead_id"] is None
    assert row["status"] == "pending"
    assert row["retry_count"] == 0
    assert row["max_retries"] == 3
    assert row["scheduled_for"] == now


@pytest.mark.asyncio
async def test_enqueue_many_stores_all_or_nothing(db, now):
    lead = LeadRef(LeadType.HYPOTHESIS, "h1")
    user = message_for(lead, id="msg-1", email_type="hypothesis_results")
    admin = message_for(lead, id="msg-1", email_type="hypothesis_admin")

    with pytest.raises(sqlite3.IntegrityError):
        await db.email_queue.enqueue_many([user, admin], now_ts=now)
    assert await db.email_queue.list_messages() == []

    admin["id"] = "msg-2"
    ids = await db.email_queue.enqueue_many([user, admin], now_ts=now)

    assert ids == ["msg-1", "msg-2"]
    rows = {row["id"]: row for row in await db.email_queue.list_messages()}
    assert rows["msg-2"]["email_type"] == "hypothesis_admin"
    assert rows["msg-2"]["hypothesis_lead_id"] == "h1"


@pytest.mark.asyncio
async def test_claim_is_exclusive(db, now):
    ids = [await db.email_queue.enqueue(message_for(), now_ts=now) for _ in range(3)]

    token_a, claimed_a = await db.email_queue.claim(ids[:2], now_ts=now)
    token_b, claimed_b = await db.email_queue.claim(ids, now_ts=now)

    assert {r["id"] for r in claimed_a} == set(ids[:2])
    assert [r["id"] for r in claimed_b] == [ids[2]]
    assert token_a != token_b
    assert all(r["processing_started_at"] == now for r in claimed_a)


@pytest.mark.asyncio
async def test_stale_token_cannot_overwrite_outcome(db, now):
    msg_id = await db.email_queue.enqueue(message_for(), now_ts=now)
    old_token, _ = await db.email_queue.claim([msg_id], now_ts=now)
    await db.email_queue.reclaim_stuck(now + 1)
    new_token, _ = await db.email_queue.claim([msg_id], now_ts=now + 2)

    assert not await db.email_queue.mark_sent(msg_id, token=old_token, sent_ts=now + 3)
    assert await db.email_queue.mark_sent(msg_id, token=new_token, sent_ts=now + 3)


@pytest.mark.asyncio
async def test_schedule_retry_never_moves_backwards(db, now):
    msg_id = await db.email_queue.enqueue(message_for(), now_ts=now)
    token, _ = await db.email_queue.claim([msg_id], now_ts=now)
    await db.adapter.execute(
        "UPDATE email_queue SET scheduled_for = :ts WHERE id = :id", {"ts": now + 5000, "id": msg_id}
    )

    await db.email_queue.schedule_retry(msg_id, token=token, retry_count=1, scheduled_for=now + 120, error="x")

    row = await db.email_queue.get(msg_id)
    assert row["scheduled_for"] == now + 5000
    assert row["status"] == "pending"
    assert row["claim_token"] is None


@pytest.mark.asyncio
async def test_remove_sent_before_keeps_recent_and_unsent(db, now):
    old = await db.email_queue.enqueue(message_for(), now_ts=now - 1000)
    recent = await db.email_queue.enqueue(message_for(), now_ts=now)
    pending = await db.email_queue.enqueue(message_for(), now_ts=now - 1000)
    token, _ = await db.email_queue.claim([old, recent], now_ts=now)
    await db.email_queue.mark_sent(old, token=token, sent_ts=now - 900)
    await db.email_queue.mark_sent(recent, token=token, sent_ts=now)

    removed = await db.email_queue.remove_sent_before(now - 500)

    assert removed == 1
    assert await db.email_queue.get(old) is None
    assert await db.email_queue.get(recent) is not None
    assert await db.email_queue.get(pending) is not None


# --- email_logs ---

@pytest.mark.asyncio
async def test_has_sent_filters_by_lead_and_type(db, now):
    lead = LeadRef(LeadType.QUIZ, "q1")
    await db.email_logs.append(
        {"email_type": "quiz_result_user", "recipient_email": "a@example.com", "status": "failed", "lead": lead},
        now_ts=now,
    )
    assert not await db.email_logs.has_sent(lead)

    await db.email_logs.append(
        {"email_type": "quiz_result_user", "recipient_email": "a@example.com", "status": "sent", "lead": lead},
        now_ts=now,
    )
    assert await db.email_logs.has_sent(lead)
    assert await db.email_logs.has_sent(lead, "quiz_result_user")
    assert not await db.email_logs.has_sent(lead, "hypothesis_admin")
    assert not await db.email_logs.has_sent(LeadRef(LeadType.HYPOTHESIS, "q1"))


@pytest.mark.asyncio
async def test_list_entries_filters(db, now):
    await db.email_logs.append(
        {"email_type": "quiz_result_user", "recipient_email": "Ana@Example.com", "status": "sent"}, now_ts=now
    )
    await db.email_logs.append(
        {"email_type": "hypothesis_admin", "recipient_email": "admin@sparkly.hr", "status": "failed"},
        now_ts=now + 1,
    )

    assert len(await db.email_logs.list_entries()) == 2
    assert [e["status"] for e in await db.email_logs.list_entries(status="failed")] == ["failed"]
    assert [e["recipient_email"] for e in await db.email_logs.list_entries(recipient="ana@")] == [
        "Ana@Example.com"
    ]
    assert len(await db.email_logs.list_entries(email_type="hypothesis_admin")) == 1


# --- app_settings ---

@pytest.mark.asyncio
async def test_settings_upsert(db, now):
    await db.app_settings.set("smtp_host", "one", now_ts=now)
    await db.app_settings.set("smtp_host", "two", now_ts=now + 1)
    await db.app_settings.set("smtp_port", "465", now_ts=now)

    assert await db.app_settings.get("smtp_host") == "two"
    assert await db.app_settings.get("missing", "fallback") == "fallback"
    assert await db.app_settings.get_many(["smtp_host", "nope"]) == {"smtp_host": "two"}
    assert await db.app_settings.get_all() == {"smtp_host": "two", "smtp_port": "465"}


# --- leads ---

@pytest.mark.asyncio
async def test_get_lead_with_localized_content(db, now):
    await db.quizzes.insert({"id": "quiz-1", "title": {"en": "Energy", "et": "Energia"}})
    await db.result_levels.insert(
        {"id": "low", "quiz_id": "quiz-1", "min_score": 0, "max_score": 4, "title": {"en": "Low", "et": "Madal"}}
    )
    await db.result_levels.insert(
        {"id": "high", "quiz_id": "quiz-1", "min_score": 5, "max_score": 8, "title": {"en": "High"}}
    )
    ref = await add_lead(db, LeadType.QUIZ, "q1", created_at=now, score=3, language="et")

    lead = await db.leads.get_lead(ref)

    assert lead.quiz_title == "Energia"
    assert lead.result.title == "Madal"
    assert lead.percentage == 30


@pytest.mark.asyncio
async def test_score_above_every_range_uses_highest_level(db, now):
    await db.result_levels.insert(
        {"id": "low", "quiz_id": "quiz-1", "min_score": 0, "max_score": 4, "title": {"en": "Low"}}
    )
    await db.result_levels.insert(
        {"id": "high", "quiz_id": "quiz-1", "min_score": 5, "max_score": 8, "title": {"en": "High"}}
    )

    level = await db.result_levels.for_score("quiz-1", 12)

    assert level["id"] == "high"


@pytest.mark.asyncio
async def test_get_lead_missing_returns_none(db):
    assert await db.leads.get_lead(LeadRef(LeadType.HYPOTHESIS, "nope")) is None


@pytest.mark.asyncio
async def test_get_lead_falls_back_to_english_titles(db, now):
    await db.quizzes.insert({"id": "quiz-1", "title": {"en": "Energy"}})
    ref = await add_lead(db, LeadType.HYPOTHESIS, "h1", created_at=now, language="de")

    lead = await db.leads.get_lead(ref)

    assert lead.quiz_title == "Energy"
    assert lead.result is None


# --- pending notifications ---

@pytest.mark.asyncio
async def test_mark_processing_is_compare_and_swap(db, now):
    ref = LeadRef(LeadType.QUIZ, "q1")
    await db.pending_notifications.create(ref, now_ts=now - 100)
    (row,) = await db.pending_notifications.fetch_due(cutoff_ts=now, limit=10)

    assert await db.pending_notifications.mark_processing(row)
    assert not await db.pending_notifications.mark_processing(row)
    assert await db.pending_notifications.exists_for(ref)
