# tests/test_notification_service.py

from __future__ import annotations

import asyncio
import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from todo_api.core.config import Settings
from todo_api.models import SentNotification, Task
from todo_api.services.email_service import EmailService
from todo_api.services.notification_service import NotificationService, NotificationServiceError

from .conftest import NOW, at, make_task, make_user
from .fakes import FakeMailer


async def _reload(session_factory, task_id: str) -> Task:
    async with session_factory() as s:
        return await s.get(Task, task_id)


async def _marker_count(session_factory) -> int:
    async with session_factory() as s:
        return await s.scalar(select(func.count(SentNotification.id)))


# ---------------------------------------------------------------------------
# Due-soon sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reminder_sent_once_and_flag_persisted(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    task = await make_task(
        db, user, due_date=at(30), reminder_enabled=True, reminder_minutes_before=60
    )

    first = await service.check_due_date_reminders(now=NOW)
    assert first.sent == 1
    assert [m.to for m in mailer.of_kind("due")] == ["alice@example.com"]

    stored = await _reload(session_factory, task.id)
    assert stored.reminder_email_sent is True
    assert stored.reminder_email_sent_at is not None

    second = await service.check_due_date_reminders(now=NOW)
    assert second.sent == 0
    assert len(mailer.of_kind("due")) == 1


@pytest.mark.asyncio
async def test_reminder_boundary_is_inclusive(db, service, mailer) -> None:
    user = await make_user(db)
    await make_task(db, user, title="exact", due_date=at(60), reminder_enabled=True, reminder_minutes_before=60)
    await make_task(db, user, title="early", due_date=at(61), reminder_enabled=True, reminder_minutes_before=60)

    result = await service.check_due_date_reminders(now=NOW)

    assert result.candidates == 2
    assert result.sent == 1
    assert result.skipped == 1
    assert mailer.of_kind("due")[0].subject == 'Reminder: "exact" is due soon!'


@pytest.mark.asyncio
async def test_reminder_skips_already_sent_completed_and_past(db, service, mailer) -> None:
    user = await make_user(db)
    await make_task(db, user, title="sent", due_date=at(10), reminder_enabled=True, reminder_email_sent=True)
    await make_task(db, user, title="done", due_date=at(10), reminder_enabled=True, status="completed")
    await make_task(db, user, title="past", due_date=at(-10), reminder_enabled=True)
    await make_task(db, user, title="off", due_date=at(10), reminder_enabled=False)
    await make_task(db, user, title="no-date", reminder_enabled=True)

    result = await service.check_due_date_reminders(now=NOW)

    assert result.candidates == 0
    assert mailer.sent == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "prefs",
    [{"notifications_enabled": False}, {"due_date_reminder": False}],
)
async def test_reminder_respects_user_preferences(db, service, mailer, prefs) -> None:
    user = await make_user(db, **prefs)
    await make_task(db, user, due_date=at(5), reminder_enabled=True, reminder_minutes_before=60)

    result = await service.check_due_date_reminders(now=NOW)

    assert result.skipped == 1
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_reminder_failure_is_isolated_and_retried(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    a = await make_task(db, user, title="A", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)
    b = await make_task(db, user, title="B", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)
    mailer.fail_titles.add("A")

    result = await service.check_due_date_reminders(now=NOW)

    assert (result.sent, result.failed) == (1, 1)
    assert (await _reload(session_factory, a.id)).reminder_email_sent is False
    assert (await _reload(session_factory, b.id)).reminder_email_sent is True

    mailer.fail_titles.clear()
    retry = await service.check_due_date_reminders(now=NOW)
    assert retry.sent == 1
    assert (await _reload(session_factory, a.id)).reminder_email_sent is True


# ---------------------------------------------------------------------------
# Real mailer, stubbed transport
# ---------------------------------------------------------------------------

def _smtp_mailer(monkeypatch, delivered: list, fail_subject: str | None = None) -> EmailService:
    mailer = EmailService(Settings(smtp_user="bot@example.com", smtp_password="pw"))

    def _deliver(msg) -> None:
        if fail_subject and fail_subject in msg["Subject"]:
            raise RuntimeError("transport crashed")
        delivered.append(msg)

    monkeypatch.setattr(mailer, "_deliver", _deliver)
    return mailer


@pytest.mark.asyncio
async def test_multiline_title_does_not_block_other_reminders(db, session_factory, monkeypatch) -> None:
    delivered: list = []
    service = NotificationService(session_factory, _smtp_mailer(monkeypatch, delivered))
    user = await make_user(db)
    await make_task(db, user, title="Pay\nrent", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)
    await make_task(db, user, title="Other", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)

    result = await service.check_due_date_reminders(now=NOW)

    assert result.aborted is False
    assert result.sent == 2
    assert sorted(m["Subject"] for m in delivered) == [
        'Reminder: "Other" is due soon!',
        'Reminder: "Pay rent" is due soon!',
    ]


@pytest.mark.asyncio
async def test_unexpected_send_error_only_fails_that_item(db, session_factory, monkeypatch, caplog) -> None:
    delivered: list = []
    service = NotificationService(session_factory, _smtp_mailer(monkeypatch, delivered, fail_subject="Boom"))
    user = await make_user(db)
    boom = await make_task(db, user, title="Boom", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)
    await make_task(db, user, title="Fine", due_date=at(20), reminder_enabled=True, reminder_minutes_before=60)
    await make_task(db, user, title="Boom late", due_date=at(days=-1))
    await make_task(db, user, title="Fine late", due_date=at(days=-1))

    with caplog.at_level(logging.ERROR):
        due = await service.check_due_date_reminders(now=NOW)
        overdue = await service.check_overdue_tasks(now=NOW)

    assert (due.aborted, due.sent, due.failed) == (False, 1, 1)
    assert (overdue.aborted, overdue.sent, overdue.failed) == (False, 1, 1)
    assert (await _reload(session_factory, boom.id)).reminder_email_sent is False
    assert await _marker_count(session_factory) == 1
    assert "Failed to send reminder" in caplog.text
    assert "Failed to send overdue notification" in caplog.text


# ---------------------------------------------------------------------------
# Overdue sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_overdue_sent_once_per_day(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    await make_task(db, user, title="late", due_date=at(days=-1))

    first = await service.check_overdue_tasks(now=NOW)
    assert first.sent == 1
    assert await _marker_count(session_factory) == 1

    again = await service.check_overdue_tasks(now=at(300))
    assert again.sent == 0
    assert len(mailer.of_kind("overdue")) == 1

    next_day = await service.check_overdue_tasks(now=at(days=1))
    assert next_day.sent == 1


@pytest.mark.asyncio
async def test_overdue_eligible_again_after_clear(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    await make_task(db, user, due_date=at(days=-1))

    await service.check_overdue_tasks(now=NOW)
    removed = await service.clear_sent_markers()
    assert removed == 1
    assert await _marker_count(session_factory) == 0

    result = await service.check_overdue_tasks(now=NOW)
    assert result.sent == 1
    assert len(mailer.of_kind("overdue")) == 2


@pytest.mark.asyncio
async def test_clear_before_keeps_todays_markers(db, service, session_factory) -> None:
    user = await make_user(db)
    await make_task(db, user, due_date=at(days=-3))

    await service.check_overdue_tasks(now=at(days=-1))
    await service.check_overdue_tasks(now=NOW)
    assert await _marker_count(session_factory) == 2

    removed = await service.clear_sent_markers(before=NOW.date())
    assert removed == 1
    assert await _marker_count(session_factory) == 1


@pytest.mark.asyncio
async def test_overdue_skips_completed_and_opted_out(db, service, mailer) -> None:
    alice = await make_user(db)
    bob = await make_user(db, "bob", overdue_notification=False)
    carol = await make_user(db, "carol", notifications_enabled=False)
    await make_task(db, alice, title="done", due_date=at(days=-1), status="completed")
    await make_task(db, alice, title="future", due_date=at(days=1))
    await make_task(db, bob, title="bob-late", due_date=at(days=-1))
    await make_task(db, carol, title="carol-late", due_date=at(days=-1))

    result = await service.check_overdue_tasks(now=NOW)

    assert result.sent == 0
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_overdue_failure_is_isolated(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    await make_task(db, user, title="A", due_date=at(days=-1))
    await make_task(db, user, title="B", due_date=at(days=-2))
    mailer.fail_titles.add("A")

    result = await service.check_overdue_tasks(now=NOW)

    assert (result.sent, result.failed) == (1, 1)
    assert [m.subject for m in mailer.of_kind("overdue")] == ['Overdue: "B" was due!']
    assert await _marker_count(session_factory) == 1

    mailer.fail_titles.clear()
    retry = await service.check_overdue_tasks(now=NOW)
    assert retry.sent == 1
    assert retry.skipped == 1


# ---------------------------------------------------------------------------
# Failure modes, overlap guard, lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_store_failure_aborts_cycle(tmp_path, caplog) -> None:
    # No tables: every query fails.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.sqlite3'}")
    mailer = FakeMailer()
    broken = NotificationService(async_sessionmaker(engine, expire_on_commit=False), mailer)

    with caplog.at_level(logging.ERROR):
        due = await broken.check_due_date_reminders(now=NOW)
        overdue = await broken.check_overdue_tasks(now=NOW)

    await engine.dispose()
    assert due.aborted and overdue.aborted
    assert mailer.sent == []
    assert "sweep aborted" in caplog.text


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped(db, service, mailer) -> None:
    user = await make_user(db)
    await make_task(db, user, due_date=at(5), reminder_enabled=True, reminder_minutes_before=60)
    mailer.gate = asyncio.Event()

    first = asyncio.create_task(service.check_due_date_reminders(now=NOW))
    await asyncio.wait_for(mailer.entered.wait(), timeout=5)

    second = await service.check_due_date_reminders(now=NOW)
    assert second.aborted is True

    mailer.gate.set()
    done = await first
    assert done.sent == 1
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_cancels(session_factory, mailer, caplog) -> None:
    config = Settings(due_reminder_interval_minutes=60)
    svc = NotificationService(session_factory, mailer, config)

    svc.start()
    jobs = list(svc._jobs)
    with caplog.at_level(logging.WARNING):
        svc.start()
    assert "already running" in caplog.text
    assert svc.is_running
    assert svc._jobs == jobs

    await svc.stop()
    assert not svc.is_running
    assert all(job.cancelled() for job in jobs)

    await svc.stop()  # no-op


# ---------------------------------------------------------------------------
# Manual trigger and stats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_test_reminder_does_not_mark_sent(db, service, mailer, session_factory) -> None:
    user = await make_user(db)
    task = await make_task(db, user, due_date=at(days=3), reminder_enabled=True)

    message_id = await service.send_test_reminder(user.id, task.id)

    assert message_id.startswith("<msg-")
    assert len(mailer.of_kind("due")) == 1
    assert (await _reload(session_factory, task.id)).reminder_email_sent is False

    with pytest.raises(NotificationServiceError):
        await service.send_test_reminder(user.id, "missing")


@pytest.mark.asyncio
async def test_notification_stats(db, service) -> None:
    alice = await make_user(db)
    await make_user(db, "bob", notifications_enabled=False)
    await make_task(db, alice, title="later today", due_date=at(6 * 60))
    await make_task(db, alice, title="this morning", due_date=at(-6 * 60))
    await make_task(db, alice, title="last week", due_date=at(days=-7))
    await make_task(db, alice, title="done today", due_date=at(60), status="completed")
    await make_task(db, alice, title="tomorrow", due_date=at(days=1))

    await service.check_overdue_tasks(now=NOW)
    stats = await service.get_notification_stats(now=NOW)

    assert stats == {
        "todos_due_today": 2,
        "overdue_todos": 2,
        "users_with_notifications": 1,
        "sent_reminders_today": 2,
        "is_running": False,
    }


@pytest.mark.asyncio
async def test_stats_count_only_todays_markers(db, service) -> None:
    user = await make_user(db)
    await make_task(db, user, title="late", due_date=at(days=-3))

    await service.check_overdue_tasks(now=at(days=-1))
    stale = await service.get_notification_stats(now=NOW)
    assert stale["sent_reminders_today"] == 0

    await service.check_overdue_tasks(now=NOW)
    fresh = await service.get_notification_stats(now=NOW)
    assert fresh["sent_reminders_today"] == 1
