"""
Notification sweep.

Two independent polling sub-sweeps over the task store:

- due-soon: a task with an enabled, unsent reminder whose reminder time
  (due_date - minutes_before) has been reached gets one reminder email.
  The persisted ``reminder_email_sent`` flag is the de-duplication marker.
- overdue: every non-completed task past its due date gets at most one
  email per UTC calendar day. A ``SentNotification`` row keyed by
  (user, task, kind, day) is the de-duplication marker.

A store failure aborts the current cycle; a mailer failure only skips that
item, which is retried on the next cycle. Nothing here raises into the
scheduler loop.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from todo_api.core.clock import as_utc, seconds_until, start_of_day, utcnow
from todo_api.core.config import Settings, settings
from todo_api.models.notification import SentNotification
from todo_api.models.task import Task
from todo_api.models.user import User
from todo_api.services.email_service import EmailService

logger = logging.getLogger(__name__)

KIND_DUE = "due"
KIND_OVERDUE = "overdue"


class NotificationServiceError(Exception):
    pass


@dataclass
class SweepResult:
    kind: str
    candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mailer: EmailService,
        config: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.mailer = mailer
        self.config = config or settings
        self._jobs: list[asyncio.Task] = []
        self._locks = {KIND_DUE: asyncio.Lock(), KIND_OVERDUE: asyncio.Lock()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._jobs)

    def start(self) -> None:
        """Arm the periodic sweeps. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Notification service is already running")
            return

        cfg = self.config
        self._jobs = [
            asyncio.create_task(
                self._run_every(KIND_DUE, cfg.due_reminder_interval_minutes * 60, self.check_due_date_reminders),
                name="notifications:due",
            ),
            asyncio.create_task(
                self._run_daily(KIND_OVERDUE, cfg.overdue_check_hour, cfg.overdue_check_minute, self.check_overdue_tasks),
                name="notifications:overdue",
            ),
            asyncio.create_task(
                self._run_daily("cleanup", 0, 0, self._cleanup_old_markers),
                name="notifications:cleanup",
            ),
        ]
        logger.info(
            "Notification service started (due every %s min, overdue daily at %02d:%02d UTC)",
            cfg.due_reminder_interval_minutes,
            cfg.overdue_check_hour,
            cfg.overdue_check_minute,
        )

    async def stop(self) -> None:
        """Cancel the scheduled sweeps and wait for them to unwind."""
        if not self.is_running:
            return
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        logger.info("Notification service stopped")

    async def _run_every(self, name: str, interval_seconds: float, job: Callable[[], Awaitable]) -> None:
        interval = max(1.0, float(interval_seconds))
        while True:
            await asyncio.sleep(interval)
            logger.debug("Running %s sweep", name)
            await job()

    async def _run_daily(self, name: str, hour: int, minute: int, job: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(seconds_until(hour, minute))
            logger.debug("Running daily %s job", name)
            await job()

    async def _cleanup_old_markers(self) -> None:
        try:
            removed = await self.clear_sent_markers(before=utcnow().date())
        except Exception:
            logger.exception("Failed to clean up sent notification markers")
            return
        logger.info("Cleaned up %d sent notification marker(s)", removed)

    # ------------------------------------------------------------------
    # Due-soon sub-sweep
    # ------------------------------------------------------------------

    async def check_due_date_reminders(self, now: datetime | None = None) -> SweepResult:
        result = SweepResult(kind=KIND_DUE)
        lock = self._locks[KIND_DUE]
        if lock.locked():
            logger.warning("Due-date reminder sweep already in progress; skipping this run")
            result.aborted = True
            return result

        async with lock:
            now = as_utc(now) or utcnow()
            try:
                async with self.session_factory() as db:
                    await self._due_date_pass(db, now, result)
            except Exception:
                logger.exception("Due-date reminder sweep aborted")
                result.aborted = True

        logger.info(
            "Due-date reminder sweep: %d candidate(s), %d sent, %d failed, %d skipped",
            result.candidates, result.sent, result.failed, result.skipped,
        )
        return result

    async def _due_date_pass(self, db: AsyncSession, now: datetime, result: SweepResult) -> None:
        rows = await db.execute(
            select(Task)
            .options(selectinload(Task.user))
            .where(
                Task.status != "completed",
                Task.due_date.is_not(None),
                Task.due_date > now,
                Task.reminder_enabled.is_(True),
                Task.reminder_email_sent.is_(False),
            )
        )
        candidates = [(_task_snapshot(t), _owner_snapshot(t.user)) for t in rows.scalars().all()]
        result.candidates = len(candidates)

        for task, owner in candidates:
            if owner is None or not owner["email"]:
                logger.debug("Task %s has no reachable owner; skipping", task["id"])
                result.skipped += 1
                continue
            if not (owner["notifications_enabled"] and owner["due_date_reminder"]):
                result.skipped += 1
                continue

            reminder_time = task["due_date"] - timedelta(minutes=task["reminder_minutes_before"])
            if now < reminder_time:
                result.skipped += 1
                continue

            try:
                await self.mailer.send_due_date_reminder(owner["email"], owner["username"], task)
            except Exception:
                logger.exception("Failed to send reminder to %s for task %s", owner["email"], task["id"])
                result.failed += 1
                continue

            await db.execute(
                update(Task)
                .where(Task.id == task["id"])
                .values(reminder_email_sent=True, reminder_email_sent_at=now)
            )
            await db.commit()
            result.sent += 1
            logger.info(
                "Sent reminder to %s for task %r (%d min before)",
                owner["email"], task["title"], task["reminder_minutes_before"],
            )

    # ------------------------------------------------------------------
    # Overdue sub-sweep
    # ------------------------------------------------------------------

    async def check_overdue_tasks(self, now: datetime | None = None) -> SweepResult:
        result = SweepResult(kind=KIND_OVERDUE)
        lock = self._locks[KIND_OVERDUE]
        if lock.locked():
            logger.warning("Overdue sweep already in progress; skipping this run")
            result.aborted = True
            return result

        async with lock:
            now = as_utc(now) or utcnow()
            try:
                async with self.session_factory() as db:
                    await self._overdue_pass(db, now, result)
            except Exception:
                logger.exception("Overdue sweep aborted")
                result.aborted = True

        logger.info(
            "Overdue sweep: %d candidate(s), %d sent, %d failed, %d skipped",
            result.candidates, result.sent, result.failed, result.skipped,
        )
        return result

    async def _overdue_pass(self, db: AsyncSession, now: datetime, result: SweepResult) -> None:
        today = now.date()
        users = [
            _owner_snapshot(u)
            for u in (
                await db.execute(
                    select(User).where(
                        User.notifications_enabled.is_(True),
                        User.overdue_notification.is_(True),
                    )
                )
            ).scalars().all()
        ]

        for owner in users:
            tasks = [
                _task_snapshot(t)
                for t in (
                    await db.execute(
                        select(Task).where(
                            Task.user_id == owner["id"],
                            Task.status != "completed",
                            Task.due_date < now,
                        )
                    )
                ).scalars().all()
            ]
            result.candidates += len(tasks)
            if not tasks:
                continue
            if not owner["email"]:
                result.skipped += len(tasks)
                continue

            already_sent = set(
                (
                    await db.execute(
                        select(SentNotification.task_id).where(
                            SentNotification.user_id == owner["id"],
                            SentNotification.kind == KIND_OVERDUE,
                            SentNotification.notified_on == today,
                        )
                    )
                ).scalars().all()
            )

            for task in tasks:
                if task["id"] in already_sent:
                    result.skipped += 1
                    continue

                try:
                    await self.mailer.send_overdue_notification(owner["email"], owner["username"], task)
                except Exception:
                    logger.exception(
                        "Failed to send overdue notification to %s for task %s", owner["email"], task["id"]
                    )
                    result.failed += 1
                    continue

                db.add(SentNotification(
                    user_id=owner["id"],
                    task_id=task["id"],
                    kind=KIND_OVERDUE,
                    notified_on=today,
                    sent_at=now,
                ))
                try:
                    await db.commit()
                except IntegrityError:
                    # Another instance recorded the same day first.
                    await db.rollback()
                    logger.warning("Overdue marker for task %s on %s already recorded", task["id"], today)
                result.sent += 1
                logger.info("Sent overdue notification to %s for task %r", owner["email"], task["title"])

    # ------------------------------------------------------------------
    # Markers, manual trigger, stats
    # ------------------------------------------------------------------

    async def clear_sent_markers(self, before: date | None = None) -> int:
        """Delete overdue markers (all of them, or only days before ``before``)."""
        stmt = delete(SentNotification)
        if before is not None:
            stmt = stmt.where(SentNotification.notified_on < before)
        async with self.session_factory() as db:
            res = await db.execute(stmt)
            await db.commit()
        return res.rowcount or 0

    async def send_test_reminder(self, user_id: str, task_id: str) -> str:
        """Send the due-date reminder for one user/task right now."""
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            task = await db.get(Task, task_id)
            if not user or not task:
                raise NotificationServiceError("User or task not found")
            message_id = await self.mailer.send_due_date_reminder(user.email, user.username, task)
        logger.info("Test reminder sent to %s for task %s", user.email, task_id)
        return message_id

    async def get_notification_stats(self, now: datetime | None = None) -> dict:
        now = as_utc(now) or utcnow()
        day_start = start_of_day(now.date())
        day_end = day_start + timedelta(days=1)

        async with self.session_factory() as db:
            due_today = await db.scalar(
                select(func.count(Task.id)).where(
                    Task.status != "completed",
                    Task.due_date >= day_start,
                    Task.due_date < day_end,
                )
            )
            overdue = await db.scalar(
                select(func.count(Task.id)).where(
                    Task.status != "completed",
                    Task.due_date < now,
                )
            )
            users_enabled = await db.scalar(
                select(func.count(User.id)).where(User.notifications_enabled.is_(True))
            )
            markers = await db.scalar(
                select(func.count(SentNotification.id)).where(SentNotification.notified_on == now.date())
            )

        return {
            "todos_due_today": due_today or 0,
            "overdue_todos": overdue or 0,
            "users_with_notifications": users_enabled or 0,
            "sent_reminders_today": markers or 0,
            "is_running": self.is_running,
        }


_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    global _service
    if _service is None:
        from todo_api.core.database import async_session
        from todo_api.services.email_service import get_email_service

        _service = NotificationService(async_session, get_email_service())
    return _service


def _task_snapshot(task: Task) -> dict:
    """Plain copy of the fields the sweep and the templates read."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "tags": list(task.tags or []),
        "due_date": as_utc(task.due_date),
        "reminder_minutes_before": task.reminder_minutes_before,
    }


def _owner_snapshot(user: User | None) -> dict | None:
    if user is None:
        return None
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "notifications_enabled": user.notifications_enabled,
        "due_date_reminder": user.due_date_reminder,
    }
