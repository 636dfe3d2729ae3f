"""Task service: owner-scoped CRUD, status transitions, filtered listing."""

import math
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from todo_api.core.clock import as_utc
from todo_api.models.task import Task
from todo_api.models.user import User


class TaskServiceError(Exception):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clean_tags(tags: list[str] | None) -> list[str]:
    return [t.strip() for t in (tags or []) if t and t.strip()]


def _apply_status(task: Task, status: str) -> None:
    """Set status and keep completed_at in step with it."""
    task.status = status
    if status == "completed":
        if task.completed_at is None:
            task.completed_at = datetime.now(timezone.utc)
    else:
        task.completed_at = None


async def _get_owned(db: AsyncSession, user: User, task_id: str) -> Task:
    result = await db.execute(
        select(Task).where(Task.id == task_id, Task.user_id == user.id)
    )
    task = result.scalar_one_or_none()
    if not task:
        raise TaskServiceError("Task not found")
    return task


# ---------------------------------------------------------------------------
# Task CRUD
# ---------------------------------------------------------------------------

async def list_tasks(
    db: AsyncSession,
    user: User,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
    priority: str | None = None,
    search: str | None = None,
) -> dict:
    """List a page of the user's tasks, newest first."""
    filters = [Task.user_id == user.id]
    if status:
        filters.append(func.lower(Task.status) == status.lower())
    if priority:
        filters.append(func.lower(Task.priority) == priority.lower())
    if search:
        pattern = f"%{search}%"
        filters.append(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    total = (await db.execute(select(func.count(Task.id)).where(*filters))).scalar() or 0

    result = await db.execute(
        select(Task)
        .where(*filters)
        .order_by(Task.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    tasks = result.scalars().all()

    return {
        "tasks": [serialize_task(t) for t in tasks],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def get_task(db: AsyncSession, user: User, task_id: str) -> dict:
    """Get a single task."""
    return serialize_task(await _get_owned(db, user, task_id))


async def create_task(
    db: AsyncSession,
    user: User,
    title: str,
    description: str = "",
    priority: str = "medium",
    due_date: datetime | None = None,
    tags: list[str] | None = None,
    reminder_enabled: bool = False,
    reminder_minutes_before: int | None = None,
) -> dict:
    """Create a new task.

    An enabled reminder without an explicit offset falls back to the
    owner's ``reminder_hours`` preference.
    """
    if reminder_minutes_before is None:
        reminder_minutes_before = (user.reminder_hours or 1) * 60 if reminder_enabled else 60

    task = Task(
        user_id=user.id,
        title=title.strip(),
        description=(description or "").strip(),
        priority=priority,
        status="pending",
        due_date=as_utc(due_date),
        tags=_clean_tags(tags),
        reminder_enabled=reminder_enabled,
        reminder_minutes_before=reminder_minutes_before,
        reminder_email_sent=False,
    )
    db.add(task)
    await db.commit()
    await db.refresh(task)
    return serialize_task(task)


async def update_task(
    db: AsyncSession,
    user: User,
    task_id: str,
    updates: dict,
) -> dict:
    """Update task fields.

    Turning a reminder on without an offset uses the owner's
    ``reminder_hours``, as on create. The reminder-sent flag is left alone
    even when due_date moves; a new reminder cycle has to be requested by
    the owner.
    """
    task = await _get_owned(db, user, task_id)

    if (
        updates.get("reminder_enabled")
        and not task.reminder_enabled
        and updates.get("reminder_minutes_before") is None
    ):
        updates = {**updates, "reminder_minutes_before": (user.reminder_hours or 1) * 60}

    for key in ("title", "description"):
        if key in updates:
            setattr(task, key, (updates[key] or "").strip())
    for key in ("priority", "reminder_enabled", "reminder_minutes_before"):
        if key in updates:
            setattr(task, key, updates[key])
    if "due_date" in updates:
        task.due_date = as_utc(updates["due_date"])
    if "tags" in updates:
        task.tags = _clean_tags(updates["tags"])
    if "status" in updates:
        _apply_status(task, updates["status"])

    await db.commit()
    await db.refresh(task)
    return serialize_task(task)


async def update_task_status(db: AsyncSession, user: User, task_id: str, status: str) -> dict:
    """Move a task to a new status."""
    task = await _get_owned(db, user, task_id)
    _apply_status(task, status)
    await db.commit()
    await db.refresh(task)
    return serialize_task(task)


async def complete_task(db: AsyncSession, user: User, task_id: str) -> dict:
    """Mark a task as completed."""
    return await update_task_status(db, user, task_id, "completed")


async def delete_task(db: AsyncSession, user: User, task_id: str) -> dict:
    """Delete a task."""
    task = await _get_owned(db, user, task_id)
    await db.delete(task)
    await db.commit()
    return {"status": "deleted"}


async def get_task_counts(db: AsyncSession, user: User) -> dict:
    """Get task counts by status."""
    result = await db.execute(
        select(Task.status, func.count(Task.id))
        .where(Task.user_id == user.id)
        .group_by(Task.status)
    )
    counts = {row[0]: row[1] for row in result.all()}
    return {
        "pending": counts.get("pending", 0),
        "in_progress": counts.get("in_progress", 0),
        "completed": counts.get("completed", 0),
        "total": sum(counts.values()),
    }


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_task(t: Task) -> dict:
    return {
        "id": t.id,
        "user_id": t.user_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "due_date": _iso(t.due_date),
        "completed_at": _iso(t.completed_at),
        "tags": list(t.tags or []),
        "reminder": {
            "enabled": t.reminder_enabled,
            "minutes_before": t.reminder_minutes_before,
            "email_sent": t.reminder_email_sent,
            "email_sent_at": _iso(t.reminder_email_sent_at),
        },
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }
