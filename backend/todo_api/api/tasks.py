"""Task API endpoints: owner-scoped CRUD and status management."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from todo_api.core.database import get_db
from todo_api.core.security import get_current_user
from todo_api.models.task import PRIORITIES, STATUSES
from todo_api.models.user import User
from todo_api.services.task_service import (
    TaskServiceError,
    complete_task,
    create_task,
    delete_task,
    get_task,
    get_task_counts,
    list_tasks,
    update_task,
    update_task_status,
)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class ReminderRequest(BaseModel):
    enabled: bool = False
    minutes_before: int | None = Field(None, ge=1, le=10080)


class CreateTaskRequest(BaseModel):
    title: str = Field(max_length=200)
    description: str = Field("", max_length=1000)
    priority: str = "medium"
    due_date: datetime | None = None
    tags: list[str] = []
    reminder: ReminderRequest | None = None


class UpdateTaskRequest(BaseModel):
    title: str | None = Field(None, max_length=200)
    description: str | None = Field(None, max_length=1000)
    priority: str | None = None
    status: str | None = None
    due_date: datetime | None = None
    tags: list[str] | None = None
    reminder: ReminderRequest | None = None


class StatusRequest(BaseModel):
    status: str


def _check_choice(value: str | None, choices: tuple[str, ...], label: str) -> None:
    if value is not None and value not in choices:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {label}. Use: {', '.join(choices)}",
        )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/")
async def api_list_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: str | None = Query(None, description="Filter: pending, in_progress, completed"),
    priority: str | None = Query(None, description="Filter: low, medium, high"),
    search: str | None = Query(None, description="Substring of title or description"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the current user's tasks."""
    return await list_tasks(
        db, user, page=page, limit=limit, status=status, priority=priority, search=search
    )


@router.get("/counts")
async def api_task_counts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get task counts by status."""
    return await get_task_counts(db, user)


@router.get("/{task_id}")
async def api_get_task(
    task_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_task(db, user, task_id)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def api_create_task(
    body: CreateTaskRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not body.title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    _check_choice(body.priority, PRIORITIES, "priority")

    reminder = body.reminder or ReminderRequest()
    return await create_task(
        db,
        user,
        title=body.title,
        description=body.description,
        priority=body.priority,
        due_date=body.due_date,
        tags=body.tags,
        reminder_enabled=reminder.enabled,
        reminder_minutes_before=reminder.minutes_before,
    )


@router.put("/{task_id}")
async def api_update_task(
    task_id: str,
    body: UpdateTaskRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updates = body.model_dump(exclude_unset=True, exclude={"reminder"})
    updates = {k: v for k, v in updates.items() if v is not None or k == "due_date"}
    if body.reminder is not None:
        updates["reminder_enabled"] = body.reminder.enabled
        if body.reminder.minutes_before is not None:
            updates["reminder_minutes_before"] = body.reminder.minutes_before
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "title" in updates and not updates["title"].strip():
        raise HTTPException(status_code=400, detail="Title is required")
    _check_choice(updates.get("status"), STATUSES, "status")
    _check_choice(updates.get("priority"), PRIORITIES, "priority")

    try:
        return await update_task(db, user, task_id, updates)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/{task_id}/status")
async def api_update_status(
    task_id: str,
    body: StatusRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if body.status not in STATUSES:
        raise HTTPException(status_code=400, detail="Valid status is required")
    try:
        return await update_task_status(db, user, task_id, body.status)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/{task_id}/complete")
async def api_complete_task(
    task_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await complete_task(db, user, task_id)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{task_id}")
async def api_delete_task(
    task_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await delete_task(db, user, task_id)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))
