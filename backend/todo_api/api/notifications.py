"""Notification API endpoints: test sends, manual sweeps, status."""

from datetime import datetime, timedelta, timezone
from html import escape

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from todo_api.core.database import get_db
from todo_api.core.security import get_current_admin, get_current_user
from todo_api.models.user import User
from todo_api.services.email_service import EmailService, EmailServiceError, get_email_service
from todo_api.services.notification_service import (
    KIND_DUE,
    KIND_OVERDUE,
    NotificationService,
    NotificationServiceError,
    get_notification_service,
)
from todo_api.services.task_service import TaskServiceError, get_task

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# --- Schemas ---

class TestEmailRequest(BaseModel):
    email: EmailStr | None = None
    subject: str = "Test Email from Todo App"
    message: str = "This is a test email to verify your email service is working correctly!"


class TaskRef(BaseModel):
    task_id: str | None = None


class TriggerRequest(BaseModel):
    task_id: str


def _sample_task(overdue: bool) -> dict:
    offset = timedelta(days=-1 if overdue else 1)
    return {
        "title": "Overdue Test Todo" if overdue else "Sample Test Todo",
        "description": "This is a test todo for email notification testing",
        "priority": "high",
        "due_date": datetime.now(timezone.utc) + offset,
        "tags": ["test", "overdue" if overdue else "email"],
    }


async def _resolve_task(db: AsyncSession, user: User, task_id: str | None, overdue: bool) -> dict:
    if not task_id:
        return _sample_task(overdue)
    try:
        task = await get_task(db, user, task_id)
    except TaskServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))
    task["due_date"] = datetime.fromisoformat(task["due_date"]) if task["due_date"] else None
    return task


# --- Routes ---

@router.post("/test-email")
async def api_test_email(
    body: TestEmailRequest,
    user: User = Depends(get_current_user),
    mailer: EmailService = Depends(get_email_service),
):
    to = body.email or user.email
    html = (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;\">"
        "<h2 style=\"color: #667eea;\">Email Service Test</h2>"
        f"<p>Hello {escape(user.username)}!</p><p>{escape(body.message)}</p></div>"
    )
    try:
        message_id = await mailer.send_email(to, body.subject, html, body.message)
    except EmailServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message_id": message_id, "sent_to": to}


@router.post("/test-reminder")
async def api_test_reminder(
    body: TaskRef,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
):
    task = await _resolve_task(db, user, body.task_id, overdue=False)
    try:
        message_id = await mailer.send_due_date_reminder(user.email, user.username, task)
    except EmailServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message_id": message_id, "task_title": task["title"]}


@router.post("/test-overdue")
async def api_test_overdue(
    body: TaskRef,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
):
    task = await _resolve_task(db, user, body.task_id, overdue=True)
    try:
        message_id = await mailer.send_overdue_notification(user.email, user.username, task)
    except EmailServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message_id": message_id, "task_title": task["title"]}


@router.post("/trigger")
async def api_trigger(
    body: TriggerRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: NotificationService = Depends(get_notification_service),
):
    """Send the due-date reminder for one of the caller's tasks right now."""
    try:
        await get_task(db, user, body.task_id)
        message_id = await service.send_test_reminder(user.id, body.task_id)
    except (TaskServiceError, NotificationServiceError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except EmailServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"message_id": message_id, "task_id": body.task_id}


@router.post("/run/{kind}")
async def api_run_sweep(
    kind: str,
    user: User = Depends(get_current_admin),
    service: NotificationService = Depends(get_notification_service),
):
    """Run one sub-sweep immediately, across every account. Admin only."""
    if kind == KIND_DUE:
        result = await service.check_due_date_reminders()
    elif kind == KIND_OVERDUE:
        result = await service.check_overdue_tasks()
    else:
        raise HTTPException(status_code=400, detail="Invalid kind. Use: due, overdue")
    return result.to_dict()


@router.get("/status")
async def api_status(
    mailer: EmailService = Depends(get_email_service),
    service: NotificationService = Depends(get_notification_service),
):
    return {
        "email_service": {
            "configured": mailer.is_configured(),
            "smtp_host": mailer.config.smtp_host,
            "email_user": mailer.config.smtp_user or "Not configured",
        },
        "notification_stats": await service.get_notification_stats(),
    }
