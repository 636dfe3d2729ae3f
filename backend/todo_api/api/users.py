import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from todo_api.core.config import settings
from todo_api.core.database import get_db
from todo_api.core.security import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
    hash_password,
    verify_password,
)
from todo_api.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


# --- Schemas ---

class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(min_length=6, max_length=72)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class NotificationSettingsRequest(BaseModel):
    enabled: bool | None = None
    due_date_reminder: bool | None = None
    overdue_notification: bool | None = None
    reminder_hours: int | None = None


# --- Routes ---

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_db)):
    username = body.username.strip().lower()
    email = body.email.lower()
    if len(username) < 3:
        raise HTTPException(status_code=400, detail="Username must be at least 3 characters")

    result = await db.execute(
        select(User).where(or_(User.username == username, User.email == email))
    )
    if result.scalars().first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with email or username already exists",
        )

    user = User(
        username=username,
        email=email,
        hashed_password=hash_password(body.password),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Registered user %s", user.id)

    return await _issue_tokens(db, user)


@router.post("/login")
async def login(body: LoginRequest, response: Response, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == body.email.lower()))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User does not exist")

    if not verify_password(body.password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    tokens = await _issue_tokens(db, user)
    cookie_opts = {"httponly": True, "secure": settings.cookie_secure, "samesite": "lax"}
    response.set_cookie(ACCESS_COOKIE, tokens["access_token"], **cookie_opts)
    response.set_cookie(REFRESH_COOKIE, tokens["refresh_token"], **cookie_opts)
    return tokens


@router.post("/refresh")
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    payload = decode_token(body.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or user.refresh_token != body.refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is expired or used",
        )

    return await _issue_tokens(db, user)


@router.post("/logout")
async def logout(
    response: Response,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user.refresh_token = None
    await db.commit()
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return {"status": "logged_out"}


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)):
    return _user_dict(user)


@router.get("/notification-settings")
async def get_notification_settings(user: User = Depends(get_current_user)):
    return _settings_dict(user)


@router.put("/notification-settings")
async def update_notification_settings(
    body: NotificationSettingsRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if body.reminder_hours is not None and not 1 <= body.reminder_hours <= 168:
        raise HTTPException(status_code=400, detail="Reminder hours must be between 1 and 168")

    if body.enabled is not None:
        user.notifications_enabled = body.enabled
    if body.due_date_reminder is not None:
        user.due_date_reminder = body.due_date_reminder
    if body.overdue_notification is not None:
        user.overdue_notification = body.overdue_notification
    if body.reminder_hours is not None:
        user.reminder_hours = body.reminder_hours

    await db.commit()
    await db.refresh(user)
    return _settings_dict(user)


async def _issue_tokens(db: AsyncSession, user: User) -> dict:
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    user.refresh_token = refresh_token
    await db.commit()
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
        "user": _user_dict(user),
    }


def _user_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "email_notifications": _settings_dict(user),
    }


def _settings_dict(user: User) -> dict:
    return {
        "enabled": user.notifications_enabled,
        "due_date_reminder": user.due_date_reminder,
        "overdue_notification": user.overdue_notification,
        "reminder_hours": user.reminder_hours,
    }
