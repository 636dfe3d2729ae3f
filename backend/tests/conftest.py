# tests/conftest.py

from __future__ import annotations

import os

# Must be set before todo_api is imported: the module-level engine and
# settings read them once.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-with-at-least-thirty-two-bytes"
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASSWORD"] = ""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from todo_api.core.database import Base, get_db
from todo_api.core.security import hash_password
from todo_api.main import app
from todo_api.models import Task, User
from todo_api.services.email_service import get_email_service
from todo_api.services.notification_service import NotificationService, get_notification_service

from .fakes import FakeMailer

# Fixed clock for sweep tests: midday, so "yesterday" and "later today" are unambiguous.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

_PASSWORD_HASH = hash_password("secret123")


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path):
    """
    A fresh SQLite database per test.

    A file (not :memory:) so every pooled connection sees the same schema.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite3'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture()
def service(session_factory, mailer: FakeMailer) -> NotificationService:
    return NotificationService(session_factory, mailer)


@pytest_asyncio.fixture()
async def client(session_factory, mailer: FakeMailer, service: NotificationService):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_email_service] = lambda: mailer
    app.dependency_overrides[get_notification_service] = lambda: service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def make_user(db: AsyncSession, username: str = "alice", **fields) -> User:
    user = User(
        username=username,
        email=fields.pop("email", f"{username}@example.com"),
        hashed_password=_PASSWORD_HASH,
        **fields,
    )
    db.add(user)
    await db.commit()
    return user


async def make_task(db: AsyncSession, user: User, title: str = "Write report", **fields) -> Task:
    task = Task(user_id=user.id, title=title, **fields)
    db.add(task)
    await db.commit()
    return task


async def register(client: AsyncClient, username: str = "alice") -> dict:
    """Register through the API and return auth headers."""
    resp = await client.post(
        "/api/users/register",
        json={"username": username, "email": f"{username}@example.com", "password": "secret123"},
    )
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def at(minutes: int = 0, *, days: int = 0) -> datetime:
    return NOW + timedelta(days=days, minutes=minutes)


async def promote(session_factory, username: str = "alice") -> None:
    """Grant admin rights to an already registered account."""
    async with session_factory() as s:
        await s.execute(update(User).where(User.username == username).values(is_admin=True))
        await s.commit()
