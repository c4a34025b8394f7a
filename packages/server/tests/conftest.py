"""
Shared fixtures: per-test SQLite database, fake Redis, app client and users.
"""

from __future__ import annotations

import os

# Settings are read at import time, so these must be set before `app` loads.
os.environ.setdefault("CCPM_ENVIRONMENT", "test")
os.environ.setdefault("CCPM_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CCPM_BCRYPT_ROUNDS", "4")
os.environ.setdefault("CCPM_LOG_FORMAT", "text")
os.environ.setdefault("CCPM_LOG_LEVEL", "warning")

from typing import Optional  # noqa: E402
from unittest.mock import AsyncMock, patch  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from app.core.auth import create_access_token, hash_password  # noqa: E402
from app.core.database import get_session  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models.assignments import ProjectMember  # noqa: E402
from app.models.project import Project  # noqa: E402
from app.models.task import Task  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services.email import LoggingEmailSender, get_email_sender  # noqa: E402

DEFAULT_PASSWORD = "correct-horse-battery"


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the revocation list."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value
        self.ttls[key] = ttl

    async def exists(self, key: str) -> int:
        return int(key in self.store)

    async def aclose(self) -> None:
        pass


@pytest.fixture(autouse=True)
def fake_redis():
    redis = FakeRedis()
    with patch("app.core.auth.get_redis", AsyncMock(return_value=redis)):
        yield redis


@pytest.fixture
async def engine(tmp_path):
    # A file database gives each session its own connection, like production.
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ccpm.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def outbox():
    return LoggingEmailSender()


@pytest.fixture
def app(session_factory, outbox):
    application = create_app()

    async def _override_session():
        async with session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    application.dependency_overrides[get_session] = _override_session
    application.dependency_overrides[get_email_sender] = lambda: outbox
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    counter = {"n": 0}

    async def _make(
        role: str = "USER",
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password: str = DEFAULT_PASSWORD,
        is_active: bool = True,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=email or f"user{n}@example.com",
            username=username or f"{role.lower()}{n}",
            name=f"{role.title()} {n}",
            password_hash=hash_password(password),
            role=role,
            is_active=is_active,
        )
        async with session_factory() as s:
            s.add(user)
            await s.commit()
        return user

    return _make


@pytest.fixture
def make_project(session_factory):
    async def _make(owner: User, name: str = "Bridge retrofit") -> Project:
        project = Project(name=name, owner_id=owner.id)
        async with session_factory() as s:
            s.add(project)
            await s.commit()
        return project

    return _make


@pytest.fixture
def make_task(session_factory):
    async def _make(project: Project, title: str = "Task", created_by: Optional[User] = None) -> Task:
        task = Task(
            project_id=project.id,
            title=title,
            created_by=created_by.id if created_by else project.owner_id,
        )
        async with session_factory() as s:
            s.add(task)
            await s.commit()
        return task

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        token, _ = create_access_token(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def add_member(session_factory):
    async def _add(project: Project, user: User) -> None:
        async with session_factory() as s:
            s.add(ProjectMember(project_id=project.id, user_id=user.id))
            await s.commit()

    return _add
