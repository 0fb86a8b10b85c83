from __future__ import annotations

import os

# Settings are read at import time; tests always run against in-memory SQLite.
os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///:memory:")

from typing import List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from teamhub.api.deps.business import get_audit_sink, get_invitation_sender
from teamhub.core.errors import DeliveryFailed
from teamhub.db.session import get_db
from teamhub.services.audit import AuditEvent
from teamhub.services.delivery import InvitationMessage

# Ensure Base + models are registered before create_all
from teamhub.db.base import Base  # noqa: F401
import teamhub.models  # noqa: F401


# ---------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------
class RecordingAuditSink:
    def __init__(self):
        self.events: List[AuditEvent] = []
        self.fail = False

    async def record(self, event: AuditEvent) -> None:
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


class RecordingSender:
    def __init__(self):
        self.sent: List[InvitationMessage] = []
        self.fail = False

    async def send(self, invitation: InvitationMessage) -> None:
        if self.fail:
            raise DeliveryFailed("mail relay refused the message")
        self.sent.append(invitation)


# ---------------------------------------------------------
# Engine + schema lifecycle (fresh database per test)
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture()
def sessionmaker(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )


# ---------------------------------------------------------
# DB session for setup, service calls and assertions
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session
        await session.rollback()


@pytest.fixture()
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture()
def sender() -> RecordingSender:
    return RecordingSender()


# ---------------------------------------------------------
# FastAPI app + dependency overrides
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker, audit_sink, sender):
    from teamhub.main import app as fastapi_app

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    fastapi_app.dependency_overrides[get_invitation_sender] = lambda: sender
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------
# HTTP client
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac
