from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

# Ensure environment variables are set before application settings are imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./tests/test.db")
os.environ.setdefault("DATABASE_POOL_PRE_PING", "false")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("WEBHOOK_CLIENT_SECRET", "webhook-test-secret")
os.environ.setdefault("POS_MOCK_MODE", "true")
os.environ.setdefault("MINIMUM_AGE", "21")

from agegate.api import dependencies as dependencies_module
from agegate.db.session import AsyncSessionFactory, engine
from agegate.main import create_app
from agegate.models.base import Base
from agegate.models.types import utcnow
from agegate.services.deny_list import DenyListService
from agegate.services.pos_service_mock import PosServiceMock
from agegate.services.reconciliation_queue import ReconciliationQueue
from agegate.services.session_store import LiveSessionStore
from agegate.services.verification_service import VerificationService
from agegate.services.webhook_queue import WebhookQueue

# Tables register on Base.metadata when their modules are imported.
from agegate.models import banned_customer, reconciliation_job, webhook_event  # noqa: F401,E402


class FakeClock:
    """Manually advanced clock for TTL and heartbeat tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest_asyncio.fixture(autouse=True)
async def reset_database() -> AsyncGenerator[None, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionFactory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store(clock: FakeClock) -> LiveSessionStore:
    return LiveSessionStore(clock=clock)


@pytest.fixture
def pos_mock() -> PosServiceMock:
    return PosServiceMock()


@pytest.fixture
def reconciliation_queue(pos_mock: PosServiceMock, session_store: LiveSessionStore) -> ReconciliationQueue:
    return ReconciliationQueue(
        pos_mock,
        session_store=session_store,
        initial_delay=timedelta(0),
        max_attempts=25,
        max_age=timedelta(hours=4),
    )


@pytest.fixture
def webhook_queue(reconciliation_queue: ReconciliationQueue) -> WebhookQueue:
    return WebhookQueue(
        reconciliation_queue=reconciliation_queue,
        customer_sync=reconciliation_queue.expedite_waiting_for_customer,
        max_attempts=10,
    )


@pytest.fixture
def verification_service(
    session_store: LiveSessionStore, reconciliation_queue: ReconciliationQueue
) -> VerificationService:
    return VerificationService(session_store, reconciliation_queue, DenyListService(), minimum_age=21)


async def force_due(model: Any, **criteria: Any) -> None:
    """Pull matching rows' next attempt into the past so the next claim picks them up."""
    stmt = update(model).filter_by(**criteria).values(next_attempt_at=utcnow() - timedelta(seconds=1))
    async with AsyncSessionFactory() as session:
        async with session.begin():
            await session.execute(stmt)


async def backdate(model: Any, column: str, delta: timedelta, **criteria: Any) -> None:
    stmt = update(model).filter_by(**criteria).values({column: utcnow() - delta})
    async with AsyncSessionFactory() as session:
        async with session.begin():
            await session.execute(stmt)


@pytest.fixture
def app_environment(
    session_store: LiveSessionStore,
    reconciliation_queue: ReconciliationQueue,
    webhook_queue: WebhookQueue,
    verification_service: VerificationService,
) -> dict[str, Any]:
    app = create_app()

    # Clear the cached factories so no state leaks between tests.
    dependencies_module.get_http_client.cache_clear()
    dependencies_module.get_pos_service.cache_clear()
    dependencies_module.get_session_store.cache_clear()
    dependencies_module.get_reconciliation_queue.cache_clear()
    dependencies_module.get_webhook_queue.cache_clear()
    dependencies_module.get_verification_service.cache_clear()

    app.dependency_overrides[dependencies_module.get_session_store] = lambda: session_store
    app.dependency_overrides[dependencies_module.get_reconciliation_queue] = lambda: reconciliation_queue
    app.dependency_overrides[dependencies_module.get_webhook_queue] = lambda: webhook_queue
    app.dependency_overrides[dependencies_module.get_verification_service] = lambda: verification_service

    return {"app_instance": app, "session_store": session_store}


@pytest_asyncio.fixture
async def async_client(app_environment) -> AsyncGenerator[AsyncClient, None]:
    app = app_environment["app_instance"]
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def cron_headers() -> dict[str, str]:
    return {"X-Cron-Secret": os.environ["CRON_SECRET"]}
