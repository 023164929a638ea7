"""Shared pytest fixtures for logward tests.

Provides:
- Async test database (in-memory SQLite, fresh per test)
- Test client (httpx AsyncClient on the FastAPI app)
- Fakes for the evaluation queue, lookup providers and notifier
"""

import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Mapping, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Force test database and keep network lookups off
os.environ["LW_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LW_ENRICHMENT_ENABLED"] = "false"
os.environ["LW_RETENTION_ENABLED"] = "false"

from logward.api.deps import get_ingest_service, get_retention_service  # noqa: E402
from logward.db import Base, create_engine_for, get_db, session_factory_for  # noqa: E402
from logward.db import models as _models  # noqa: E402, F401
from logward.main import app  # noqa: E402
from logward.services.enrichment import EnrichmentPipeline, GeoLocation  # noqa: E402
from logward.services.ingest import IngestService  # noqa: E402
from logward.services.retention import RetentionService  # noqa: E402


# ── Fakes ─────────────────────────────────────────────────────────────


class RecordingQueue:
    """Stands in for the evaluation queue; keeps submissions in order."""

    def __init__(self):
        self.events: list[dict] = []

    def submit(self, event: Mapping[str, Any]) -> bool:
        self.events.append(dict(event))
        return True

    async def put(self, event: Mapping[str, Any], timeout: Optional[float] = None) -> bool:
        return self.submit(event)


class FakeDnsProvider:
    name = "dns"
    is_available = True

    def __init__(self, answers: Optional[dict[str, str]] = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    async def resolve(self, ip: str) -> Optional[str]:
        self.calls.append(ip)
        return self.answers.get(ip)


class FakeGeoIPProvider:
    name = "geoip"
    is_available = True

    def __init__(self, answers: Optional[dict[str, GeoLocation]] = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        self.calls.append(ip)
        return self.answers.get(ip)

    def close(self) -> None:
        pass


class RecordingNotifier:
    def __init__(self, result: bool = True):
        self.result = result
        self.sent: list[tuple[str, dict]] = []

    async def send(self, webhook_url, alert) -> bool:
        self.sent.append((webhook_url, dict(alert)))
        return self.result


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


# ── Database fixtures ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return session_factory_for(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def ingest_service(recording_queue) -> IngestService:
    return IngestService(pipeline=EnrichmentPipeline(enabled=False), queue=recording_queue)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retention_service(session_factory, fake_clock) -> RetentionService:
    return RetentionService(
        session_factory=session_factory, default_days=30, alert_days=90, clock=fake_clock
    )


@pytest_asyncio.fixture
async def client(session_factory, ingest_service, retention_service) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with overridden DB and service dependencies."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_ingest_service] = lambda: ingest_service
    app.dependency_overrides[get_retention_service] = lambda: retention_service

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-Tenant-ID": "acme"}
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def fake_dns() -> FakeDnsProvider:
    return FakeDnsProvider()


@pytest.fixture
def fake_geoip() -> FakeGeoIPProvider:
    return FakeGeoIPProvider()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()
