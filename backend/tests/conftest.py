"""Shared pytest fixtures for ThreatQuery tests.

Provides:
- Async test database (in-memory SQLite, fresh per test)
- Query engine wired to the test database
- Test client (httpx AsyncClient on the FastAPI app)
- Factory helpers for seeding incidents and fake backends
"""

import asyncio
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Force test database and enable token auth
os.environ["TQ_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TQ_JWT_SECRET"] = "test-secret-key-for-tests"

from threatquery.db.engine import Base, get_db
from threatquery.db.models import Incident, User
from threatquery.main import app
from threatquery.services.auth import create_access_token
from threatquery.services.query_engine import QueryEngine, get_query_engine
from threatquery.services.query_executor import (
    BackendResult,
    QueryExecutor,
    QueryLimits,
    SqlAlchemyBackend,
)
from threatquery.services.query_history import QueryHistoryStore
from threatquery.services.schema_catalog import load_catalog


# ── Database fixtures ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_engine():
    """In-memory database shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def catalog():
    return load_catalog()


@pytest.fixture
def history_store(session_factory):
    return QueryHistoryStore(session_factory)


@pytest.fixture
def query_engine(catalog, test_engine, history_store):
    executor = QueryExecutor(
        SqlAlchemyBackend(test_engine),
        QueryLimits(max_rows=100, timeout_seconds=5.0),
    )
    return QueryEngine(catalog=catalog, executor=executor, history=history_store)


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Two tenants: U1 owns 3 critical + 1 low incident, U2 owns 2 critical."""
    await seed_incidents(session_factory, "U1", 3, severity="critical")
    await seed_incidents(session_factory, "U1", 1, severity="low")
    await seed_incidents(session_factory, "U2", 2, severity="critical")
    async with session_factory() as db:
        db.add_all([
            User(id="U1", username="alice", role="analyst"),
            User(id="U2", username="bob", role="analyst"),
        ])
        await db.commit()


@pytest_asyncio.fixture
async def client(session_factory, query_engine, seeded) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the DB and query engine pointed at the test database."""

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_query_engine] = lambda: query_engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _headers


# ── Factory helpers ───────────────────────────────────────────────────


async def seed_incidents(session_factory, owner: str, count: int, severity: str = "high", **fields):
    async with session_factory() as db:
        db.add_all([
            Incident(
                owner=owner,
                title=fields.get("title", f"{severity} incident {i} for {owner}"),
                severity=severity,
                status=fields.get("status", "open"),
                log_data=fields.get("log_data", "EventID=4688 NewProcessName=cmd.exe"),
                classification=fields.get("classification", "true-positive"),
                confidence=fields.get("confidence", 90),
            )
            for i in range(count)
        ])
        await db.commit()


class FakeBackend:
    """Scripted backend that records every statement it receives."""

    def __init__(self, columns=None, rows=None, total=None, error=None, delay=0.0):
        self.columns = columns or ["id"]
        self.rows = rows or []
        self.total = total
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    async def run(self, sql: str, max_rows: int, timeout_seconds: float) -> BackendResult:
        self.calls.append(sql)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return BackendResult(columns=self.columns, rows=self.rows, total=self.total)


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def seed():
    return seed_incidents
