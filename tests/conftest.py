"""Test fixtures for the smart routing service."""

import os

# Settings are read at import time, so the test environment must be in place
# before anything from the application is imported.
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_TO_FILE"] = "false"
os.environ["CACHE_ENABLED"] = "false"
os.environ["DB_CREATE_TABLES"] = "false"

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

from app.api.dependencies import get_cache_service, get_event_emitter, get_match_counter
from app.core.cache import CacheService
from app.db.base import async_session_factory, engine
from app.main import app as main_app
# Import models to ensure they're registered with SQLModel metadata
from app.models.url import ShortURL
from app.models.routing import RoutingRule
from app.models.audit import AuditLog
from app.repositories.audit_repository import AuditLogRepository
from app.repositories.routing_repository import RoutingRuleRepository
from app.repositories.url_repository import URLRepository
from app.services.audit import AuditLogService
from app.services.events import DomainEventEmitter
from app.services.match_counter import MatchCountBatcher
from app.services.redirect import RedirectService
from app.services.routing import RoutingService
from app.services.routing_evaluator import RoutingEvaluator


class MockRedis:
    """In-memory stand-in for the redis.asyncio client."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.deleted = []
        self.delete_calls = 0

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex:
            self.expiry[key] = ex

    async def delete(self, *keys):
        self.delete_calls += 1
        for key in keys:
            self.deleted.append(key)
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def exists(self, key):
        return key in self.data

    async def ping(self):
        return True

    async def close(self):
        pass


@pytest_asyncio.fixture
async def test_engine():
    """Create all tables on the in-memory SQLite engine, fresh for every test.

    Services commit their own transactions, so isolation comes from
    recreating the schema rather than rolling back.
    """
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    # Drops the single pooled connection so the next test starts on its own loop
    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the test database."""
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    """Mock Redis for testing."""
    return MockRedis()


@pytest.fixture
def cache(mock_redis):
    return CacheService(client=mock_redis, enabled=True)


@pytest.fixture
def event_emitter():
    return DomainEventEmitter()


@pytest.fixture
def match_counter():
    return MatchCountBatcher(RoutingRuleRepository(), flush_interval=30, max_retries=3)


@pytest.fixture
def evaluator():
    return RoutingEvaluator()


@pytest.fixture
def routing_service(cache, event_emitter, match_counter, evaluator):
    return RoutingService(
        url_repository=URLRepository(),
        rule_repository=RoutingRuleRepository(),
        audit_service=AuditLogService(AuditLogRepository()),
        event_emitter=event_emitter,
        cache=cache,
        match_counter=match_counter,
        evaluator=evaluator,
    )


@pytest.fixture
def redirect_service(routing_service, cache, evaluator):
    return RedirectService(
        url_repository=URLRepository(),
        routing_service=routing_service,
        cache=cache,
        evaluator=evaluator,
    )


@pytest.fixture
def test_app(cache, event_emitter, match_counter):
    """FastAPI app with the process-wide collaborators swapped for test doubles."""
    app = main_app
    app.dependency_overrides[get_cache_service] = lambda: cache
    app.dependency_overrides[get_event_emitter] = lambda: event_emitter
    app.dependency_overrides[get_match_counter] = lambda: match_counter
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(test_engine, test_app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client talking to the app in-process."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
