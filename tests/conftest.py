"""
Configuration for pytest.

This module provides fixtures and configuration for running tests.
"""

import os

os.environ["ENVIRONMENT"] = "testing"

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Optional

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tableside.db.session import get_db
from tableside.main import app
from tableside.models.base import Base
from tableside.services.change_feed import LocalChangeFeed, get_change_feed
from tableside.services.coordinator import SessionCoordinator
from tableside.services.identity import DeviceIdentityProvider
from tableside.services.store import SqlSessionStore


class FakeClock:
    """
    Controllable UTC clock.

    Every reading moves time forward by ``step`` so that rows written one
    after another never share a timestamp.
    """

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(milliseconds=1)):
        self.now = start or datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def restaurant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def feed() -> AsyncGenerator[LocalChangeFeed, None]:
    feed = LocalChangeFeed()
    yield feed
    await feed.close()


@pytest.fixture
def sql_store(session_factory, feed, clock) -> SqlSessionStore:
    return SqlSessionStore(session_factory, change_feed=feed, clock=clock)


@pytest.fixture
async def async_client(session_factory, feed) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_change_feed] = lambda: feed

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def ip_lookup_client(ip: Optional[str] = None, status_code: int = 200) -> httpx.AsyncClient:
    """HTTP client answering the public IP lookup with a fixed response."""
    def handler(request: httpx.Request) -> httpx.Response:
        if ip is None:
            raise httpx.ConnectError("lookup service unreachable", request=request)
        return httpx.Response(status_code, json={"ip": ip})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def lookup_client() -> Callable[..., httpx.AsyncClient]:
    return ip_lookup_client


@pytest.fixture
def identity_provider(clock) -> Callable[..., DeviceIdentityProvider]:
    """Factory for identity providers reporting a given public IP."""
    def build(ip: Optional[str] = "203.0.113.10", status_code: int = 200) -> DeviceIdentityProvider:
        return DeviceIdentityProvider(
            client=ip_lookup_client(ip, status_code),
            lookup_url="https://ip.test/?format=json",
            clock=clock,
        )

    return build


@pytest.fixture
async def make_coordinator(sql_store, feed, clock, identity_provider):
    """Factory for coordinators sharing one store, feed and clock; closed on teardown."""
    coordinators = []

    def build(ip: str, store=None) -> SessionCoordinator:
        coordinator = SessionCoordinator(
            store or sql_store,
            identity_provider(ip),
            change_feed=feed,
            clock=clock,
        )
        coordinators.append(coordinator)
        return coordinator

    yield build

    for coordinator in coordinators:
        await coordinator.close()
