"""
Shared pytest fixtures for the JvmScope test suite.

Provides an in-memory SQLite database (via aiosqlite), a session factory,
an event bus with a recording subscriber, a discovery runtime without any
backends, and a FastAPI test client bound to that runtime.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from jvmscope.config import Settings
from jvmscope.core.database import Base
from jvmscope.core.events import EventBus, TargetDiscoveryEvent
from jvmscope.core.security import DiscoveryTokenFactory
from jvmscope.models import DiscoveryNode, DiscoveryPlugin, Target  # noqa: F401

TEST_SECRET: str = "jvmscope-test-secret"


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class FakeProbe:
    """Connection collaborator with scripted answers."""

    def __init__(self, reachable: bool = True, jvm_ids: Optional[dict[str, str]] = None) -> None:
        self.reachable = reachable
        self.jvm_ids: dict[str, str] = dict(jvm_ids or {})
        self.checked: list[str] = []
        self.jvm_id_lookups: list[str] = []

    async def check(self, connect_url: str, username=None, password=None) -> bool:
        self.checked.append(connect_url)
        return self.reachable

    async def jvm_id(self, connect_url: str, username=None, password=None) -> Optional[str]:
        self.jvm_id_lookups.append(connect_url)
        return self.jvm_ids.get(connect_url)


class EventRecorder:
    """Bus subscriber keeping every delivered event."""

    def __init__(self) -> None:
        self.events: list[TargetDiscoveryEvent] = []

    async def __call__(self, event: TargetDiscoveryEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[tuple[str, str]]:
        return [(event.kind.value, event.connect_url) for event in self.events]

    def clear(self) -> None:
        self.events.clear()


def callback_transport(alive: set[str]) -> httpx.MockTransport:
    """Plugin callback transport answering 200 for URLs in *alive*, 503 otherwise."""

    def _handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in alive:
            return httpx.Response(200)
        if url.startswith("http://unreachable"):
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(503)

    return httpx.MockTransport(_handler)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    """Settings isolated from the developer's environment and ``.env``."""
    return Settings(
        _env_file=None,
        PUBLIC_BASE_URL="http://jvmscope.test",
        PLUGIN_TOKEN_SECRET=TEST_SECRET,
        PLUGIN_PING_PERIOD_SECONDS=300.0,
        KUBERNETES_NAMESPACES=["."],
        KUBERNETES_PORT_NAMES=["jfr-jmx"],
        KUBERNETES_PORT_NUMBERS=[9091],
    )


@pytest.fixture()
def tokens(settings: Settings) -> DiscoveryTokenFactory:
    return DiscoveryTokenFactory(settings)


# ---------------------------------------------------------------------------
# Database engine and session fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async in-memory SQLite engine and provision all tables.

    ``StaticPool`` keeps a single connection so every session sees the
    same in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture()
async def bus(recorder: EventRecorder) -> AsyncGenerator[EventBus, None]:
    event_bus = EventBus()
    event_bus.subscribe(recorder)
    yield event_bus
    await event_bus.close()


# ---------------------------------------------------------------------------
# Runtime and FastAPI client
# ---------------------------------------------------------------------------


@pytest.fixture()
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture()
def alive_callbacks() -> set[str]:
    """Plugin callback URLs that answer pings.  Tests add to it."""
    return set()


@pytest_asyncio.fixture()
async def runtime(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    probe: FakeProbe,
    tokens: DiscoveryTokenFactory,
    alive_callbacks: set[str],
    recorder: EventRecorder,
):
    """A started discovery runtime with no discovery backends."""
    from jvmscope.runtime import DiscoveryRuntime

    discovery_runtime = DiscoveryRuntime(
        session_factory,
        settings=settings,
        backends=[],
        probe=probe,
        tokens=tokens,
        plugin_transport=callback_transport(alive_callbacks),
    )
    discovery_runtime.bus.subscribe(recorder)
    await discovery_runtime.start()
    yield discovery_runtime
    await discovery_runtime.stop()


@pytest_asyncio.fixture()
async def client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """Yield an httpx.AsyncClient wired to the application and *runtime*."""
    from jvmscope.main import create_app

    app = create_app()
    app.state.runtime = runtime
    transport = ASGITransport(app=app, client=("10.0.0.7", 41000))
    async with AsyncClient(transport=transport, base_url="http://jvmscope.test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def find_child(node: dict[str, Any], name: str, node_type: Optional[str] = None) -> Optional[dict[str, Any]]:
    for child in node.get("children", []):
        if child["name"] == name and (node_type is None or child["nodeType"] == node_type):
            return child
    return None


@pytest.fixture()
def read_tree(session_factory: async_sessionmaker[AsyncSession]):
    """Return a coroutine function reading the committed tree from the Universe."""
    from jvmscope.engine.topology import Topology

    async def _read() -> dict[str, Any]:
        async with session_factory() as session:
            return await session.run_sync(
                lambda sync: Topology(sync).get_universe().to_dict()
            )

    return _read


@pytest.fixture()
def child_named():
    """Expose :func:`find_child` to test modules."""
    return find_child
