"""Test fixtures — a throwaway SQLite database and a fresh app per test.

Learn: Testing pattern for async SQLAlchemy + FastAPI without a server:

1. Each test gets its own SQLite file (tmp_path). The schema is created
   with a plain sync engine, so no event loop is needed at setup time.
2. The async side uses aiosqlite with NullPool: every session opens its
   own connection on whatever loop is running. That matters because
   pytest-asyncio tests and Starlette's TestClient run different loops.
3. Each test builds its own app via create_app(), so the connection
   registry (live channels) is never shared between tests.

Redis is disabled (settings.redis_url = ""): the app publishes straight
to its local dispatcher and rate limiting is skipped.
"""

import asyncio
import json
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool
from websockets.protocol import State

from ticketflow.auth.jwt import create_access_token
from ticketflow.config import settings
from ticketflow.db.engine import get_db
from ticketflow.db.models import Base, User
from ticketflow.events.envelope import Event
from ticketflow.main import create_app
from ticketflow.realtime.principals import DatabasePrincipalResolver

settings.redis_url = ""

# (id, role) seeded into every test database
USERS = [
    ("admin-1", "admin"),
    ("manager-1", "manager"),
    ("agent-1", "agent"),
    ("agent-2", "agent"),
    ("customer-1", "customer"),
    ("customer-2", "customer"),
]


def auth_header(user_id: str, role: Optional[str] = None) -> dict[str, str]:
    """Bearer header with a real signed token."""
    role = role or dict(USERS).get(user_id)
    return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}


class RecordingPublisher:
    """Publisher that keeps every event instead of fanning it out."""

    def __init__(self):
        self.events: list[Event] = []

    def publish(self, event: Event) -> int:
        self.events.append(event)
        return 0

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture()
def session_factory(tmp_path):
    """Session factory over a fresh, seeded SQLite database."""
    path = tmp_path / "ticketflow-test.db"

    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    with Session(sync_engine) as session:
        session.add_all(
            User(id=uid, email=f"{uid}@example.com", name=uid.replace("-", " ").title(), role=role)
            for uid, role in USERS
        )
        session.commit()
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
def app(session_factory):
    """A fresh app wired to the test database."""
    application = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    application.state.principal_resolver = DatabasePrincipalResolver(session_factory)
    yield application
    application.dependency_overrides.clear()


@pytest.fixture()
def recorder(app) -> RecordingPublisher:
    """Swap the app's publisher for one that records events."""
    rec = RecordingPublisher()
    app.state.publisher = rec
    return rec


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client with auth overridden to an admin identity.

    Learn: Overriding get_current_user means protected routes work
    without minting tokens. require_roles() builds on get_current_user,
    so the override satisfies role gates too.
    """
    from ticketflow.auth.dependencies import CurrentIdentity, get_current_user

    def override_get_current_user():
        return CurrentIdentity(user_id="admin-1", role="admin")

    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def unauthenticated_client(app):
    """HTTP client WITHOUT the auth override — for real JWT flows."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class FakeTransport:
    """In-memory stand-in for a server-side WebSocket."""

    def __init__(self, fail: bool = False):
        self.sent: list[str] = []
        self.close_code: Optional[int] = None
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code


# ─── Client-side socket doubles ───────────────────────────


class FakeSocket:
    """Client-side socket double: records sends, yields pushed frames."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: list[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.drop()

    def push(self, frame) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Server went away."""
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws


class InstantSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)
