"""
Pytest configuration and fixtures.

Provides fixtures for:
- Database sessions on a throwaway SQLite file (one engine per test)
- Marketplace users and a listing to chat about
- Conversation store, dispatcher and negotiation engine wired to a recording sink
- A realtime hub with fake connections and a fake notification sink
- HTTP client with auth headers
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from marketchat.api.deps import get_hub, get_session_factory
from marketchat.core.circuit_breaker import clear_all_breakers
from marketchat.core.config import get_settings
from marketchat.core.constants import ListingStatus, NotificationKind, UserRole
from marketchat.core.security import create_access_token
from marketchat.core.utils import utcnow
from marketchat.db.base import Base
from marketchat.db.session import build_session_factory, get_db
from marketchat.main import app
from marketchat.models import Listing, User
from marketchat.services.conversations import ConversationStore
from marketchat.services.events import RecordingEventSink
from marketchat.services.negotiation import NegotiationEngine
from marketchat.services.presence import PresenceRegistry
from marketchat.services.realtime import RealtimeHub
from marketchat.services.transactions import NoopTransactionTrigger


@pytest.fixture(autouse=True)
def cleanup_breakers():
    """Circuit breakers are process-wide; start every test closed."""
    clear_all_breakers()
    yield
    clear_all_breakers()


# -----------------------------------------------------------------------------
# Database
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """
    Create test database engine.

    A file database (not :memory:) so several sessions can see each other's
    commits, which the concurrency tests rely on.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    """Starts at the real current time so rows stamped by column defaults sort consistently."""
    return FrozenClock(utcnow())


# -----------------------------------------------------------------------------
# User / listing fixtures
# -----------------------------------------------------------------------------

async def _create_user(db: AsyncSession, username: str, role: UserRole, **kwargs) -> User:
    user = User(username=username, role=role, is_active=True, **kwargs)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def buyer(db_session) -> User:
    return await _create_user(db_session, "buyer", UserRole.BUYER, display_name="Bea Buyer")


@pytest_asyncio.fixture
async def vendor(db_session) -> User:
    return await _create_user(db_session, "vendor", UserRole.VENDOR, display_name="Vic Vendor")


@pytest_asyncio.fixture
async def outsider(db_session) -> User:
    """A user who takes part in none of the test chats."""
    return await _create_user(db_session, "outsider", UserRole.BUYER)


@pytest_asyncio.fixture
async def admin(db_session) -> User:
    return await _create_user(db_session, "admin", UserRole.ADMIN)


@pytest_asyncio.fixture
async def listing(db_session, vendor) -> Listing:
    item = Listing(
        vendor_id=vendor.id,
        title="Vintage camera",
        price=Decimal("200.00"),
        status=ListingStatus.ACTIVE,
    )
    db_session.add(item)
    await db_session.commit()
    await db_session.refresh(item)
    return item


# -----------------------------------------------------------------------------
# Core services
# -----------------------------------------------------------------------------

@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def store(db_session, events, clock) -> ConversationStore:
    return ConversationStore(db_session, events=events, clock=clock)


@pytest.fixture
def dispatcher(store):
    return store.dispatcher


@pytest.fixture
def negotiation(dispatcher) -> NegotiationEngine:
    return NegotiationEngine(dispatcher)


@pytest_asyncio.fixture
async def chat(store, buyer, vendor, listing):
    """An ACTIVE product chat between buyer and vendor."""
    creation = await store.create_or_get_chat(buyer_id=buyer.id, listing_id=listing.id)
    return creation.chat


# -----------------------------------------------------------------------------
# Realtime fakes
# -----------------------------------------------------------------------------

_connection_ids = itertools.count(1)


class FakeConnection:
    """In-memory stand-in for a WebSocket."""

    def __init__(self, fail: bool = False):
        self.id = f"conn-{next(_connection_ids)}"
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    def frames(self, frame_type: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


class FakeNotificationSink:
    def __init__(self):
        self.notifications: list[tuple[int, NotificationKind, dict[str, Any]]] = []
        self.closed = False

    async def notify(self, user_id: int, kind: NotificationKind, payload: dict[str, Any]) -> None:
        self.notifications.append((user_id, kind, payload))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_connection():
    """Factory for fake connections."""
    return FakeConnection


@pytest.fixture
def notifier() -> FakeNotificationSink:
    return FakeNotificationSink()


@pytest_asyncio.fixture
async def hub(notifier) -> AsyncGenerator[RealtimeHub, None]:
    settings = get_settings().model_copy(update={"typing_timeout_seconds": 0.05})
    realtime = RealtimeHub(
        settings=settings,
        notifier=notifier,
        transactions=NoopTransactionTrigger(),
        presence=PresenceRegistry(),
    )
    yield realtime
    await realtime.shutdown()


def token_for(user: User) -> str:
    return create_access_token(user.id)


@pytest.fixture
def auth_headers():
    """Build bearer headers for a user."""
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {token_for(user)}"}
    return _headers


# -----------------------------------------------------------------------------
# HTTP client
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="function")
async def client(session_factory, hub) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client bound to the test database and hub."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
