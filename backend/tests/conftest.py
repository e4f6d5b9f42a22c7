"""
Pytest fixtures for test database, client, fakes and authentication.

Each test gets its own SQLite file with tables created from metadata. Service
calls open their own session (like a request would) so every test observes
committed state, never a shared identity map.
"""

import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

_TEST_DIR = tempfile.mkdtemp(prefix="booking_engine_tests_")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/app.db"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["TICKETS_DIR"] = os.path.join(_TEST_DIR, "tickets")
os.environ["BOOKING_LOCK_MINUTES"] = "10"
os.environ.pop("STRIPE_SECRET_KEY", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("SMTP_HOST", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from booking_engine.core.exceptions import InvalidSignature, ProviderError
from booking_engine.core.security import ROLE_ADMIN, ROLE_USER, CurrentUser, create_access_token
from booking_engine.db.base import Base
from booking_engine.db.session import get_db
from booking_engine.main import app
from booking_engine.models import Booking, Event, User
from booking_engine.services.interfaces import (
    Notifier,
    PaymentProvider,
    ProviderIntent,
    ProviderRefund,
    TicketRenderer,
)
from booking_engine.services.strategy_factory import (
    get_notifier,
    get_payment_provider,
    get_ticket_renderer,
)

VALID_SIGNATURE = "t=1,v1=valid"


class FakePaymentProvider(PaymentProvider):
    name = "fakepay"

    def __init__(self):
        self.intents: List[dict] = []
        self.refunds: List[dict] = []
        self.refund_status = "pending"
        self.fail_intent = False
        self.fail_refund = False

    async def create_intent(self, amount_minor, currency, metadata):
        if self.fail_intent:
            raise ProviderError("card network unavailable")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents.append(
            {"id": intent_id, "amount": amount_minor, "currency": currency, "metadata": metadata}
        )
        return ProviderIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            raw={"id": intent_id, "amount": amount_minor, "metadata": metadata},
        )

    async def create_refund(self, provider_payment_id, metadata, reason=None):
        if self.fail_refund:
            raise ProviderError("refund rejected")
        refund_id = f"re_test_{len(self.refunds) + 1}"
        self.refunds.append(
            {"id": refund_id, "payment_intent": provider_payment_id, "metadata": metadata}
        )
        return ProviderRefund(
            id=refund_id,
            status=self.refund_status,
            raw={"id": refund_id, "status": self.refund_status},
        )

    def construct_event(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise InvalidSignature()
        return json.loads(payload)


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def send(self, to, subject, body, attachment_path=None):
        if self.fail:
            raise RuntimeError("SMTP relay refused connection")
        if not to:
            raise ValueError("Recipient email is missing")
        self.sent.append(
            {"to": to, "subject": subject, "body": body, "attachment_path": attachment_path}
        )


class FakeTicketRenderer(TicketRenderer):
    def __init__(self):
        self.rendered: List[int] = []
        self.fail = False

    def render(self, booking, event, user=None):
        if self.fail:
            raise OSError("disk full")
        self.rendered.append(booking.id)
        return f"/tmp/ticket_{booking.id}.pdf"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def renderer() -> FakeTicketRenderer:
    return FakeTicketRenderer()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, provider, notifier, renderer) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the DB session and collaborators overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_ticket_renderer] = lambda: renderer

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_user(session_factory) -> User:
    async with session_factory() as db:
        user = User(name="Test User", email="test@example.com", role=ROLE_USER)
        db.add(user)
        await db.commit()
        return user


@pytest_asyncio.fixture
async def other_user(session_factory) -> User:
    async with session_factory() as db:
        user = User(name="Other User", email="other@example.com", role=ROLE_USER)
        db.add(user)
        await db.commit()
        return user


@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    async with session_factory() as db:
        user = User(name="Admin", email="admin@example.com", role=ROLE_ADMIN)
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
def caller(test_user) -> CurrentUser:
    return CurrentUser(id=test_user.id, role=ROLE_USER)


def bearer(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_user) -> dict:
    return bearer(test_user)


async def make_event(
    session_factory,
    total_seats: int = 10,
    available_seats: Optional[int] = None,
    price: str = "250.00",
    title: str = "Test Concert",
) -> Event:
    async with session_factory() as db:
        event = Event(
            title=title,
            description="A test event",
            location="Test Venue",
            date=datetime.now(timezone.utc) + timedelta(days=30),
            price=Decimal(price),
            total_seats=total_seats,
            available_seats=total_seats if available_seats is None else available_seats,
        )
        db.add(event)
        await db.commit()
        return event


@pytest_asyncio.fixture
async def test_event(session_factory) -> Event:
    """Ten seats at 250.00."""
    return await make_event(session_factory)


async def get_event(session_factory, event_id: int) -> Event:
    async with session_factory() as db:
        return await db.get(Event, event_id)


async def get_booking(session_factory, booking_id: int) -> Optional[Booking]:
    async with session_factory() as db:
        return await db.get(Booking, booking_id)


async def backdate_booking(session_factory, booking_id: int, minutes: float) -> None:
    """Move booked_at into the past to simulate an elapsed lock window."""
    async with session_factory() as db:
        await db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(booked_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )
        await db.commit()
