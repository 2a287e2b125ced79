"""
Centralized Test Configuration.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
import backend.app.db.session as session_module
from backend.app.core.jwt import create_access_token
from backend.app.core.redis_client import get_redis
import backend.app.core.redis_client as redis_client_module
import backend.app.services.notification_service as notification_module
from backend.app.models.billing_enums import PaymentStatus, FeeType
from backend.app.models.fee_policy import FeePolicy
from backend.app.models.payment import Payment
from backend.app.models.reservation import Reservation
from backend.app.models.trip import Trip
from backend.app.models.trip_enums import ReservationStatus, TripStatus

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for every time-dependent rule
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

DRIVER_ID = 10
PASSENGER_ID = 100
ADMIN_ID = 1

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if self._closed:
            return False
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def eval(self, script, numkeys, *keys_and_args):
        # Only the lock release script is understood: compare-and-delete
        if self._closed:
            return 0
        key, token = keys_and_args[0], keys_and_args[numkeys]
        if self.store.get(key) != token:
            return 0
        del self.store[key]
        return 1

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session.

    Background work (scheduler sweeps, notifications, FAILED audit rows)
    opens sessions through ``get_session_factory``, so the app factory is
    pointed at the test database as well.
    """
    original_client = redis_client_module.redis_client
    original_factory = session_module.AsyncSessionLocal
    redis_client_module.redis_client = redis_client_session
    session_module.AsyncSessionLocal = TestingSessionLocal

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client
    session_module.AsyncSessionLocal = original_factory


@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    """
    Record notifications instead of writing them from background tasks.

    Tests of the delivery path itself use the ``deliver`` fixture.
    """
    sent = []

    async def record(user_id, title, message, link=None, type=None, metadata=None):
        sent.append({"user_id": user_id, "title": title, "message": message, "link": link})
        return True

    monkeypatch.setattr(notification_module, "deliver_notification", record)
    return sent


_original_deliver = notification_module.deliver_notification


@pytest.fixture
def deliver():
    """The real ``deliver_notification``, for tests of the delivery path."""
    return _original_deliver


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def auth_headers():
    """Build a bearer header for a user with the given role."""
    def _headers(user_id: int, role: str, username: str = None):
        token = create_access_token({"sub": username or f"user{user_id}", "user_id": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_fee_policy(db_session):
    async def _make(fee_type=FeeType.PERCENTAGE, rate="10.00", minimum_fee=None, maximum_fee=None, is_active=True):
        policy = FeePolicy(
            name=f"{fee_type.value.lower()} policy",
            fee_type=fee_type,
            rate=Decimal(rate),
            minimum_fee=Decimal(minimum_fee) if minimum_fee is not None else None,
            maximum_fee=Decimal(maximum_fee) if maximum_fee is not None else None,
            is_active=is_active
        )
        db_session.add(policy)
        await db_session.commit()
        return policy
    return _make


@pytest.fixture
def make_trip(db_session):
    async def _make(
        driver_id=DRIVER_ID,
        price_per_seat="100.00",
        total_seats=4,
        departure=None,
        departure_in_hours=72,
        duration_seconds=7200,
        status=TripStatus.ACTIVE,
        service_fee=None,
        fee_policy_id=None
    ):
        trip = Trip(
            driver_id=driver_id,
            price_per_seat=Decimal(price_per_seat),
            total_seats=total_seats,
            remaining_seats=total_seats,
            is_full=False,
            departure_time=departure or NOW + timedelta(hours=departure_in_hours),
            duration_seconds=duration_seconds,
            status=status,
            service_fee=Decimal(service_fee) if service_fee is not None else None,
            fee_policy_id=fee_policy_id
        )
        db_session.add(trip)
        await db_session.commit()
        return trip
    return _make


@pytest.fixture
def make_reservation(db_session):
    """
    Insert a reservation in any status, keeping the trip's seat counter
    consistent for seat-holding statuses. ``payment_status`` adds a payment
    of total_price + ``service_fee``.
    """
    async def _make(
        trip,
        passenger_id=PASSENGER_ID,
        seats=1,
        status=ReservationStatus.PENDING_APPROVAL,
        created_at=None,
        approved_at=None,
        payment_status=None,
        service_fee="10.00"
    ):
        total_price = Decimal(trip.price_per_seat) * seats
        reservation = Reservation(
            trip_id=trip.id,
            passenger_id=passenger_id,
            seats_reserved=seats,
            total_price=total_price,
            reservation_status=status,
            created_at=created_at or NOW - timedelta(days=3),
            approved_at=approved_at or (
                NOW - timedelta(days=2) if status in (ReservationStatus.APPROVED, ReservationStatus.CONFIRMED) else None
            )
        )
        db_session.add(reservation)
        await db_session.flush()

        if payment_status is not None:
            fee = Decimal(service_fee)
            db_session.add(Payment(
                reservation_id=reservation.id,
                status=payment_status,
                total_amount=total_price + fee,
                service_fee=fee,
                currency="ARS",
                completed_at=NOW - timedelta(days=1) if payment_status == PaymentStatus.COMPLETED else None
            ))

        if status in (ReservationStatus.APPROVED, ReservationStatus.CONFIRMED):
            trip.remaining_seats -= seats
            trip.is_full = trip.remaining_seats == 0

        await db_session.commit()
        return reservation
    return _make


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fetch(db_session):
    """Fetch a row bypassing the identity map."""
    async def _fetch(model, pk):
        return await db_session.get(model, pk, populate_existing=True)
    return _fetch
