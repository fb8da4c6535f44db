import os

os.environ["JWT_SECRET"] = "test-secret-key-with-at-least-32-bytes"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["EMAIL_API_URL"] = ""
os.environ["LOG_JSON"] = "false"

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import jwt
import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stay_booking import routes, webhooks
from stay_booking.app import create_app
from stay_booking.config import settings
from stay_booking.database import get_db
from stay_booking.models import (
    Base,
    Booking,
    BookingStatus,
    Payment,
    PaymentStatus,
    Property,
    PropertyManager,
    User,
    UserRole,
)
from stay_booking.redis_client import get_redis
from stay_booking.schemas import CurrentUser

TODAY = date(2024, 1, 1)


# =============================================================================
# FAKES
# =============================================================================

class FakeLock:
    def __init__(self, redis, name):
        self.redis = redis
        self.name = name

    async def acquire(self, blocking_timeout=None):
        if self.name in self.redis.locks:
            return False
        self.redis.locks.add(self.name)
        return True

    async def release(self):
        self.redis.locks.discard(self.name)


class FakeRedis:
    """In-memory stand-in for the few Redis calls the service makes."""

    def __init__(self):
        self.store = {}
        self.locks = set()

    def lock(self, name, timeout=None):
        return FakeLock(self, name)

    async def exists(self, key):
        return int(key in self.store)

    async def setex(self, key, ttl, value):
        self.store[key] = value


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeRedis()


# =============================================================================
# USERS & LISTINGS
# =============================================================================

async def make_user(db, email, role=UserRole.GUEST):
    user = User(email=email, name=email.split("@")[0].title(), role=role.value)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def guest(db):
    return await make_user(db, "guest@example.com")


@pytest.fixture
async def other_guest(db):
    return await make_user(db, "other@example.com")


@pytest.fixture
async def host(db):
    return await make_user(db, "host@example.com", UserRole.HOST)


@pytest.fixture
async def manager(db):
    return await make_user(db, "manager@example.com", UserRole.PROPERTY_MANAGER)


@pytest.fixture
async def admin(db):
    return await make_user(db, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
async def listing(db, host, manager):
    """$100/night, $20 cleaning, $10 service, up to 4 guests, published."""
    prop = Property(
        owner_id=host.id,
        title="Beach House",
        city="Dubai",
        country="AE",
        price=Decimal("100.00"),
        cleaning_fee=Decimal("20.00"),
        service_fee=Decimal("10.00"),
        max_guests=4,
        is_published=True,
        currency="USD",
    )
    prop.managers.append(PropertyManager(manager_id=manager.id))
    db.add(prop)
    await db.commit()
    return prop


async def make_booking(
    db,
    prop,
    guest,
    check_in,
    check_out,
    status=BookingStatus.PENDING,
    payment_status=PaymentStatus.PENDING,
    transaction_id=None,
):
    booking = Booking(
        property=prop,
        guest=guest,
        check_in_date=check_in,
        check_out_date=check_out,
        number_of_guests=2,
        total_price=Decimal("330.00"),
        status=status.value,
    )
    booking.payments.append(Payment(
        amount=Decimal("330.00"),
        currency="USD",
        status=payment_status.value,
        transaction_id=transaction_id,
    ))
    db.add(booking)
    await db.commit()
    return booking


def current(user) -> CurrentUser:
    return CurrentUser(id=user.id, role=UserRole(user.role))


def auth_headers(user) -> dict:
    token = jwt.encode(
        {
            "sub": str(user.id),
            "role": user.role,
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        },
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def enqueued(monkeypatch):
    """Notification ids handed to the delivery queue by request handlers."""
    ids = []

    def fake_enqueue(notification_ids):
        ids.extend(notification_ids)

    monkeypatch.setattr(routes, "enqueue_delivery", fake_enqueue)
    monkeypatch.setattr(webhooks, "enqueue_delivery", fake_enqueue)
    return ids


@pytest.fixture
def app(db, fake_redis, enqueued):
    app = create_app()

    async def override_get_db():
        yield db

    async def override_get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
