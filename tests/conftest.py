# Imports for testing tools
import datetime
import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import AsyncMock

# Keep the app's own engine off the local database file
os.environ.setdefault("DATABASE_URL", "sqlite://")

from rental_engine.main import app
from rental_engine.database import Base, get_db
from rental_engine.routers import booking_router, payment_router
from rental_engine import models

# --- Test Database Setup ---
# One in-memory database shared by every connection, so commits and rollbacks
# made by the code under test behave as they would against a real server.
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# --- Database Management Fixtures ---
@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Creates fresh engine tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    session = TestingSessionLocal()
    yield session
    session.close()


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_rate_limiter_backend(mocker):
    """
    The lifespan connects the rate limiter to Redis; no Redis in tests.
    """
    mocker.patch("rental_engine.main.FastAPILimiter.init", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session):
    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_db] = override_get_db
    for limiter in (booking_router.write_limiter, booking_router.read_limiter, payment_router.payment_limiter):
        app.dependency_overrides[limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# --- Data helpers ---
class DictRateCatalog:
    """In-memory rate catalog keyed by (room_id, price_type)."""

    def __init__(self, rates=None):
        self.rates = dict(rates or {})

    def get_rate(self, room_id, granularity):
        return self.rates.get((room_id, models.PriceType(granularity)))


@pytest.fixture
def seed_rate(db_session):
    def _seed(room_id, price_type, fixed_price, discount_price=None):
        room_price = models.RoomPrice(
            room_id=room_id,
            price_type=models.PriceType(price_type),
            fixed_price=fixed_price,
            discount_price=discount_price,
        )
        db_session.add(room_price)
        db_session.commit()
        return room_price
    return _seed


@pytest.fixture
def make_booking(db_session):
    """Inserts a booking row directly, bypassing pricing and the first payment."""
    def _make(
            rent_amount=900.0,
            booking_fee=90.0,
            from_date=datetime.date(2025, 1, 1),
            to_date=datetime.date(2025, 4, 1),
            price_type=models.PriceType.MONTH,
            room_ids=(1,),
            user_id=1,
            status=models.BookingStatus.PENDING,
    ):
        booking = models.Booking(
            user_id=user_id,
            package_id=10,
            room_ids=list(room_ids),
            from_date=from_date,
            to_date=to_date,
            number_of_days=(to_date - from_date).days,
            price_type=price_type,
            payment_option=models.PaymentOption.BOOKING_ONLY,
            status=status,
            payment_status=models.BookingPaymentStatus.PENDING,
        )
        booking.set_amounts(rent_amount, booking_fee)
        db_session.add(booking)
        db_session.commit()
        db_session.refresh(booking)
        return booking
    return _make
