"""
Shared fixtures.

Settings are read at import time, so the environment is prepared before
anything from booking_orchestrator is imported.
"""

import os
import sys
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["INTERNAL_API_KEY"] = "test-internal-api-key"
os.environ["LOG_JSON"] = "false"
for _name in (
    "PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET", "PAYPAL_WEBHOOK_ID",
    "DOCUSEAL_API_KEY", "DOCUSEAL_TEMPLATE_ID", "DOCUSEAL_WEBHOOK_SECRET",
    "RESEND_API_KEY",
):
    os.environ[_name] = ""


@pytest.fixture
def engine():
    from booking_orchestrator.database import Base
    import booking_orchestrator.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_availability_cache():
    from booking_orchestrator.services.availability_cache import availability_cache
    availability_cache.clear()
    yield
    availability_cache.clear()


@pytest.fixture
def make_booking(db):
    """Insert a booking directly in the given status (bypasses creation rules)"""
    from booking_orchestrator.models.booking import Booking

    counter = {"n": 0}

    def _make(status="pending_payment", car_id="car-1", start=None, end=None, **fields):
        counter["n"] += 1
        start = start or date.today() + timedelta(days=10 + counter["n"] * 10)
        end = end or start + timedelta(days=3)
        booking = Booking(
            car_id=car_id,
            customer_email=fields.pop("customer_email", "renter@example.com"),
            customer_name=fields.pop("customer_name", "Test Renter"),
            start_date=start,
            end_date=end,
            overall_status=status,
            total_price=fields.pop("total_price", Decimal("400.00")),
            currency=fields.pop("currency", "USD"),
            **fields,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def admin_token():
    from booking_orchestrator.utils.security import create_access_token
    return create_access_token({"sub": "admin-1", "role": "admin"})


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def client(session_factory, monkeypatch):
    """TestClient bound to the in-memory database, background tasks included"""
    from fastapi.testclient import TestClient
    from booking_orchestrator import database
    from booking_orchestrator.database import get_db
    from booking_orchestrator.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # Background tasks open their own sessions through database.SessionLocal
    monkeypatch.setattr(database, "SessionLocal", session_factory)

    yield TestClient(app)

    app.dependency_overrides.clear()
