"""Shared test fixtures for the booking backend."""

import os

# Settings are read at import time; configure before importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["OUTBOX_ENQUEUE_ENABLED"] = "false"
os.environ["PAYU_MERCHANT_KEY"] = "test_merchant_key"
os.environ["PAYU_SALT"] = "test_salt"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["WHATSAPP_ENABLED"] = "false"
os.environ["REDIS_HOST"] = "127.0.0.1"
os.environ["REDIS_PORT"] = "1"

from datetime import date, timedelta
from types import SimpleNamespace
from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from therapy_booking.auth import AuthContext, get_auth_context
from therapy_booking.database import Base, SessionLocal, engine
from therapy_booking.main import app
from therapy_booking.models import (
    Availability,
    Client,
    Package,
    Psychologist,
    User,
)
from therapy_booking.shared.scheduling import today_local


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Fresh schema per test on the shared in-memory database."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(db) -> Generator[TestClient, None, None]:
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def booking_day() -> date:
    """A date far enough ahead to be outside the reschedule cutoff."""
    return today_local() + timedelta(days=3)


@pytest.fixture
def seed(db, booking_day) -> SimpleNamespace:
    """One psychologist with two open slots, two clients and a package."""
    psych_user = User(firebase_uid="psych-uid", email="asha@example.com", full_name="Asha Menon", role="psychologist")
    admin_user = User(firebase_uid="admin-uid", email="admin@example.com", full_name="Admin", role="admin")
    user_a = User(firebase_uid="client-a-uid", email="ravi@example.com", full_name="Ravi Kumar", role="client")
    user_b = User(firebase_uid="client-b-uid", email="meera@example.com", full_name="Meera Nair", role="client")
    db.add_all([psych_user, admin_user, user_a, user_b])
    db.flush()

    psychologist = Psychologist(
        user_id=psych_user.id,
        first_name="Asha",
        last_name="Menon",
        email="asha@example.com",
        phone="+919800000001",
        individual_session_price=1500.0,
    )
    client_a = Client(user_id=user_a.id, first_name="Ravi", last_name="Kumar", email="ravi@example.com",
                      phone_number="+919800000002")
    client_b = Client(user_id=user_b.id, first_name="Meera", last_name="Nair", email="meera@example.com",
                      phone_number="+919800000003")
    db.add_all([psychologist, client_a, client_b])
    db.flush()

    package = Package(psychologist_id=psychologist.id, name="Three Session Pack", package_type="3_sessions", price=4000.0)
    db.add(package)
    db.add(Availability(psychologist_id=psychologist.id, date=booking_day, time_slots=["10:00", "11:00"]))
    db.commit()

    return SimpleNamespace(
        psychologist=psychologist,
        client_a=client_a,
        client_b=client_b,
        package=package,
        day=booking_day,
        ctx_a=AuthContext(user_id=user_a.id, role="client", email=user_a.email, client_id=client_a.id),
        ctx_b=AuthContext(user_id=user_b.id, role="client", email=user_b.email, client_id=client_b.id),
        ctx_psych=AuthContext(
            user_id=psych_user.id, role="psychologist", email=psych_user.email, psychologist_id=psychologist.id
        ),
        ctx_admin=AuthContext(user_id=admin_user.id, role="admin", email=admin_user.email),
    )


@pytest.fixture
def login():
    """Authenticate subsequent requests as the given context."""

    def _login(context: AuthContext) -> None:
        app.dependency_overrides[get_auth_context] = lambda: context

    yield _login
    app.dependency_overrides.pop(get_auth_context, None)


@pytest.fixture
def checkout(client, login):
    """Reserve a slot and start checkout as the given client; returns the order id."""

    def _checkout(context: AuthContext, psychologist_id: int, day: date, time_slot: str,
                  package_id: Optional[int] = None) -> str:
        login(context)
        body = {"psychologistId": psychologist_id, "date": day.isoformat(), "time": time_slot}
        if package_id:
            body["packageId"] = package_id
        reserved = client.post("/reserve-slot", json=body)
        assert reserved.status_code == 200, reserved.text
        quote_id = reserved.json()["quoteId"]
        ordered = client.post("/payment/order", json={"quoteId": quote_id})
        assert ordered.status_code == 200, ordered.text
        return quote_id

    return _checkout


