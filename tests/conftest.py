"""
Pytest configuration and fixtures

Every test runs against a fresh in-memory SQLite schema. Environment values
are set before the application is imported because config is read at import.
"""

import itertools
import os
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["CAL_CLIENT_ID"] = "test-cal-client"
os.environ["CAL_CLIENT_SECRET"] = "test-cal-secret"
os.environ["CAL_WEBHOOK_SECRET"] = "test-cal-webhook-secret"
os.environ["CALENDLY_WEBHOOK_SECRET"] = "test-calendly-webhook-secret"
os.environ["CLERK_ISSUER"] = "https://clerk.coachmarket.test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_dummy"
os.environ.pop("CLERK_SECRET_KEY", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("REDIS_HOST", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from coachmarket import rate_limiter  # noqa: E402
from coachmarket.auth import get_current_user  # noqa: E402
from coachmarket.database import Base, SessionLocal, engine, get_db  # noqa: E402
from coachmarket.main import app  # noqa: E402
from coachmarket.routes import calendly as calendly_routes  # noqa: E402
from coachmarket.models import (  # noqa: E402
    CalBooking,
    CalendarIntegration,
    Capability,
    CoachingSession,
    SessionStatus,
    SystemRole,
    User,
)
from coachmarket.services import calendly_token_refresher  # noqa: E402
from coachmarket.services.cal_token_service import reset_token_tracking  # noqa: E402
from coachmarket.token_crypto import encrypt_token  # noqa: E402

_counter = itertools.count(1)


def whole_seconds(value: datetime) -> datetime:
    return value.replace(microsecond=0)


@pytest.fixture(autouse=True)
def _fresh_state():
    Base.metadata.create_all(bind=engine)
    reset_token_tracking()
    calendly_token_refresher.circuit_breaker.reset()
    rate_limiter.memory_cache.clear()
    calendly_routes.pending_states.clear()
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    return TestClient(app)


@pytest.fixture
def auth_as():
    """Authenticate every following request as the given user"""

    def _auth(user: User) -> User:
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    return _auth


@pytest.fixture
def make_user(db):
    def _make(capabilities=(Capability.MENTEE,), system_role=SystemRole.USER, email=None) -> User:
        n = next(_counter)
        capabilities = list(capabilities)
        user = User(
            clerk_user_id=f"user_clerk_{n}",
            email=email or f"user{n}@example.com",
            first_name="Test",
            last_name=f"User{n}",
            system_role=system_role,
            capabilities=capabilities,
            is_coach=Capability.COACH in capabilities,
            is_mentee=Capability.MENTEE in capabilities,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def coach(make_user):
    return make_user(capabilities=(Capability.COACH,))


@pytest.fixture
def mentee(make_user):
    return make_user(capabilities=(Capability.MENTEE,))


@pytest.fixture
def make_integration(db):
    def _make(
        user: User,
        managed_user_id=101,
        access_token="access-token",
        refresh_token="refresh-token",
        expires_in=timedelta(hours=1),
    ) -> CalendarIntegration:
        integration = CalendarIntegration(
            user_ulid=user.ulid,
            provider="CAL",
            cal_managed_user_id=managed_user_id,
            cal_username=f"cal-{user.ulid.lower()}",
            cal_access_token=encrypt_token(access_token),
            cal_refresh_token=encrypt_token(refresh_token),
            cal_access_token_expires_at=(
                datetime.utcnow() + expires_in if expires_in is not None else None
            ),
        )
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


@pytest.fixture
def make_booking(db):
    def _make(user: User, uid=None, start=None) -> CalBooking:
        start = start or whole_seconds(datetime.utcnow() + timedelta(days=3))
        booking = CalBooking(
            user_ulid=user.ulid,
            provider="CAL",
            cal_booking_uid=uid or f"cal-booking-{next(_counter)}",
            title="Coaching Session",
            start_time=start,
            end_time=start + timedelta(hours=1),
            attendee_email="attendee@example.com",
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def make_session(db):
    def _make(
        coach: User,
        mentee: User,
        start_in=timedelta(days=3),
        status=SessionStatus.SCHEDULED,
        booking=None,
    ) -> CoachingSession:
        start = whole_seconds(datetime.utcnow() + start_in)
        session = CoachingSession(
            coach_ulid=coach.ulid,
            mentee_ulid=mentee.ulid,
            cal_booking_ulid=booking.ulid if booking else None,
            start_time=start,
            end_time=start + timedelta(hours=1),
            status=status,
            price_amount=15000,
            payment_intent_id=f"pi_{next(_counter)}",
            rescheduling_history=[],
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    return _make


@pytest.fixture
def cal_api():
    """Stand-in for CalService with async methods"""
    cal = MagicMock()
    cal.client_id = "test-cal-client"
    cal.client_secret = "test-cal-secret"
    for name in (
        "refresh_oauth_token",
        "force_refresh_managed_user",
        "create_managed_user",
        "reschedule_booking",
        "cancel_booking",
        "list_webhooks",
        "register_webhook",
        "delete_webhook",
        "ensure_webhook_exists",
    ):
        setattr(cal, name, AsyncMock())
    return cal
