import os

# Settings are read at import time, so the environment has to be ready first
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_booking.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from unittest.mock import AsyncMock

from booking_service.main import app
from booking_service.database import Base, get_db
from booking_service.config import settings
from booking_service.errors import PaymentAuthorizationFailed, PaymentOperationFailed
from booking_service.payments import HoldAuthorization, HoldOutcome, get_payment_authorizer, _to_cents
from booking_service.routers import booking_router
from booking_service import models

# --- Test Database Setup ---
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_booking.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)


# pysqlite needs to be told to leave transaction handling to SQLAlchemy,
# otherwise SAVEPOINTs don't work.
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, join_transaction_mode="create_savepoint"
)

NOW = datetime.datetime(2030, 3, 1, 12, 0, 0)
HOST_ID = 10
RENTER_ID = 1


# --- Database Management Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def setup_db():
    """Creates and drops the test database tables."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """
    A session inside an outer transaction that is rolled back after the
    test. Commits and rollbacks made by the code under test only touch
    savepoints.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    yield session
    session.close()
    transaction.rollback()
    connection.close()


# --- Fake payment provider ---
class FakeAuthorizer:
    """
    Stands in for StripePaymentAuthorizer. Keeps a status per intent the way
    Stripe would and records every call that reaches it. A repeated
    idempotency key on authorize returns the first intent, as Stripe does.
    """

    def __init__(self):
        self.calls = []
        self.intents = {}
        self.fail_authorize = False
        self.fail_operations = False
        self.keys = []
        self._authorized_keys = {}
        self._seq = 0

    def authorize_hold(self, *, amount, payment_method_id, customer_id=None, metadata=None, idempotency_key=None):
        self.calls.append(("authorize", amount))
        self.keys.append(("authorize", idempotency_key))
        if self.fail_authorize:
            raise PaymentAuthorizationFailed("Your card was declined.")
        if idempotency_key in self._authorized_keys:
            intent_id = self._authorized_keys[idempotency_key]
        else:
            self._seq += 1
            intent_id = f"pi_test_{self._seq}"
            self.intents[intent_id] = "requires_capture"
            if idempotency_key:
                self._authorized_keys[idempotency_key] = intent_id
        return HoldAuthorization(payment_intent_id=intent_id, amount_cents=_to_cents(amount), status="requires_capture")

    def capture(self, payment_intent_id, *, idempotency_key=None):
        self.calls.append(("capture", payment_intent_id))
        self.keys.append(("capture", idempotency_key))
        if self.fail_operations:
            raise PaymentOperationFailed()
        current = self.intents.get(payment_intent_id, "requires_capture")
        if current == "succeeded":
            return HoldOutcome.ALREADY_CAPTURED
        if current == "canceled":
            return HoldOutcome.ALREADY_RELEASED
        self.intents[payment_intent_id] = "succeeded"
        return HoldOutcome.CAPTURED

    def release(self, payment_intent_id, *, idempotency_key=None):
        self.calls.append(("release", payment_intent_id))
        self.keys.append(("release", idempotency_key))
        if self.fail_operations:
            raise PaymentOperationFailed()
        current = self.intents.get(payment_intent_id, "requires_capture")
        if current == "succeeded":
            return HoldOutcome.ALREADY_CAPTURED
        if current == "canceled":
            return HoldOutcome.ALREADY_RELEASED
        self.intents[payment_intent_id] = "canceled"
        return HoldOutcome.RELEASED

    def calls_of(self, kind):
        return [call for call in self.calls if call[0] == kind]


@pytest.fixture
def authorizer():
    return FakeAuthorizer()


# --- Row factories ---
@pytest.fixture
def make_listing(db_session):
    def _make_listing(host_id=HOST_ID, daily_rate="100.00", deposit_amount="0", instant_book=False, required=()):
        listing = models.Listing(
            host_id=host_id,
            title="Fully equipped taco truck",
            category=models.ListingCategory.FOOD_TRUCK,
            daily_rate=Decimal(daily_rate),
            deposit_amount=Decimal(deposit_amount),
            instant_book=instant_book,
        )
        db_session.add(listing)
        db_session.flush()
        for document_type, deadline in required:
            db_session.add(models.RequiredDocument(
                listing_id=listing.id, document_type=document_type, deadline_type=deadline
            ))
        db_session.commit()
        return listing
    return _make_listing


@pytest.fixture
def make_booking(db_session):
    """Inserts a pending booking with a live hold, bypassing the workflow."""
    counter = {"n": 0}

    def _make_booking(listing, renter_id=RENTER_ID, total_price="500.00", hold_expires_at=None, **overrides):
        counter["n"] += 1
        fields = dict(
            listing_id=listing.id,
            renter_id=renter_id,
            host_id=listing.host_id,
            start_date=datetime.date(2030, 3, 10),
            end_date=datetime.date(2030, 3, 15),
            subtotal=Decimal(total_price),
            service_fee=Decimal("0"),
            deposit_amount=Decimal("0"),
            total_price=Decimal(total_price),
            status=models.BookingStatus.PENDING,
            hold_status=models.HoldStatus.HELD,
            payment_status=models.PaymentStatus.UNPAID,
            payment_intent_id=f"pi_seed_{counter['n']}",
            hold_expires_at=hold_expires_at or NOW + datetime.timedelta(days=7),
            created_at=NOW,
        )
        fields.update(overrides)
        booking = models.BookingRequest(**fields)
        db_session.add(booking)
        db_session.commit()
        return booking
    return _make_booking


@pytest.fixture
def add_document(db_session):
    def _add_document(booking, document_type, status=models.DocumentStatus.APPROVED, reviewed_at=NOW):
        document = models.BookingDocument(
            booking_id=booking.id,
            document_type=document_type,
            file_url=f"https://files.example.com/{booking.id}/{document_type}.pdf",
            file_name=f"{document_type}.pdf",
            status=status,
            reviewed_at=reviewed_at if status != models.DocumentStatus.PENDING else None,
            reviewed_by=booking.host_id if status != models.DocumentStatus.PENDING else None,
        )
        db_session.add(document)
        db_session.commit()
        return document
    return _add_document


# --- Auth helpers ---
def create_test_token(user_id: int = RENTER_ID) -> str:
    payload = {"sub": str(user_id)}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


@pytest.fixture
def renter_headers():
    return {"Authorization": create_test_token(RENTER_ID)}


@pytest.fixture
def host_headers():
    return {"Authorization": create_test_token(HOST_ID)}


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Keeps the lifespan from starting the poller and sweeper loops or
    talking to Redis.
    """
    mocker.patch("booking_service.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("booking_service.main.run_expiry_sweeper", new_callable=AsyncMock)
    mocker.patch("booking_service.main.FastAPILimiter.init", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session, authorizer):
    def override_get_db():
        try:
            yield db_session
        finally:
            db_session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_authorizer] = lambda: authorizer
    app.dependency_overrides[booking_router.write_limiter] = lambda: None
    app.dependency_overrides[booking_router.read_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
