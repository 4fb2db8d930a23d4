"""
Pytest fixtures for the car directory backend.

Provides a file-backed SQLite database per test, a controllable clock,
a scripted payment gateway and a test client wired to all three.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SMTP_SERVER"] = ""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from database import Base, get_db
from auth import models as auth_models  # noqa: F401
from payment import models as payment_models  # noqa: F401
from subscription import models as subscription_models  # noqa: F401
from listings import models as listing_models  # noqa: F401
from auth.models import User
from auth.services import AuthService
from clock import Clock, get_clock
from errors import ProviderError
from main import app
from notifications.services import LoggingDispatcher
from payment.gateway import AccessToken, CheckoutSession, ProviderGateway, ProviderStatus
from scheduler.tasks import ExpiryScheduler

NOW = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock(Clock):
    def __init__(self, now: datetime = NOW):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingDispatcher(LoggingDispatcher):
    """Renders and logs like production, and keeps what was sent for assertions."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def send(self, contact: str, kind: str, data: Dict[str, Any]) -> None:
        super().send(contact, kind, data)
        self.sent.append((contact, kind, data))


class FakeGateway(ProviderGateway):
    """Scripted provider: statuses are keyed by tracking id."""

    def __init__(self):
        self.statuses: Dict[str, str] = {}
        self.orders: List[str] = []
        self.references: Dict[str, str] = {}
        self.status_queries: List[str] = []
        self.registered: List[str] = []
        self.fail_orders = False
        self.fail_status = False

    def request_access_token(self) -> AccessToken:
        return AccessToken(token="fake-token", expires_at=NOW + timedelta(minutes=5))

    def create_order(self, reference, amount, currency, metadata) -> CheckoutSession:
        if self.fail_orders:
            raise ProviderError("Provider request failed: timeout", reference=reference)
        self.orders.append(reference)
        self.references[f"TRK-{reference}"] = reference
        return CheckoutSession(checkout_url=f"https://pay.cardirectory.co.ke/checkout/{reference}", tracking_id=f"TRK-{reference}")

    def get_status(self, tracking_id_or_reference) -> ProviderStatus:
        self.status_queries.append(tracking_id_or_reference)
        if self.fail_status:
            raise ProviderError("Provider request failed: timeout")
        return ProviderStatus(
            description=self.statuses.get(tracking_id_or_reference, "PENDING"),
            merchant_reference=self.references.get(tracking_id_or_reference),
            tracking_id=tracking_id_or_reference,
        )

    def register_ipn(self, url: str) -> str:
        self.registered.append(url)
        return "ipn-0001"


@pytest.fixture(scope='function')
def engine(tmp_path):
    """Fresh SQLite file per test; two sessions on it really are independent."""
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope='function')
def locking_session_factory(tmp_path):
    """
    SQLite opened with BEGIN IMMEDIATE, so writers on several threads queue on
    the database lock instead of failing with 'database is locked'.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture(scope='function')
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope='function')
def db_session(session_factory):
    db = session_factory()
    yield db
    db.rollback()
    db.close()


@pytest.fixture(scope='function')
def clock():
    return FakeClock()


@pytest.fixture(scope='function')
def gateway():
    return FakeGateway()


@pytest.fixture(scope='function')
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture(scope='function')
def make_user(db_session, clock):
    """Factory for users; commits so other sessions see them."""
    def _make(email: str = "dealer@cardirectory.co.ke", role: str = "user", full_name: Optional[str] = "Amina Otieno", **kwargs) -> User:
        user = User(email=email, role=role, full_name=full_name, phone="0712345678", created_at=clock.now(), updated_at=clock.now(), **kwargs)
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture(scope='function')
def user(make_user):
    return make_user()


@pytest.fixture(scope='function')
def admin_user(make_user):
    return make_user(email="admin@cardirectory.co.ke", role="admin", full_name="Site Admin")


@pytest.fixture(scope='function')
def user_headers(user):
    return auth_headers(user)


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture(scope='function')
def scheduler(dispatcher, session_factory, clock, gateway):
    return ExpiryScheduler(dispatcher=dispatcher, session_factory=session_factory, clock=clock, gateway=gateway)


@pytest.fixture(scope='function')
def client(session_factory, clock, gateway, dispatcher, scheduler):
    """Test client whose requests use the test database, clock, gateway and dispatcher."""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    previous = (app.state.gateway, app.state.dispatcher, app.state.expiry_scheduler)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    app.state.expiry_scheduler = scheduler

    yield TestClient(app)

    app.dependency_overrides.clear()
    app.state.gateway, app.state.dispatcher, app.state.expiry_scheduler = previous


def auth_headers(user: User) -> Dict[str, str]:
    token = AuthService.create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}
