"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

import fakeredis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sellerhub.main import app
from sellerhub.db import redis as redis_module
from sellerhub.db.redis import set_session
from sellerhub.db.session import get_db
from sellerhub.models import Base
from sellerhub.models.plan import Plan
from sellerhub.models.subscription import Subscription
from sellerhub.services import ledger_service
from sellerhub.services.ledger_service import TransactionType

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_SELLER_ID = "seller_123"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite database for tests that need independent connections (threads)"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function", autouse=True)
def mock_redis(monkeypatch):
    """Replace the Redis client with fakeredis for every test"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    monkeypatch.setattr(redis_module, "_client", fake_redis)
    yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis (lifespan not run)"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, mock_redis) -> TestClient:
    """Client with a seller session cookie"""
    set_session("test_session", TEST_SELLER_ID)
    client.cookies.set("session_id", "test_session")
    return client


# ============================================================================
# CATALOG & SUBSCRIPTION HELPERS
# ============================================================================

def make_plan(db: Session, plan_id: str = "growth", **overrides) -> Plan:
    """Insert a catalog plan; defaults describe a paid monthly plan"""
    fields = dict(
        id=plan_id,
        name=plan_id.replace("_", " ").title(),
        plan_type="periodic-short",
        price=499,
        currency="inr",
        credits_granted=100,
        duration_days=30,
        modules=[{"page": "dashboard", "enabled": True}],
        features=[
            {"page": "promotion", "action": "create", "credit_cost": 20, "enabled": True,
             "expires_on_credits_exhausted": False},
            {"page": "reports", "action": "export", "credit_cost": 0, "enabled": True},
        ],
        role_access=[],
        is_active=True,
        version=1,
    )
    fields.update(overrides)
    plan = Plan(**fields)
    db.add(plan)
    db.commit()
    return plan


def make_subscription(
    db: Session,
    plan: Plan,
    seller_id: str = TEST_SELLER_ID,
    credits: Optional[int] = None,
    bonus: int = 0,
    status: str = "active",
    end_date: Optional[datetime] = None,
) -> Subscription:
    """Insert a current subscription and fund it through the ledger"""
    now = datetime.now(timezone.utc)
    subscription = Subscription(
        seller_id=seller_id,
        plan_id=plan.id,
        status=status,
        start_date=now,
        end_date=end_date or now + timedelta(days=plan.duration_days),
        credits_allocated=0,
        credits_used=0,
        bonus_credits=0,
        is_current=True,
    )
    db.add(subscription)
    db.commit()

    credits = plan.credits_granted if credits is None else credits
    if credits:
        ledger_service.credit(subscription.id, credits, "Initial allocation", db)
    if bonus:
        ledger_service.credit(subscription.id, bonus, "Welcome bonus", db, transaction_type=TransactionType.BONUS)
    db.refresh(subscription)
    return subscription


@pytest.fixture(scope="function")
def paid_plan(db_session: Session) -> Plan:
    return make_plan(db_session)


@pytest.fixture(scope="function")
def free_plan(db_session: Session) -> Plan:
    return make_plan(
        db_session, "free",
        name="Free",
        plan_type="free",
        price=0,
        credits_granted=20,
        features=[
            {"page": "promotion", "action": "create", "credit_cost": 20, "enabled": True,
             "expires_on_credits_exhausted": True},
        ],
    )


@pytest.fixture(scope="function")
def subscription(db_session: Session, paid_plan: Plan) -> Subscription:
    """Active subscription on the paid plan with 100 credits"""
    return make_subscription(db_session, paid_plan)


# ============================================================================
# STRIPE WEBHOOK HELPERS
# ============================================================================

def sign_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries"""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def payment_event(
    order_id: str,
    event_type: str = "payment_intent.succeeded",
    amount: int = 49900,
    currency: str = "inr",
    **extra,
) -> str:
    """Serialized PaymentIntent webhook event"""
    payment_intent = {
        "id": order_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
        "currency": currency,
        "latest_charge": f"ch_{order_id}",
        "status": "succeeded" if event_type == "payment_intent.succeeded" else "requires_payment_method",
    }
    payment_intent.update(extra)
    return json.dumps({
        "id": f"evt_{order_id}_{event_type.rsplit('.', 1)[-1]}",
        "object": "event",
        "type": event_type,
        "data": {"object": payment_intent},
    })
