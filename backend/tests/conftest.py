"""Shared pytest fixtures for test suite"""
import os
import secrets
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Keep the app's own engine off the developer database
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from billing.main import app
from billing.db.session import get_db
from billing.db import redis as redis_module
from billing.models import Base
from billing.models.plan import Plan
from billing.models.user import User
from billing.services import stripe_gateway as gateway_module
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway


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

WEBHOOK_SECRET = "whsec_test123"
PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z


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
def mock_redis():
    """Session store backed by fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "get_redis_client", return_value=fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def mock_stripe():
    """Replace the stripe module the gateway calls so no test reaches the network.

    Tests configure return values as plain dicts, the same shape Stripe sends.
    """
    with patch.object(gateway_module, "stripe") as stripe_module:
        yield stripe_module


@pytest.fixture(scope="function")
def gateway() -> StripeGateway:
    return StripeGateway(api_key="sk_test_123")


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, gateway: StripeGateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fake Redis and a configured gateway"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway

    try:
        with patch("billing.main.initialize_otel", return_value=False):
            with patch("billing.main.init_db"):
                with patch("billing.main.bootstrap_catalog"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(id="u1", email="user@example.com", name="Test User")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def customer_user(db_session: Session, test_user: User) -> User:
    """Test user that already has a Stripe customer"""
    test_user.stripe_customer_id = "cus_test123"
    db_session.commit()
    db_session.refresh(test_user)
    return test_user


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    user = User(id="admin-1", email="admin@example.com", is_admin=True)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def login(client: TestClient, user: User) -> TestClient:
    session_id = secrets.token_urlsafe(16)
    redis_module.set_session(session_id, user.id)
    client.cookies.set("session_id", session_id)
    return client


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, mock_redis, test_user: User) -> TestClient:
    return login(client, test_user)


@pytest.fixture(scope="function")
def admin_client(client: TestClient, mock_redis, admin_user: User) -> TestClient:
    return login(client, admin_user)


@pytest.fixture(scope="function")
def starter_plan(db_session: Session) -> Plan:
    """Unsynced starter plan"""
    plan = Plan(
        name="Starter",
        slug="starter",
        description="Perfect for individuals and small projects",
        price_monthly=1900,
        price_yearly=18200,
        features=["Up to 1,000 users"],
        sort_order=1,
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def synced_plans(db_session: Session):
    """Starter and professional plans with Stripe prices already attached"""
    starter = Plan(
        name="Starter", slug="starter", price_monthly=1900, price_yearly=18200, sort_order=1,
        features=[], stripe_price_id_monthly="price_starter_m", stripe_price_id_yearly="price_starter_y",
    )
    professional = Plan(
        name="Professional", slug="professional", price_monthly=4900, price_yearly=47000, sort_order=2,
        features=[], stripe_price_id_monthly="price_pro_m", stripe_price_id_yearly="price_pro_y",
    )
    db_session.add_all([starter, professional])
    db_session.commit()
    db_session.refresh(starter)
    db_session.refresh(professional)
    return starter, professional


@pytest.fixture
def stripe_subscription():
    """Factory for Stripe subscription payloads"""
    def build(
        subscription_id="sub_test123",
        status="active",
        price_id="price_starter_m",
        interval="month",
        customer="cus_test123",
        cancel_at_period_end=False,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        created=PERIOD_START,
        metadata=None,
        item_id="si_test123",
    ):
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "created": created,
            "cancel_at_period_end": cancel_at_period_end,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "metadata": metadata or {},
            "items": {
                "object": "list",
                "data": [{
                    "id": item_id,
                    "price": {"id": price_id, "recurring": {"interval": interval}},
                }],
            },
        }
    return build


@pytest.fixture
def stripe_invoice():
    """Factory for Stripe invoice payloads"""
    def build(
        invoice_id="in_test123",
        status="open",
        amount_paid=0,
        customer="cus_test123",
        subscription="sub_test123",
    ):
        return {
            "id": invoice_id,
            "object": "invoice",
            "customer": customer,
            "subscription": subscription,
            "status": status,
            "amount_paid": amount_paid,
            "currency": "usd",
            "invoice_pdf": f"https://pay.stripe.com/invoice/{invoice_id}/pdf",
            "period_start": PERIOD_START,
            "period_end": PERIOD_END,
        }
    return build


@pytest.fixture
def webhook_event():
    """Factory for Stripe event envelopes"""
    def build(event_type, obj, event_id="evt_test123"):
        return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    return build


@pytest.fixture
def deliver(mock_stripe, gateway, db_session):
    """Run an event through signature verification and dispatch"""
    from billing.services.webhook_reconciler import WebhookReconciler

    def run(event):
        mock_stripe.Webhook.construct_event.return_value = event
        reconciler = WebhookReconciler(gateway, WEBHOOK_SECRET)
        return reconciler.handle(b'{"id": "%s"}' % event["id"].encode(), "t=1,v1=test_signature", db_session)
    return run


@pytest.fixture
def active_subscription(db_session: Session, customer_user: User, synced_plans):
    """Local subscription row on the starter monthly price, as a webhook would leave it"""
    from billing.models.subscription import Subscription

    starter, _ = synced_plans
    sub = Subscription(
        user_id=customer_user.id,
        stripe_subscription_id="sub_test123",
        stripe_customer_id="cus_test123",
        plan=starter.slug,
        plan_id=starter.id,
        billing_interval="monthly",
        status="active",
        cancel_at_period_end=False,
        state_source="webhook",
    )
    db_session.add(sub)
    db_session.commit()
    db_session.refresh(sub)
    return sub


def as_utc(value):
    """SQLite hands back naive datetimes; compare everything in UTC"""
    from datetime import timezone

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
