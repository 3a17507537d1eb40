"""
Shared fixtures for the billing test suite.

- sqlite repositories on files under tmp_path
- a settable clock and an in-memory payment gateway (see factories.py)
- an application client wired to both
"""

import bcrypt
import pytest
from fastapi.testclient import TestClient

from edu_billing.application.services.access_gate import AccessGate
from edu_billing.application.services.reconciliation_service import PaymentReconciler
from edu_billing.core.app_factory import create_application
from edu_billing.core.config import Settings
from edu_billing.domain.models import Role
from edu_billing.infrastructure.repositories.billing_record_repository import BillingRecordRepository
from edu_billing.infrastructure.repositories.user_repository import UserRepository
from edu_billing.services.subscription_service import SubscriptionService
from edu_billing.services.user_service import UserService

from .factories import JWT_SECRET, PASSWORD, WEBHOOK_SECRET, FakeClock, FakeGateway


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "billing.db")


@pytest.fixture
def users(db_path):
    return UserRepository(db_path)


@pytest.fixture
def billing_records(db_path):
    return BillingRecordRepository(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def reconciler(users, billing_records, gateway, clock):
    return PaymentReconciler(users, billing_records, gateway, clock=clock)


@pytest.fixture
def access_gate(users, billing_records, clock):
    return AccessGate(users, billing_records, clock=clock)


@pytest.fixture
def subscription_service(billing_records, gateway, clock):
    return SubscriptionService(
        billing_records,
        gateway,
        price_ids={"free-trial": "price_trial", "monthly": "price_monthly", "annual": "", "family": "price_family"},
        frontend_base_url="https://app.example.test/",
        clock=clock,
    )


@pytest.fixture
def make_user(users):
    password_hash = bcrypt.hashpw(PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")

    def _make(email: str = "student@example.com", role: Role = Role.STUDENT, stripe_customer_id=None):
        return users.create(
            email=email,
            password_hash=password_hash,
            role=role,
            stripe_customer_id=stripe_customer_id,
        )

    return _make


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "app.db"))
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_FREE_TRIAL", "price_trial")
    monkeypatch.setenv("STRIPE_PRICE_MONTHLY", "price_monthly")
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("VERIFY_RETRY_AFTER_SECONDS", "7")
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    return Settings()


@pytest.fixture
def client(settings, gateway, clock):
    app = create_application(settings=settings, payment_gateway=gateway, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Create a user through the app's own service and return (user, auth headers)."""
    container = client.app.state.container
    user_service: UserService = container.user_service

    def _register(email: str = "student@example.com", role: Role = Role.STUDENT):
        user = user_service.register(email, PASSWORD, role=role)
        token = user_service.create_token(user)
        return user, {"Authorization": f"Bearer {token}"}

    return _register
