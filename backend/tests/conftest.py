"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Emails are logged, never sent, during tests.
os.environ.pop("POSTMARK_SERVER_TOKEN", None)

import pytest
from unittest.mock import patch

from fastapi.testclient import TestClient

from database import database
from models import PaymentProviderName
from services.entitlement_service import EntitlementService, get_entitlement_service
from services.plan_catalog import BillingConfig, default_catalog
from services.subscription_service import SubscriptionService, get_billing_service
from services.webhook_service import WebhookService, get_webhook_service
from utils.rate_limiter import rate_limiter
from server import app

from fakes import FakeDb, FakeProvider


@pytest.fixture
def fake_db():
    """In-memory database patched in for every database.get_db() caller."""
    db = FakeDb()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def billing_config():
    return BillingConfig(
        catalog=default_catalog(),
        currency="USD",
        redirect_url="https://app.stitchmate.test/subscription/verify",
        flutterwave_secret_key="FLWSECK_TEST-secret",
        flutterwave_webhook_secret="flw-hash",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test",
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def billing(billing_config, provider):
    return SubscriptionService(billing_config, {PaymentProviderName.FLUTTERWAVE: provider})


@pytest.fixture
def webhooks(billing):
    return WebhookService(billing)


@pytest.fixture
def entitlements(billing_config):
    return EntitlementService(billing_config)


@pytest.fixture
def client(fake_db, billing, webhooks, entitlements):
    """TestClient for server:app wired to the in-memory database and fake provider."""
    app.dependency_overrides[get_billing_service] = lambda: billing
    app.dependency_overrides[get_webhook_service] = lambda: webhooks
    app.dependency_overrides[get_entitlement_service] = lambda: entitlements
    rate_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()
    rate_limiter.reset()
