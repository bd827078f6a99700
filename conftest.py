"""Shared fixtures and helpers for the billing engine test suite."""

import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import timedelta

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "config.test-missing.yaml")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["INTERNAL_JOB_TOKEN"] = "internal-test-token"
os.environ["STRIPE_PRICE_STARTER_MONTHLY"] = "price_starter_monthly"
os.environ["STRIPE_PRICE_PROFESSIONAL_MONTHLY"] = "price_professional_monthly"
os.environ.pop("GRACE_PERIOD_DAYS", None)

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from services import subscriptions  # noqa: E402
from services.users import create_user  # noqa: E402
from utils import utc_now  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_TOKEN = "internal-test-token"
ORG = "org_acme"
OTHER_ORG = "org_globex"


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header for *payload*."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id=None) -> str:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    })


def checkout_session(org=ORG, sub_ref="sub_123", tier="starter", seats=5, **extra_meta):
    metadata = {"organizationId": org, "tier": tier, "seats": str(seats)}
    metadata.update(extra_meta)
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_123",
        "subscription": sub_ref,
        "metadata": metadata,
    }


def subscription_object(sub_ref="sub_123", status="active", price="price_starter_monthly", **extra):
    now = int(time.time())
    obj = {
        "id": sub_ref,
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "items": {"data": [{
            "quantity": 5,
            "price": {"id": price, "recurring": {"interval": "month"}},
        }]},
        "metadata": {},
    }
    obj.update(extra)
    return obj


def invoice_object(sub_ref="sub_123", amount=5000, invoice_id="in_1"):
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": "cus_123",
        "subscription": sub_ref,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "gbp",
        "attempt_count": 1,
    }


def post_webhook(client, payload: str, signature=None):
    return client.post(
        "/webhooks/stripe",
        data=payload,
        content_type="application/json",
        headers={"Stripe-Signature": sign(payload) if signature is None else signature},
    )


def make_paid_subscription(org=ORG, sub_ref="sub_123", tier="starter", seats=5, now=None):
    """Create a paid subscription directly through the state machine and commit."""
    now = now or utc_now()
    sub = subscriptions.create_subscription(
        organization_id=org,
        external_customer_ref=f"cus_{org}",
        external_subscription_ref=sub_ref,
        tier=tier,
        seats_total=seats,
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
        now=now,
    )
    db.session.commit()
    return sub


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ctx(app):
    """Application context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def member_id(app):
    """An active user in ORG.  Returns the id to avoid detached instances."""
    with app.app_context():
        user = create_user(ORG, "owner@acme.test", name="Owner")
        return user.id


@pytest.fixture
def logged_in_client(client, member_id):
    """Test client with a session for the ORG member."""
    with client.session_transaction() as sess:
        sess["user_id"] = member_id
    return client
