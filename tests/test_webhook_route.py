"""
Tests for the AbacatePay webhook endpoint:
- Shared secret (header or query) and HMAC signature checks
- Origin allowlist, rate limit and body size cap
- Malformed JSON and invalid payloads answer 400
- Valid events are processed once; replays are acknowledged as duplicates
"""
import json

import pytest
from fastapi.testclient import TestClient

import routes.webhooks as webhooks
from conftest import make_checkout, make_organization, make_subscription, paid_event
from core.config import settings
from core.database import get_session
from core.rate_limit import FixedWindowRateLimiter
from core.security import compute_webhook_signature
from main import app
from models.models import BillingCheckoutSession, OwnerSubscription
from services.webhook_processor import WebhookProcessor

SECRET = "whsec_test"
SIGNING_KEY = "sign_test"
URL = "/webhooks/abacatepay"


@pytest.fixture
def client(session, notifier):
    def _session_override():
        yield session

    app.dependency_overrides[get_session] = _session_override
    app.dependency_overrides[webhooks.get_webhook_processor] = lambda: WebhookProcessor(session, notifier=notifier)
    webhooks.webhook_rate_limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()
    webhooks.webhook_rate_limiter.reset()


def _post(client, payload, secret=SECRET, signature=None, headers=None, query=""):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    request_headers = {"content-type": "application/json"}
    if secret:
        request_headers["x-webhook-secret"] = secret
    request_headers["x-webhook-signature"] = (
        signature if signature is not None else compute_webhook_signature(body, SIGNING_KEY)
    )
    request_headers.update(headers or {})
    return client.post(URL + query, content=body, headers=request_headers)


@pytest.fixture
def pending_checkout(session):
    org, owner = make_organization(session)
    subscription = make_subscription(session, org, owner)
    return make_checkout(session, subscription)


# ============================================================================
# Authentication
# ============================================================================
def test_missing_secret_is_rejected(client):
    response = _post(client, paid_event(), secret=None)
    assert response.status_code == 401
    assert response.json()["ok"] is False


def test_wrong_secret_is_rejected(client):
    assert _post(client, paid_event(), secret="nope").status_code == 401


def test_secret_accepted_from_query_string(client, pending_checkout):
    response = _post(client, paid_event(), secret=None, query=f"?webhookSecret={SECRET}")
    assert response.status_code == 200


def test_missing_signature_is_rejected(client):
    assert _post(client, paid_event(), signature="").status_code == 401


def test_bad_signature_is_rejected(client):
    response = _post(client, paid_event(), signature="c2lnbmF0dXJl")
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid webhook signature."


def test_disallowed_origin(client, monkeypatch):
    monkeypatch.setattr(settings, "ABACATEPAY_WEBHOOK_ALLOWED_IPS", "203.0.113.5")
    assert _post(client, paid_event(), headers={"x-real-ip": "198.51.100.1"}).status_code == 403
    assert _post(client, paid_event(), headers={"x-real-ip": "203.0.113.5"}).status_code == 200


def test_rate_limit_returns_retry_after(client, monkeypatch):
    monkeypatch.setattr(webhooks, "webhook_rate_limiter", FixedWindowRateLimiter(1, 60))
    assert _post(client, paid_event("evt_a")).status_code == 200
    response = _post(client, paid_event("evt_b"))
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1


# ============================================================================
# Body handling
# ============================================================================
def test_oversized_body(client):
    body = json.dumps({"id": "evt_big", "event": "billing.paid", "pad": "x" * (300 * 1024)}).encode("utf-8")
    assert _post(client, body).status_code == 413


def test_invalid_json(client):
    assert _post(client, b"{not json").status_code == 400


def test_invalid_payload(client):
    response = _post(client, {"event": "billing.paid"})
    assert response.status_code == 400


# ============================================================================
# Processing
# ============================================================================
def test_paid_event_is_processed_once(client, session, pending_checkout, notifier):
    response = _post(client, paid_event())
    assert response.status_code == 200
    assert response.json() == {"ok": True, "duplicate": False, "processed": True}

    session.expire_all()
    checkout = session.get(BillingCheckoutSession, pending_checkout.id)
    assert checkout.status == "paid"
    assert session.get(OwnerSubscription, checkout.subscription_id).plan_code == "STARTER_50"
    assert len(notifier.approved) == 1

    replay = _post(client, paid_event())
    assert replay.status_code == 200
    assert replay.json() == {"ok": True, "duplicate": True, "processed": False}
    assert len(notifier.approved) == 1


def test_unknown_checkout_is_acknowledged(client):
    response = _post(client, paid_event(billing_id="bill_unknown"))
    assert response.status_code == 200
    assert response.json()["processed"] is False


def test_processing_failure_returns_500(client, pending_checkout):
    response = _post(client, paid_event(amount=1))
    assert response.status_code == 500
    assert response.json()["ok"] is False
