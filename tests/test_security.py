"""
Tests for request security helpers:
- Client IP resolution behind proxies
- Origin allowlist
- Webhook HMAC signatures
- Fixed-window rate limiter
- Access tokens
"""
from core.rate_limit import FixedWindowRateLimiter
from core.security import (
    compute_webhook_signature,
    create_access_token,
    decode_token,
    is_ip_allowed,
    normalize_ip,
    resolve_client_ip,
    verify_webhook_signature,
)


def test_normalize_ip():
    assert normalize_ip("203.0.113.5:443") == "203.0.113.5"
    assert normalize_ip(" 2001:db8::1 ") == "2001:db8::1"
    assert normalize_ip("testclient") is None
    assert normalize_ip(None) is None


def test_resolve_client_ip_prefers_proxy_headers():
    headers = {"x-real-ip": "198.51.100.7", "x-forwarded-for": "203.0.113.5"}
    assert resolve_client_ip(headers, "10.0.0.1") == "198.51.100.7"
    assert resolve_client_ip({"x-forwarded-for": "garbage, 203.0.113.5"}, "10.0.0.1") == "203.0.113.5"
    assert resolve_client_ip({}, "10.0.0.1") == "10.0.0.1"


def test_ip_allowlist():
    assert is_ip_allowed(None, [])
    assert is_ip_allowed("203.0.113.5", ["203.0.113.5", "bogus"])
    assert not is_ip_allowed("198.51.100.7", ["203.0.113.5"])
    assert not is_ip_allowed(None, ["203.0.113.5"])


def test_webhook_signature():
    body = b'{"id":"evt_1"}'
    signature = compute_webhook_signature(body, "sign_test")
    assert verify_webhook_signature(body, signature, "sign_test")
    assert not verify_webhook_signature(body + b" ", signature, "sign_test")
    assert not verify_webhook_signature(body, signature, "other_key")
    assert not verify_webhook_signature(body, "", "sign_test")


def test_rate_limiter_window():
    clock = [100.0]
    limiter = FixedWindowRateLimiter(2, 60, clock=lambda: clock[0])

    assert not limiter.hit("ip").limited
    assert not limiter.hit("ip").limited
    blocked = limiter.hit("ip")
    assert blocked.limited
    assert blocked.retry_after_seconds == 60
    assert not limiter.hit("other").limited

    clock[0] += 59.5
    assert limiter.hit("ip").retry_after_seconds == 1

    clock[0] += 1
    assert not limiter.hit("ip").limited


def test_access_token_round_trip():
    token = create_access_token({"user_id": 7, "organization_id": 3})
    payload = decode_token(token)
    assert payload["user_id"] == 7
    assert payload["organization_id"] == 3
