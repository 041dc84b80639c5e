"""
Tests for the AbacatePay HTTP client:
- Envelope parsing for customers and billings
- Error envelopes, invalid bodies and timeouts
- Billing list retry on timeout
- Dev-mode PIX payment simulation
- Checkout URL trust rules
"""
import json

import httpx
import pytest

from core.exceptions import PaymentProviderError, PaymentProviderTimeoutError, ProviderNotConfiguredError
from services.abacatepay import AbacatePayClient, is_trusted_checkout_url, normalize_base_url, sanitize_trusted_url

BASE_URL = "https://api.abacatepay.com/v1"


def _client(handler, api_key="abc_test", **kwargs):
    return AbacatePayClient(api_key=api_key, base_url=BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


# ============================================================================
# Envelope
# ============================================================================
def test_create_customer_sends_bearer_and_parses_data():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "cust_9", "name": "Acme", "taxId": "11222333000181"}, "error": None})

    customer = _client(handler).create_customer("Acme", "11987654321", "owner@acme.com", "11222333000181")

    assert customer.id == "cust_9"
    assert customer.tax_id == "11222333000181"
    assert seen["auth"] == "Bearer abc_test"
    assert seen["path"] == "/v1/customer/create"
    assert seen["body"]["taxId"] == "11222333000181"


def test_create_billing_parses_products():
    def handler(request):
        return httpx.Response(200, json={"data": {
            "id": "bill_1",
            "url": "https://pay.abacatepay.com/bill_1",
            "status": "PENDING",
            "amount": 5000,
            "products": [{"externalId": "checkout_x", "quantity": 1, "price": 5000}],
        }})

    billing = _client(handler).create_billing({"products": []})
    assert billing.id == "bill_1"
    assert billing.product_external_ids() == ["checkout_x"]


def test_error_envelope_raises_provider_error():
    def handler(request):
        return httpx.Response(422, json={"data": None, "error": "Invalid taxId"})

    with pytest.raises(PaymentProviderError) as exc_info:
        _client(handler).create_customer("Acme", "11987654321", "owner@acme.com", "123")
    assert "Invalid taxId" in str(exc_info.value)
    assert exc_info.value.status_code == 422


def test_missing_data_is_invalid_response():
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(PaymentProviderError):
        _client(handler).create_billing({})


def test_timeout_raises_timeout_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(PaymentProviderTimeoutError):
        _client(handler).create_billing({})


def test_missing_api_key():
    client = _client(lambda request: httpx.Response(200, json={"data": {}}), api_key="  ")
    assert client.configured is False
    with pytest.raises(ProviderNotConfiguredError):
        client.create_billing({})


# ============================================================================
# Billing list
# ============================================================================
def test_list_billings_retries_once_after_timeout():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"data": [{"id": "bill_1", "status": "PAID"}]})

    billings = _client(handler, list_retries=1).list_billings()
    assert [b.id for b in billings] == ["bill_1"]
    assert len(calls) == 2


def test_list_billings_gives_up_after_retries():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(PaymentProviderTimeoutError):
        _client(handler, list_retries=0).list_billings()


def test_simulate_pix_payment_sends_id_as_query():
    seen = {}

    def handler(request):
        seen["id"] = request.url.params["id"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "pix_1", "status": "PAID", "brCode": "000201"}})

    pix = _client(handler).simulate_pix_payment(" pix_1 ")
    assert pix.status == "PAID"
    assert pix.br_code == "000201"
    assert seen == {"id": "pix_1", "body": {"metadata": {}}}


def test_simulate_pix_payment_needs_an_id():
    with pytest.raises(PaymentProviderError):
        _client(lambda request: httpx.Response(200, json={"data": {}})).simulate_pix_payment("  ")


# ============================================================================
# URL trust
# ============================================================================
def test_trusted_checkout_urls():
    assert is_trusted_checkout_url("https://abacatepay.com/pay/1")
    assert is_trusted_checkout_url("https://pay.abacatepay.com/pay/1")
    assert not is_trusted_checkout_url("http://pay.abacatepay.com/pay/1")
    assert not is_trusted_checkout_url("https://abacatepay.com.evil.io/pay")
    assert not is_trusted_checkout_url("https://evilabacatepay.com/pay")
    assert not is_trusted_checkout_url(None)


def test_sanitize_trusted_url():
    assert sanitize_trusted_url("  https://pay.abacatepay.com/x ") == "https://pay.abacatepay.com/x"
    assert sanitize_trusted_url("https://example.com/x") is None
    assert sanitize_trusted_url("https://example.com/x", ["example.com"]) == "https://example.com/x"


def test_normalize_base_url():
    assert normalize_base_url("https://api.abacatepay.com/v1/") == BASE_URL
    with pytest.raises(ProviderNotConfiguredError):
        normalize_base_url("not a url")
    with pytest.raises(ProviderNotConfiguredError):
        normalize_base_url("http://api.abacatepay.com/v1", require_https=True)
