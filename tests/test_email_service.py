"""
Tests for billing emails:
- Money formatting for BRL and other currencies
- Mock fallback when SendGrid is not configured
- SendGrid delivery and failure handling
"""
from types import SimpleNamespace

import services.email_service as email_module
from conftest import NOW
from services.email_service import EmailService, format_money


class FakeSendGrid:
    sent = []
    fail = False

    def __init__(self, api_key):
        self.api_key = api_key

    def send(self, message):
        if FakeSendGrid.fail:
            raise RuntimeError("sendgrid down")
        FakeSendGrid.sent.append(message)
        return SimpleNamespace(status_code=202)


def test_format_money():
    assert format_money(123456) == "R$ 1.234,56"
    assert format_money(5000, "usd") == "USD 50.00"


def test_unconfigured_service_only_logs():
    service = EmailService(api_key="", sender_email="")
    assert service.enabled is False
    assert service.send_payment_approved_email(
        to_email="owner@acme.com", recipient_name="Ana", organization_name="Acme",
        plan_name="Starter", amount_cents=5000, currency="BRL", paid_at=NOW,
    ) is True


def test_sendgrid_delivery(monkeypatch):
    FakeSendGrid.sent = []
    FakeSendGrid.fail = False
    monkeypatch.setattr(email_module, "SendGridAPIClient", FakeSendGrid)
    service = EmailService(api_key="SG.test", sender_email="billing@example.com")

    assert service.send_payment_failed_dunning_email(
        to_email="owner@acme.com", recipient_name=None, organization_name="Acme",
        plan_name="Pro", dunning_day=3, grace_ends_at=NOW,
        billing_url="https://pay.abacatepay.com/bill_1",
    ) is True
    assert len(FakeSendGrid.sent) == 1


def test_sendgrid_failure_returns_false(monkeypatch):
    FakeSendGrid.fail = True
    monkeypatch.setattr(email_module, "SendGridAPIClient", FakeSendGrid)
    service = EmailService(api_key="SG.test", sender_email="billing@example.com")

    assert service.send_payment_approved_email(
        to_email="owner@acme.com", recipient_name="Ana", organization_name="Acme",
        plan_name="Starter", amount_cents=5000, currency="BRL", paid_at=NOW,
    ) is False
    FakeSendGrid.fail = False
