"""
Pytest configuration and shared fixtures for the billing backend tests.
Every test gets a fresh in-memory SQLite database; the payment provider and the
email sender are replaced by in-process fakes.
"""
import os

# Settings are read at import time, so the environment must be ready first.
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ABACATEPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("ABACATEPAY_WEBHOOK_SIGNATURE_KEY", "sign_test")
os.environ.setdefault("BILLING_SWEEP_INTERVAL_SECONDS", "0")
os.environ.pop("SENDGRID_API_KEY", None)

from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import models.models  # noqa: F401  (registers tables)
from core.exceptions import PaymentProviderTimeoutError
from models.models import (
    BillingCheckoutSession,
    BillingPlanCode,
    CheckoutStatus,
    Invitation,
    Organization,
    OwnerSubscription,
    SubscriptionStatus,
    User,
    UserRole,
)
from services.abacatepay import AbacateBilling, AbacateBillingProduct, AbacateCustomer

NOW = datetime(2026, 3, 10, 12, 0, 0)
VALID_CNPJ = "11222333000181"
VALID_PHONE = "11987654321"


# ============================================================================
# Database
# ============================================================================
@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


# ============================================================================
# Fakes
# ============================================================================
class FakeAbacatePay:
    """Records calls and answers like the AbacatePay client."""

    configured = True

    def __init__(self, checkout_url: str = "https://pay.abacatepay.com/bill_1"):
        self.checkout_url = checkout_url
        self.customers: List[dict] = []
        self.billing_requests: List[dict] = []
        self.billings: List[AbacateBilling] = []
        self.create_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None

    def create_customer(self, name, cellphone, email, tax_id):
        self.customers.append({"name": name, "cellphone": cellphone, "email": email, "taxId": tax_id})
        return AbacateCustomer(id=f"cust_{len(self.customers)}", name=name, email=email)

    def create_billing(self, payload):
        self.billing_requests.append(payload)
        if self.create_error:
            raise self.create_error
        product = payload["products"][0]
        billing = AbacateBilling(
            id=f"bill_{len(self.billing_requests)}",
            url=self.checkout_url,
            status="PENDING",
            amount=product["price"],
            currency="BRL",
            products=[AbacateBillingProduct(external_id=product["externalId"], quantity=1, price=product["price"])],
        )
        self.billings.append(billing)
        return billing

    def list_billings(self):
        if self.list_error:
            raise self.list_error
        return list(self.billings)

    def set_billing_status(self, billing_id: str, status: str):
        self.billings = [
            b.model_copy(update={"status": status}) if b.id == billing_id else b
            for b in self.billings
        ]


class RecordingNotifier:
    """Stands in for the SendGrid email service."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.approved: List[dict] = []
        self.dunning: List[dict] = []

    def send_payment_approved_email(self, **kwargs):
        if self.fail:
            raise RuntimeError("smtp down")
        self.approved.append(kwargs)
        return True

    def send_payment_failed_dunning_email(self, **kwargs):
        if self.fail:
            raise RuntimeError("smtp down")
        self.dunning.append(kwargs)
        return True


@pytest.fixture
def provider():
    return FakeAbacatePay()


@pytest.fixture
def timeout_provider():
    fake = FakeAbacatePay()
    fake.create_error = PaymentProviderTimeoutError("AbacatePay API timed out.")
    return fake


@pytest.fixture
def notifier():
    return RecordingNotifier()


# ============================================================================
# Factories
# ============================================================================
def make_organization(session, name: str = "Acme", owner_email: str = "owner@acme.com",
                      members: int = 0, created_at: datetime = NOW - timedelta(days=30)):
    org = Organization(name=name, created_at=created_at)
    session.add(org)
    session.commit()
    session.refresh(org)

    owner = User(full_name=f"{name} Owner", email=owner_email, role=UserRole.OWNER.value,
                 organization_id=org.id, created_at=created_at)
    session.add(owner)
    for index in range(members):
        session.add(User(full_name=f"Member {index}", email=f"member{index}@{name.lower()}.com",
                         role=UserRole.MEMBER.value, organization_id=org.id,
                         created_at=created_at + timedelta(minutes=index + 1)))
    session.commit()
    session.refresh(owner)
    return org, owner


def make_subscription(session, org, owner, **fields) -> OwnerSubscription:
    values = dict(
        organization_id=org.id,
        owner_user_id=owner.id,
        status=SubscriptionStatus.FREE.value,
        plan_code=BillingPlanCode.FREE.value,
        billing_name=f"{org.name} LTDA",
        billing_cellphone=VALID_PHONE,
        billing_tax_id=VALID_CNPJ,
        created_at=NOW - timedelta(days=30),
        updated_at=NOW - timedelta(days=30),
    )
    values.update(fields)
    subscription = OwnerSubscription(**values)
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


def make_checkout(session, subscription, target_plan_code: str = BillingPlanCode.STARTER_50.value,
                  amount_cents: int = 5_000, billing_id: Optional[str] = "bill_1",
                  status: str = CheckoutStatus.PENDING.value, created_at: datetime = NOW,
                  billing_cycle: str = "MONTHLY", currency: str = "BRL",
                  set_pending_plan: bool = True) -> BillingCheckoutSession:
    checkout = BillingCheckoutSession(
        organization_id=subscription.organization_id,
        owner_user_id=subscription.owner_user_id,
        subscription_id=subscription.id,
        target_plan_code=target_plan_code,
        billing_cycle=billing_cycle,
        amount_cents=amount_cents,
        currency=currency,
        provider_external_id=f"checkout_ext_{billing_id or created_at.timestamp()}",
        provider_billing_id=billing_id,
        provider_billing_url=f"https://pay.abacatepay.com/{billing_id}" if billing_id else None,
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )
    session.add(checkout)
    if set_pending_plan and status == CheckoutStatus.PENDING.value:
        subscription.pending_plan_code = target_plan_code
        session.add(subscription)
    session.commit()
    session.refresh(checkout)
    return checkout


def make_invitation(session, org, email: str, expires_at: datetime = NOW + timedelta(days=7),
                    status: str = "pending") -> Invitation:
    invitation = Invitation(email=email, organization_id=org.id, status=status,
                            expires_at=expires_at, created_at=NOW - timedelta(days=1))
    session.add(invitation)
    session.commit()
    session.refresh(invitation)
    return invitation


def paid_event(event_id: str = "evt_1", billing_id: str = "bill_1", amount=5_000, currency="BRL",
               transaction: Optional[dict] = None, event: str = "billing.paid") -> dict:
    data = {
        "billing": {
            "id": billing_id,
            "status": "PAID",
            "amount": amount,
            "currency": currency,
            "url": f"https://pay.abacatepay.com/{billing_id}",
        },
    }
    if transaction is not None:
        data["transaction"] = transaction
    return {"id": event_id, "event": event, "data": data}


def status_event(event_id: str, event: str, billing_id: str = "bill_1") -> dict:
    return {"id": event_id, "event": event, "data": {"billing": {"id": billing_id}}}
