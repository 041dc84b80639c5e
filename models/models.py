# billing_backend/models.py
from typing import Optional
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


# ============================================================
# ENUMS
# ============================================================
class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    CANCELED = "canceled"


class BillingPlanCode(str, Enum):
    FREE = "FREE"
    STARTER_50 = "STARTER_50"
    PRO_100 = "PRO_100"
    SCALE_400 = "SCALE_400"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"
    CHARGEBACK = "chargeback"


class WebhookProcessingStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class CancellationReason(str, Enum):
    TOO_EXPENSIVE = "TOO_EXPENSIVE"
    MISSING_FEATURES = "MISSING_FEATURES"
    LOW_USAGE = "LOW_USAGE"
    SWITCHING_PROVIDER = "SWITCHING_PROVIDER"
    TEMPORARY_PAUSE = "TEMPORARY_PAUSE"
    SUPPORT_ISSUES = "SUPPORT_ISSUES"
    OTHER = "OTHER"


CANCELLATION_REASON_LABELS = {
    CancellationReason.TOO_EXPENSIVE: "Price is too high right now",
    CancellationReason.MISSING_FEATURES: "Features I need are not available",
    CancellationReason.LOW_USAGE: "I am barely using the product",
    CancellationReason.SWITCHING_PROVIDER: "Moving to another tool",
    CancellationReason.TEMPORARY_PAUSE: "Temporary business pause",
    CancellationReason.SUPPORT_ISSUES: "Support or operational problems",
    CancellationReason.OTHER: "Other reason",
}


# ============================================================
# ORGANIZATION (tenant)
# ============================================================
class Organization(SQLModel, table=True):
    __tablename__ = "organization"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    slug: Optional[str] = Field(default=None, max_length=50, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# USER (organization member)
# ============================================================
class User(SQLModel, table=True):
    __tablename__ = "user"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_org_email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str = Field(max_length=100)
    email: str = Field(index=True, max_length=100, nullable=False)

    role: str = Field(default=UserRole.MEMBER.value, max_length=20, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    organization_id: int = Field(foreign_key="organization.id", index=True)

    def is_owner(self) -> bool:
        return UserRole.OWNER.value in (self.role or "")


# ============================================================
# PROJECT
# ============================================================
class Project(SQLModel, table=True):
    __tablename__ = "project"
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(max_length=100)
    creator_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    organization_id: int = Field(foreign_key="organization.id", index=True)


# ============================================================
# INVITATION
# ============================================================
class Invitation(SQLModel, table=True):
    __tablename__ = "invitation"

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(max_length=100, nullable=False, index=True)
    role: str = Field(default=UserRole.MEMBER.value, max_length=20)
    status: str = Field(default=InvitationStatus.PENDING.value, max_length=20, index=True)
    expires_at: datetime = Field(default_factory=lambda: datetime.utcnow() + timedelta(days=7))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    sent_by_id: Optional[int] = Field(default=None, foreign_key="user.id")

    organization_id: int = Field(foreign_key="organization.id", index=True)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at


# ============================================================
# OWNER SUBSCRIPTION (one per organization)
# ============================================================
class OwnerSubscription(SQLModel, table=True):
    __tablename__ = "owner_subscription"

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", unique=True, index=True)
    owner_user_id: int = Field(foreign_key="user.id", index=True)

    status: str = Field(default=SubscriptionStatus.FREE.value, max_length=20, index=True)
    plan_code: str = Field(default=BillingPlanCode.FREE.value, max_length=20)
    pending_plan_code: Optional[str] = Field(default=None, max_length=20)
    trial_plan_code: Optional[str] = Field(default=None, max_length=20)

    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    trial_used_at: Optional[datetime] = None

    # Billing period when ACTIVE, grace window when PAST_DUE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = None

    billing_name: Optional[str] = Field(default=None, max_length=120)
    billing_cellphone: Optional[str] = Field(default=None, max_length=20)
    billing_tax_id: Optional[str] = Field(default=None, max_length=20, index=True)
    abacate_customer_id: Optional[str] = Field(default=None, max_length=255)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# CHECKOUT SESSION
# ============================================================
class BillingCheckoutSession(SQLModel, table=True):
    __tablename__ = "billing_checkout_session"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True, max_length=64)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    owner_user_id: int = Field(foreign_key="user.id", index=True)
    subscription_id: int = Field(foreign_key="owner_subscription.id", index=True)

    target_plan_code: str = Field(max_length=20)
    billing_cycle: str = Field(default=BillingCycle.MONTHLY.value, max_length=20)
    amount_cents: int = Field(ge=0)
    currency: str = Field(default="BRL", max_length=3)

    provider_external_id: str = Field(unique=True, index=True, max_length=255)
    provider_billing_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_billing_url: Optional[str] = None

    status: str = Field(default=CheckoutStatus.PENDING.value, max_length=20, index=True)
    checkout_metadata: Optional[str] = None  # JSON text

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None


# ============================================================
# INVOICE
# ============================================================
class BillingInvoice(SQLModel, table=True):
    __tablename__ = "billing_invoice"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_user_id: int = Field(foreign_key="user.id", index=True)
    subscription_id: int = Field(foreign_key="owner_subscription.id", index=True)
    checkout_session_id: Optional[str] = Field(default=None, foreign_key="billing_checkout_session.id", index=True)

    # "<billing id>" or "<billing id>:<event id>" for later cycles of a recurring billing
    provider_billing_id: str = Field(unique=True, index=True, max_length=255)
    provider_transaction_id: Optional[str] = Field(default=None, max_length=255)

    status: str = Field(default=CheckoutStatus.PENDING.value, max_length=20)
    amount_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="BRL", max_length=3)
    receipt_url: Optional[str] = None
    billing_url: Optional[str] = None
    paid_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# WEBHOOK EVENT LOG (dedup gate + audit trail)
# ============================================================
class BillingWebhookEvent(SQLModel, table=True):
    __tablename__ = "billing_webhook_event"

    id: str = Field(primary_key=True, max_length=255)
    provider: str = Field(default="abacatepay", max_length=50)
    event_type: str = Field(max_length=100, index=True)
    status: str = Field(default=WebhookProcessingStatus.RECEIVED.value, max_length=20)
    payload: Optional[str] = None  # JSON text
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# FEATURE FLAGS
# ============================================================
class OwnerFeatureOverride(SQLModel, table=True):
    __tablename__ = "owner_feature_override"
    __table_args__ = (UniqueConstraint("organization_id", "feature_key", name="uq_org_feature_override"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    feature_key: str = Field(max_length=50)
    enabled: bool = Field(default=True)
    note: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class FeatureRollout(SQLModel, table=True):
    __tablename__ = "feature_rollout"

    id: Optional[int] = Field(default=None, primary_key=True)
    feature_key: str = Field(unique=True, index=True, max_length=50)
    enabled: bool = Field(default=True)
    rollout_percentage: int = Field(default=0)
    seed: str = Field(default="default", max_length=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# METERED USAGE
# ============================================================
class OwnerMonthlyUsage(SQLModel, table=True):
    __tablename__ = "owner_monthly_usage"
    __table_args__ = (
        UniqueConstraint("owner_user_id", "organization_id", "metric_key", "period_start",
                         name="uq_owner_monthly_usage_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_user_id: int = Field(foreign_key="user.id", index=True)
    organization_id: int = Field(foreign_key="organization.id", index=True)
    metric_key: str = Field(max_length=100)
    period_start: datetime
    value: int = Field(default=0)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# CANCELLATION FEEDBACK
# ============================================================
class SubscriptionCancellationFeedback(SQLModel, table=True):
    __tablename__ = "subscription_cancellation_feedback"

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_user_id: int = Field(foreign_key="user.id", index=True)
    subscription_id: int = Field(foreign_key="owner_subscription.id", index=True)
    immediate: bool = Field(default=False)
    reason_code: str = Field(max_length=40)
    reason_detail: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================
# EXPORTS
# ============================================================
__all__ = [
    "Organization",
    "User",
    "Project",
    "Invitation",
    "OwnerSubscription",
    "BillingCheckoutSession",
    "BillingInvoice",
    "BillingWebhookEvent",
    "OwnerFeatureOverride",
    "FeatureRollout",
    "OwnerMonthlyUsage",
    "SubscriptionCancellationFeedback",
    "UserRole",
    "InvitationStatus",
    "BillingPlanCode",
    "BillingCycle",
    "SubscriptionStatus",
    "CheckoutStatus",
    "WebhookProcessingStatus",
    "CancellationReason",
    "CANCELLATION_REASON_LABELS",
]
