import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from models.models import BillingCycle, BillingPlanCode, CancellationReason


# ============================================================
# 🇧🇷 Billing profile validation helpers
# ============================================================
def only_digits(value: str) -> str:
    return re.sub(r"[^0-9]", "", value or "")


def _all_digits_equal(value: str) -> bool:
    return len(set(value)) <= 1


def is_valid_brazil_phone(value: str) -> bool:
    """10 digits (landline) or 11 digits (mobile starting with 9), DDD 11-99."""
    if len(value) not in (10, 11) or not value.isdigit() or _all_digits_equal(value):
        return False
    ddd = int(value[:2])
    if ddd < 11 or ddd > 99:
        return False
    first_local = int(value[2])
    if len(value) == 11:
        return first_local == 9
    return 2 <= first_local <= 5


def _cpf_check_digit(digits: List[int], length: int) -> int:
    total = sum(d * (length + 1 - i) for i, d in enumerate(digits[:length]))
    check = (total * 10) % 11
    return 0 if check == 10 else check


def is_valid_cpf(value: str) -> bool:
    if len(value) != 11 or not value.isdigit() or _all_digits_equal(value):
        return False
    digits = [int(c) for c in value]
    return _cpf_check_digit(digits, 9) == digits[9] and _cpf_check_digit(digits, 10) == digits[10]


_CNPJ_FIRST_WEIGHTS = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_SECOND_WEIGHTS = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def _cnpj_check_digit(digits: List[int], weights) -> int:
    remainder = sum(d * w for d, w in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str) -> bool:
    if len(value) != 14 or not value.isdigit() or _all_digits_equal(value):
        return False
    digits = [int(c) for c in value]
    return (
        _cnpj_check_digit(digits, _CNPJ_FIRST_WEIGHTS) == digits[12]
        and _cnpj_check_digit(digits, _CNPJ_SECOND_WEIGHTS) == digits[13]
    )


def is_valid_cpf_or_cnpj(value: str) -> bool:
    if len(value) == 11:
        return is_valid_cpf(value)
    if len(value) == 14:
        return is_valid_cnpj(value)
    return False


# ============================================================
# ✅ Billing profile (input)
# ============================================================
class BillingProfileUpdate(BaseModel):
    billing_name: str
    billing_cellphone: str
    billing_tax_id: str

    @field_validator("billing_name")
    @classmethod
    def _name(cls, value: str) -> str:
        value = (value or "").strip()
        if len(value) < 2:
            raise PydanticCustomError("billing_name", "Enter the billing name.")
        return value

    @field_validator("billing_cellphone")
    @classmethod
    def _cellphone(cls, value: str) -> str:
        digits = only_digits(value)
        if not is_valid_brazil_phone(digits):
            raise PydanticCustomError("billing_cellphone", "Enter a valid phone number.")
        return digits

    @field_validator("billing_tax_id")
    @classmethod
    def _tax_id(cls, value: str) -> str:
        digits = only_digits(value)
        if not is_valid_cpf_or_cnpj(digits):
            raise PydanticCustomError("billing_tax_id", "Enter a valid CPF or CNPJ.")
        return digits


# ============================================================
# 📦 Plans + entitlements (output)
# ============================================================
class PlanLimitsRead(BaseModel):
    max_organizations: Optional[int] = None
    max_users: Optional[int] = None
    max_projects: Optional[int] = None
    max_monthly_usage: Optional[int] = None


class PlanRead(BaseModel):
    code: BillingPlanCode
    name: str
    description: str
    monthly_price_cents: int
    annual_total_cents: int
    annual_monthly_equivalent_cents: int
    limits: PlanLimitsRead
    features: List[str] = []


class UsageRead(BaseModel):
    organizations: int
    users: int
    pending_invitations: int
    projects: int
    monthly_usage: int


class DunningRead(BaseModel):
    in_grace_period: bool = False
    grace_started_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    days_in_grace_period: Optional[int] = None
    days_until_downgrade: Optional[int] = None
    reminder_checkpoint_day: Optional[int] = None


class RestrictionRead(BaseModel):
    is_restricted: bool = False
    exceeded_organizations: int = 0
    exceeded_users: int = 0


class SubscriptionRead(BaseModel):
    id: int
    organization_id: int
    owner_user_id: int
    status: str
    plan_code: str
    pending_plan_code: Optional[str] = None
    trial_plan_code: Optional[str] = None
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    trial_used_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    billing_name: Optional[str] = None
    billing_cellphone: Optional[str] = None
    billing_tax_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EntitlementsRead(BaseModel):
    organization_id: int
    owner_user_id: int
    effective_plan_code: BillingPlanCode
    subscription: SubscriptionRead
    usage: UsageRead
    dunning: DunningRead
    restriction: RestrictionRead
    block_message: Optional[str] = None


class FeatureStatusRead(BaseModel):
    key: str
    label: str
    enabled: bool
    source: str


# ============================================================
# 💳 Checkout
# ============================================================
class CheckoutCreate(BaseModel):
    plan_code: BillingPlanCode
    billing_cycle: str = BillingCycle.MONTHLY.value  # unknown values fall back to MONTHLY
    allow_same_plan: bool = False


class CheckoutCreated(BaseModel):
    checkout_url: str
    checkout_id: str


class CheckoutStateRead(BaseModel):
    id: str
    status: str
    target_plan_code: str
    created_at: datetime
    is_processing: bool


class CheckoutRead(BaseModel):
    id: str
    status: str
    target_plan_code: str
    billing_cycle: str
    amount_cents: int
    currency: str
    provider_billing_url: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReconcileResult(BaseModel):
    changed: bool
    checkout: Optional[CheckoutRead] = None


class BillingPageRead(BaseModel):
    entitlements: EntitlementsRead
    plans: List[PlanRead]
    checkout_state: Optional[CheckoutStateRead] = None


# ============================================================
# 🔁 Lifecycle
# ============================================================
class TrialStart(BaseModel):
    plan_code: BillingPlanCode = BillingPlanCode.STARTER_50


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False
    reason: Optional[CancellationReason] = None
    reason_detail: Optional[str] = Field(default=None, max_length=500)


# ============================================================
# 🧾 Invoices
# ============================================================
class InvoiceRead(BaseModel):
    id: int
    checkout_session_id: Optional[str] = None
    provider_billing_id: str
    provider_transaction_id: Optional[str] = None
    status: str
    amount_cents: int
    currency: str
    receipt_url: Optional[str] = None
    billing_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoiceSyncResult(BaseModel):
    synced: int


# ============================================================
# 🚩 Feature configuration
# ============================================================
class FeatureOverrideUpdate(BaseModel):
    enabled: bool
    note: Optional[str] = Field(default=None, max_length=255)


# ============================================================
# 🥑 Webhook acknowledgement
# ============================================================
class WebhookAck(BaseModel):
    ok: bool = True
    duplicate: bool
    processed: bool
