"""AbacatePay webhook intake and the shared checkout outcome transition.

Real webhooks and reconciliation polls both end in ``WebhookProcessor.apply_outcome``,
so a confirmed payment follows a single code path whatever delivered it.
All provider payload shapes are interpreted here; the subscription rules in
``services.transitions`` only ever see a ``CheckoutStatus``.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.config import settings
from core.exceptions import BillingIntegrityError, InvalidWebhookPayloadError
from models.models import (
    BillingCheckoutSession,
    BillingInvoice,
    BillingWebhookEvent,
    CheckoutStatus,
    Organization,
    OwnerSubscription,
    User,
    WebhookProcessingStatus,
)
from services.abacatepay import sanitize_trusted_url
from services.dunning import resolve_dunning_email_day
from services.email_service import email_service
from services.plan_catalog import DEFAULT_CURRENCY, DEFAULT_PLAN_CATALOG, PlanCatalog
from services.transitions import (
    OutcomeContext,
    apply_change,
    can_transition_checkout,
    is_checkout_final,
    resolve_subscription_change,
)

logger = logging.getLogger(__name__)

PROVIDER_NAME = "abacatepay"
INTERNAL_PROVIDER_NAME = "internal"
MAX_SAFE_INTEGER = 2 ** 53 - 1
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_AMOUNT_RE = re.compile(r"[0-9]+")


# ============================================================
# 🔎 Outcome classification
# ============================================================
EVENT_OUTCOMES: Dict[str, CheckoutStatus] = {
    "billing.paid": CheckoutStatus.PAID,
    "billing.failed": CheckoutStatus.FAILED,
    "billing.expired": CheckoutStatus.EXPIRED,
    "subscription.expired": CheckoutStatus.EXPIRED,
    "billing.chargeback": CheckoutStatus.CHARGEBACK,
    "billing.refunded": CheckoutStatus.CHARGEBACK,
}

BILLING_STATUS_OUTCOMES: Dict[str, CheckoutStatus] = {
    "PAID": CheckoutStatus.PAID,
    "EXPIRED": CheckoutStatus.EXPIRED,
    "CANCELLED": CheckoutStatus.FAILED,
    "REFUNDED": CheckoutStatus.CHARGEBACK,
}

TRANSACTION_STATUS_OUTCOMES: Dict[str, CheckoutStatus] = {
    "COMPLETE": CheckoutStatus.PAID,
    "CANCELLED": CheckoutStatus.FAILED,
    "REFUNDED": CheckoutStatus.CHARGEBACK,
}

# Cached checkout status for a provider billing status (non-terminal -> PENDING)
BILLING_STATUS_CHECKOUT_STATUS: Dict[str, CheckoutStatus] = {
    "PAID": CheckoutStatus.PAID,
    "EXPIRED": CheckoutStatus.EXPIRED,
    "CANCELLED": CheckoutStatus.CANCELED,
    "REFUNDED": CheckoutStatus.CHARGEBACK,
}


def map_billing_status(status: Optional[str]) -> CheckoutStatus:
    return BILLING_STATUS_CHECKOUT_STATUS.get(status or "", CheckoutStatus.PENDING)


def billing_status_to_outcome(status: Optional[str]) -> Optional[CheckoutStatus]:
    return BILLING_STATUS_OUTCOMES.get(status or "")


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def infer_checkout_outcome(payload: Dict[str, Any]) -> Optional[CheckoutStatus]:
    """Event name first, then billing status, then transaction status."""
    outcome = EVENT_OUTCOMES.get(payload.get("event") or "")
    if outcome:
        return outcome

    outcome = BILLING_STATUS_OUTCOMES.get(_dig(payload, "data", "billing", "status") or "")
    if outcome:
        return outcome

    return TRANSACTION_STATUS_OUTCOMES.get(_dig(payload, "data", "transaction", "status") or "")


def parse_webhook_payload(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise InvalidWebhookPayloadError("Invalid webhook payload.")
    event_id = raw.get("id") if isinstance(raw.get("id"), str) else ""
    event = raw.get("event") if isinstance(raw.get("event"), str) else ""
    if not event_id or not event:
        raise InvalidWebhookPayloadError("Webhook payload without id or event.")
    return raw


# ============================================================
# 💰 Amount / currency guard
# ============================================================
def parse_amount_cents(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value <= MAX_SAFE_INTEGER else None
    if isinstance(value, float):
        if value.is_integer() and 0 <= value <= MAX_SAFE_INTEGER:
            return int(value)
        return None
    if isinstance(value, str) and _AMOUNT_RE.fullmatch(value.strip()):
        parsed = int(value.strip())
        return parsed if parsed <= MAX_SAFE_INTEGER else None
    return None


def parse_currency(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    return normalized if _CURRENCY_RE.match(normalized) else None


def sum_products_amount_cents(products: Any) -> Optional[int]:
    if not isinstance(products, list) or not products:
        return None
    total = 0
    for product in products:
        if not isinstance(product, dict):
            return None
        quantity = parse_amount_cents(product.get("quantity"))
        price = parse_amount_cents(product.get("price"))
        if quantity is None or price is None or quantity <= 0:
            return None
        total += quantity * price
    return total


def _first_parsed(candidates: Iterable[Any], parser) -> Any:
    for candidate in candidates:
        parsed = parser(candidate)
        if parsed is not None:
            return parsed
    return None


def resolve_paid_amount_cents(payload: Dict[str, Any]) -> Optional[int]:
    amount = _first_parsed(
        (
            _dig(payload, "data", "payment", "amountCents"),
            _dig(payload, "data", "payment", "amount"),
            _dig(payload, "data", "transaction", "amountCents"),
            _dig(payload, "data", "transaction", "amount"),
            _dig(payload, "data", "billing", "paidAmount"),
            _dig(payload, "data", "billing", "amount"),
            _dig(payload, "data", "pixQrCode", "amount"),
        ),
        parse_amount_cents,
    )
    if amount is not None:
        return amount
    return sum_products_amount_cents(_dig(payload, "data", "billing", "products"))


def resolve_paid_currency(payload: Dict[str, Any]) -> Optional[str]:
    return _first_parsed(
        (
            _dig(payload, "data", "payment", "currency"),
            _dig(payload, "data", "transaction", "currency"),
            _dig(payload, "data", "billing", "currency"),
            _dig(payload, "data", "pixQrCode", "currency"),
        ),
        parse_currency,
    )


def assert_paid_amount_and_currency(checkout, payload: Dict[str, Any]) -> None:
    paid_amount = resolve_paid_amount_cents(payload)
    if paid_amount is None:
        raise BillingIntegrityError("Payment webhook without a valid monetary amount.")
    if paid_amount != checkout.amount_cents:
        raise BillingIntegrityError(
            f"Paid amount {paid_amount} does not match checkout amount {checkout.amount_cents}."
        )

    expected_currency = (checkout.currency or "").strip().upper()
    if not expected_currency:
        raise BillingIntegrityError("Checkout has no expected currency.")

    paid_currency = resolve_paid_currency(payload)
    if paid_currency and paid_currency != expected_currency:
        raise BillingIntegrityError(
            f"Paid currency {paid_currency} does not match checkout currency {expected_currency}."
        )
    if not paid_currency and expected_currency != DEFAULT_CURRENCY:
        raise BillingIntegrityError("Webhook without explicit currency for a non-BRL checkout.")


def resolve_checkout(session: Session, payload: Dict[str, Any]) -> Optional[BillingCheckoutSession]:
    """By provider billing id, then by the external id carried in the event."""
    billing_id = _dig(payload, "data", "billing", "id")
    if billing_id:
        checkout = session.exec(
            select(BillingCheckoutSession).where(BillingCheckoutSession.provider_billing_id == billing_id)
        ).first()
        if checkout:
            return checkout

    external_id = _dig(payload, "data", "transaction", "externalId")
    if not external_id:
        products = _dig(payload, "data", "billing", "products") or []
        external_id = next(
            (p.get("externalId") for p in products if isinstance(p, dict) and p.get("externalId")),
            None,
        )
    if not external_id:
        return None

    return session.exec(
        select(BillingCheckoutSession).where(BillingCheckoutSession.provider_external_id == external_id)
    ).first()


# ============================================================
# 📧 Post-commit notifications
# ============================================================
@dataclass(frozen=True)
class PaymentApprovedNotice:
    dedupe_key: str
    owner_user_id: int
    organization_id: int
    plan_code: str
    amount_cents: int
    currency: str
    paid_at: datetime
    receipt_url: Optional[str]
    billing_url: Optional[str]


@dataclass(frozen=True)
class PaymentFailedDunningNotice:
    dedupe_key: str
    owner_user_id: int
    organization_id: int
    plan_code: str
    dunning_day: int
    grace_ends_at: Optional[datetime]
    billing_url: Optional[str]


Notice = Union[PaymentApprovedNotice, PaymentFailedDunningNotice]


@dataclass(frozen=True)
class WebhookResult:
    duplicate: bool
    processed: bool

    def to_dict(self) -> Dict[str, bool]:
        return {"duplicate": self.duplicate, "processed": self.processed}


# ============================================================
# 🔄 Processor
# ============================================================
class WebhookProcessor:
    def __init__(self, session: Session, catalog: PlanCatalog = DEFAULT_PLAN_CATALOG, notifier=None):
        self.session = session
        self.catalog = catalog
        self.notifier = notifier or email_service

    # -----------------------
    # Entry point
    # -----------------------
    def process_webhook(self, raw_payload: Any, now: Optional[datetime] = None) -> WebhookResult:
        now = now or datetime.utcnow()
        payload = parse_webhook_payload(raw_payload)
        event_id = payload["id"]

        event = BillingWebhookEvent(
            id=event_id,
            provider=PROVIDER_NAME,
            event_type=payload["event"],
            status=WebhookProcessingStatus.RECEIVED.value,
            payload=json.dumps(payload, default=str),
            created_at=now,
        )
        self.session.add(event)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"🔁 Duplicate webhook event {event_id} ignored")
            return WebhookResult(duplicate=True, processed=False)

        outcome = infer_checkout_outcome(payload)
        if outcome is None:
            self._mark_event(event_id, WebhookProcessingStatus.IGNORED, None, now)
            logger.info(f"ℹ️ Webhook {event_id} ({payload['event']}) has no checkout outcome")
            return WebhookResult(duplicate=False, processed=False)

        try:
            checkout = resolve_checkout(self.session, payload)
            if checkout is None:
                self._mark_event(
                    event_id, WebhookProcessingStatus.IGNORED, "Checkout not found for the received event.", now
                )
                logger.info(f"ℹ️ Webhook {event_id} does not match any checkout")
                return WebhookResult(duplicate=False, processed=False)

            self.apply_outcome(checkout.id, payload, outcome, source="webhook", now=now)
            self._mark_event(event_id, WebhookProcessingStatus.PROCESSED, None, now)
            return WebhookResult(duplicate=False, processed=True)
        except Exception as e:
            self.session.rollback()
            self._mark_event(event_id, WebhookProcessingStatus.FAILED, str(e) or e.__class__.__name__, now)
            logger.error(f"❌ Webhook {event_id} failed: {e}")
            raise

    def _mark_event(self, event_id: str, status: WebhookProcessingStatus,
                    error_message: Optional[str], now: datetime) -> None:
        event = self.session.get(BillingWebhookEvent, event_id)
        if event is None:
            return
        event.status = status.value
        event.error_message = error_message
        event.processed_at = now if status == WebhookProcessingStatus.PROCESSED else None
        self.session.add(event)
        self.session.commit()

    # -----------------------
    # Outcome transition
    # -----------------------
    def apply_outcome(self, checkout_id: str, payload: Dict[str, Any], outcome: CheckoutStatus,
                      source: str = "webhook", now: Optional[datetime] = None) -> bool:
        """Apply ``outcome`` to the checkout, its invoice and its subscription in one transaction.

        Returns ``True`` when checkout state changed. Integrity violations roll
        everything back and propagate.
        """
        now = now or datetime.utcnow()
        try:
            changed, notice = self._apply_locked(checkout_id, payload, CheckoutStatus(outcome), source, now)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if notice is not None:
            try:
                self.dispatch_notification(notice, now)
            except Exception as e:
                logger.error(f"❌ Failed to dispatch billing notification: {e}")
        return changed

    def _apply_locked(self, checkout_id: str, payload: Dict[str, Any], outcome: CheckoutStatus,
                      source: str, now: datetime):
        checkout = self.session.exec(
            select(BillingCheckoutSession).where(BillingCheckoutSession.id == checkout_id).with_for_update()
        ).first()
        if checkout is None:
            raise BillingIntegrityError("Checkout not found while processing webhook.")

        incoming_billing_id = _dig(payload, "data", "billing", "id")
        if checkout.provider_billing_id and incoming_billing_id and checkout.provider_billing_id != incoming_billing_id:
            logger.warning(
                f"⚠️ Event billing {incoming_billing_id} does not match checkout {checkout.id} billing"
            )
            return False, None

        current = checkout.status
        may_be_recurring = (
            source == "webhook" and current == CheckoutStatus.PAID and outcome == CheckoutStatus.PAID
        )

        if outcome == CheckoutStatus.PAID:
            assert_paid_amount_and_currency(checkout, payload)

        allowed_hosts = settings.allowed_checkout_hosts
        transaction_id = _dig(payload, "data", "transaction", "id")
        if transaction_id is None and outcome == CheckoutStatus.PAID and source == "webhook":
            transaction_id = f"evt_{payload['id']}"
        receipt_url = sanitize_trusted_url(_dig(payload, "data", "transaction", "receiptUrl"), allowed_hosts)
        billing_id = incoming_billing_id or checkout.provider_billing_id
        billing_url = (
            sanitize_trusted_url(_dig(payload, "data", "billing", "url"), allowed_hosts)
            or sanitize_trusted_url(checkout.provider_billing_url, allowed_hosts)
        )
        base_billing_id = billing_id or f"fallback_{checkout.id}"

        recurring_paid = False
        if may_be_recurring:
            base_invoice = self.session.exec(
                select(BillingInvoice)
                .where(
                    BillingInvoice.checkout_session_id == checkout.id,
                    BillingInvoice.provider_billing_id == base_billing_id,
                    BillingInvoice.status == CheckoutStatus.PAID.value,
                )
                .order_by(BillingInvoice.created_at)
            ).first()
            if base_invoice and base_invoice.provider_transaction_id in (None, transaction_id):
                # Same payment replayed: refresh receipt metadata only
                base_invoice.provider_transaction_id = transaction_id
                base_invoice.receipt_url = receipt_url or base_invoice.receipt_url
                base_invoice.billing_url = billing_url or base_invoice.billing_url
                base_invoice.paid_at = now
                base_invoice.updated_at = now
                self.session.add(base_invoice)
                return False, None
            recurring_paid = True

        if current == outcome and not recurring_paid:
            return False, None
        if is_checkout_final(current) and not recurring_paid and not can_transition_checkout(current, outcome):
            logger.info(f"🔒 Checkout {checkout.id} is {current}; ignoring {outcome.value}")
            return False, None

        invoice_key = f"{base_billing_id}:{payload['id']}" if recurring_paid else base_billing_id

        checkout.status = outcome.value
        checkout.paid_at = now if outcome == CheckoutStatus.PAID else None
        if billing_id and not checkout.provider_billing_id:
            checkout.provider_billing_id = billing_id
        checkout.updated_at = now
        self.session.add(checkout)

        self._write_invoice(checkout, invoice_key, recurring_paid, outcome, transaction_id,
                            receipt_url, billing_url, now)

        subscription = self.session.exec(
            select(OwnerSubscription).where(OwnerSubscription.id == checkout.subscription_id).with_for_update()
        ).first()
        if subscription is None:
            raise BillingIntegrityError("Subscription linked to the checkout was not found.")

        ctx = OutcomeContext(
            subscription=subscription,
            outcome=outcome,
            target_plan_code=checkout.target_plan_code,
            billing_cycle=checkout.billing_cycle,
            now=now,
            recurring_paid=recurring_paid,
            superseded=outcome == CheckoutStatus.EXPIRED and self._is_superseded(checkout),
        )
        change = resolve_subscription_change(ctx)
        if apply_change(subscription, change, now):
            self.session.add(subscription)
        logger.info(
            f"🔄 Checkout {checkout.id} {current} -> {outcome.value} via {source}; "
            f"subscription {subscription.id} rule={change.rule} status={subscription.status}"
        )

        return True, self._build_notice(checkout, subscription, outcome, change.opens_grace,
                                        invoice_key, receipt_url, billing_url, now)

    def _write_invoice(self, checkout: BillingCheckoutSession, invoice_key: str, recurring_paid: bool,
                       outcome: CheckoutStatus, transaction_id: Optional[str], receipt_url: Optional[str],
                       billing_url: Optional[str], now: datetime) -> BillingInvoice:
        invoice = None
        if not recurring_paid:
            invoice = self.session.exec(
                select(BillingInvoice).where(BillingInvoice.checkout_session_id == checkout.id)
                .order_by(BillingInvoice.created_at)
            ).first()
        if invoice is None:
            invoice = self.session.exec(
                select(BillingInvoice).where(BillingInvoice.provider_billing_id == invoice_key)
            ).first()
        if invoice is None:
            invoice = BillingInvoice(
                owner_user_id=checkout.owner_user_id,
                subscription_id=checkout.subscription_id,
                provider_billing_id=invoice_key,
                amount_cents=checkout.amount_cents,
                currency=checkout.currency,
                created_at=now,
            )

        invoice.checkout_session_id = checkout.id
        invoice.provider_billing_id = invoice_key
        invoice.provider_transaction_id = transaction_id or invoice.provider_transaction_id
        invoice.status = outcome.value
        invoice.receipt_url = receipt_url or invoice.receipt_url
        invoice.billing_url = billing_url or invoice.billing_url
        invoice.paid_at = now if outcome == CheckoutStatus.PAID else None
        invoice.updated_at = now
        self.session.add(invoice)
        return invoice

    def _is_superseded(self, checkout: BillingCheckoutSession) -> bool:
        """A newer pending checkout for the same subscription carries the current intent."""
        newer = self.session.exec(
            select(BillingCheckoutSession.id).where(
                BillingCheckoutSession.subscription_id == checkout.subscription_id,
                BillingCheckoutSession.id != checkout.id,
                BillingCheckoutSession.status == CheckoutStatus.PENDING.value,
                BillingCheckoutSession.created_at > checkout.created_at,
            )
        ).first()
        return newer is not None

    def _build_notice(self, checkout, subscription, outcome: CheckoutStatus, opened_grace: bool,
                      invoice_key: str, receipt_url: Optional[str], billing_url: Optional[str],
                      now: datetime) -> Optional[Notice]:
        if outcome == CheckoutStatus.PAID:
            return PaymentApprovedNotice(
                dedupe_key=invoice_key,
                owner_user_id=checkout.owner_user_id,
                organization_id=checkout.organization_id,
                plan_code=checkout.target_plan_code,
                amount_cents=checkout.amount_cents,
                currency=checkout.currency,
                paid_at=now,
                receipt_url=receipt_url,
                billing_url=billing_url,
            )

        if outcome == CheckoutStatus.FAILED and opened_grace and subscription.current_period_start:
            grace_start = subscription.current_period_start
            day = resolve_dunning_email_day(grace_start, now)
            if day:
                return PaymentFailedDunningNotice(
                    dedupe_key=f"{subscription.id}:{grace_start.date().isoformat()}:day-{day}",
                    owner_user_id=checkout.owner_user_id,
                    organization_id=checkout.organization_id,
                    plan_code=subscription.plan_code,
                    dunning_day=day,
                    grace_ends_at=subscription.current_period_end,
                    billing_url=billing_url,
                )
        return None

    # -----------------------
    # Email dispatch
    # -----------------------
    def _acquire_marker(self, marker_id: str, event_type: str, payload: Dict[str, Any], now: datetime) -> bool:
        marker = BillingWebhookEvent(
            id=marker_id,
            provider=INTERNAL_PROVIDER_NAME,
            event_type=event_type,
            status=WebhookProcessingStatus.PROCESSED.value,
            payload=json.dumps(payload, default=str),
            processed_at=now,
            created_at=now,
        )
        self.session.add(marker)
        try:
            self.session.commit()
            return True
        except IntegrityError:
            self.session.rollback()
            return False

    def dispatch_notification(self, notice: Notice, now: Optional[datetime] = None) -> bool:
        """Send the email at most once per dedupe key. Returns ``True`` when it was sent."""
        now = now or datetime.utcnow()
        owner = self.session.get(User, notice.owner_user_id)
        recipient = (owner.email or "").strip().lower() if owner else ""
        if not recipient:
            return False

        organization = self.session.get(Organization, notice.organization_id)
        organization_name = (organization.name.strip() if organization and organization.name else "") or "organization"
        recipient_name = (owner.full_name or "").strip() or None
        plan_name = self.catalog.get(notice.plan_code).name

        if isinstance(notice, PaymentApprovedNotice):
            acquired = self._acquire_marker(
                f"email:payment_approved:{notice.organization_id}:{notice.dedupe_key}",
                "email.payment_approved",
                {"organization_id": notice.organization_id, "owner_user_id": notice.owner_user_id,
                 "dedupe_key": notice.dedupe_key},
                now,
            )
            if not acquired:
                return False
            return self.notifier.send_payment_approved_email(
                to_email=recipient,
                recipient_name=recipient_name,
                organization_name=organization_name,
                plan_name=plan_name,
                amount_cents=notice.amount_cents,
                currency=notice.currency,
                paid_at=notice.paid_at,
                receipt_url=notice.receipt_url,
                billing_url=notice.billing_url,
            )

        acquired = self._acquire_marker(
            f"email:payment_failed_dunning:{notice.organization_id}:{notice.dedupe_key}",
            "email.payment_failed_dunning",
            {"organization_id": notice.organization_id, "owner_user_id": notice.owner_user_id,
             "dedupe_key": notice.dedupe_key, "dunning_day": notice.dunning_day,
             "grace_ends_at": notice.grace_ends_at.isoformat() if notice.grace_ends_at else None},
            now,
        )
        if not acquired:
            return False
        return self.notifier.send_payment_failed_dunning_email(
            to_email=recipient,
            recipient_name=recipient_name,
            organization_name=organization_name,
            plan_name=plan_name,
            dunning_day=notice.dunning_day,
            grace_ends_at=notice.grace_ends_at,
            billing_url=notice.billing_url,
        )
