# services/checkout.py
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.config import settings
from core.exceptions import (
    BillingError,
    BillingIntegrityError,
    BillingValidationError,
    PaymentProviderTimeoutError,
    ProviderNotConfiguredError,
)
from models.models import (
    BillingCheckoutSession,
    BillingCycle,
    BillingInvoice,
    CheckoutStatus,
    OwnerSubscription,
    User,
)
from services.abacatepay import AbacateBilling, AbacatePayClient, is_trusted_checkout_url, sanitize_trusted_url
from services.entitlements import EntitlementService, OwnerEntitlements
from services.plan_catalog import (
    DEFAULT_CURRENCY,
    DEFAULT_PLAN_CATALOG,
    PlanCatalog,
    PlanDefinition,
    get_billing_period_days,
    get_plan_charge_cents,
    is_paid_plan,
    to_billing_cycle,
    to_plan_code,
)
from services.transitions import can_transition_checkout, is_checkout_final
from services.webhook_processor import WebhookProcessor, billing_status_to_outcome, map_billing_status

logger = logging.getLogger(__name__)

INVOICE_PAGE_SIZE = 50
INVOICE_SYNC_CHECKOUT_LIMIT = 200
RECONCILE_EVENT_NAME = "billing.reconciled"


def is_stale_pending_checkout(created_at: datetime, now: datetime, timeout_minutes: Optional[int] = None) -> bool:
    minutes = timeout_minutes if timeout_minutes is not None else settings.checkout_pending_timeout_minutes
    return now - created_at >= timedelta(minutes=minutes)


def new_external_id() -> str:
    return f"checkout_{uuid4().hex}"


@dataclass
class CheckoutState:
    id: str
    status: str
    target_plan_code: str
    created_at: datetime
    is_processing: bool


@dataclass
class BillingPageData:
    entitlements: OwnerEntitlements
    plans: List[PlanDefinition]
    checkout_state: Optional[CheckoutState]


class CheckoutService:
    """Checkout sessions against AbacatePay plus the invoice ledger reads."""

    def __init__(self, session: Session, provider: Optional[AbacatePayClient] = None,
                 catalog: PlanCatalog = DEFAULT_PLAN_CATALOG, notifier=None):
        self.session = session
        self.catalog = catalog
        self._provider = provider
        self.entitlements = EntitlementService(session, catalog)
        self.processor = WebhookProcessor(session, catalog, notifier)

    # -----------------------
    # Provider access
    # -----------------------
    @property
    def provider(self) -> AbacatePayClient:
        if self._provider is None:
            self._provider = AbacatePayClient.from_settings()
        return self._provider

    @property
    def provider_configured(self) -> bool:
        if self._provider is not None:
            return self._provider.configured
        return settings.abacatepay_configured

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    # ============================================================
    # 🧾 Provider customer
    # ============================================================
    def ensure_provider_customer_id(self, subscription: OwnerSubscription) -> str:
        if subscription.abacate_customer_id:
            return subscription.abacate_customer_id

        if not (subscription.billing_name and subscription.billing_cellphone and subscription.billing_tax_id):
            raise BillingValidationError("Fill in billing name, phone and CPF/CNPJ to continue.")

        owner = self.session.get(User, subscription.owner_user_id)
        if owner is None or not (owner.email or "").strip():
            raise BillingValidationError("The owner has no valid email to register with AbacatePay.")

        # Same owner (by email) and tax id in another organization may share the customer
        owner_ids = self.session.exec(
            select(User.id).where(func.lower(User.email) == owner.email.strip().lower())
        ).all()
        shared = self.session.exec(
            select(OwnerSubscription)
            .where(
                OwnerSubscription.owner_user_id.in_(owner_ids),
                OwnerSubscription.organization_id != subscription.organization_id,
                OwnerSubscription.billing_tax_id == subscription.billing_tax_id,
                OwnerSubscription.abacate_customer_id.is_not(None),
            )
            .order_by(OwnerSubscription.updated_at.desc())
        ).first()

        if shared:
            customer_id = shared.abacate_customer_id
        else:
            customer = self.provider.create_customer(
                name=subscription.billing_name,
                cellphone=subscription.billing_cellphone,
                email=owner.email.strip(),
                tax_id=subscription.billing_tax_id,
            )
            customer_id = customer.id
            logger.info(f"🧾 Created AbacatePay customer for organization {subscription.organization_id}")

        subscription.abacate_customer_id = customer_id
        self.session.add(subscription)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
        self.session.refresh(subscription)
        return customer_id

    # ============================================================
    # 💳 Checkout creation
    # ============================================================
    def create_plan_checkout_session(self, organization_id: int, target_plan_code: str,
                                     billing_cycle: str = BillingCycle.MONTHLY.value,
                                     allow_same_plan: bool = False,
                                     now: Optional[datetime] = None) -> Dict[str, str]:
        now = now or datetime.utcnow()
        if not is_paid_plan(target_plan_code):
            raise BillingValidationError("Select a paid plan to start checkout.")
        if not self.provider_configured:
            raise ProviderNotConfiguredError("ABACATEPAY_API_KEY is not configured to create checkouts.")

        plan_code = to_plan_code(target_plan_code)
        cycle = to_billing_cycle(billing_cycle)
        entitlements = self.entitlements.get_owner_entitlements(organization_id, now=now)
        subscription = entitlements.subscription
        if not allow_same_plan and entitlements.effective_plan_code == plan_code:
            raise BillingValidationError("This is already the active plan.")

        plan = self.catalog.get(plan_code)
        period_days = get_billing_period_days(cycle)
        amount_cents = get_plan_charge_cents(plan.monthly_price_cents, cycle)
        customer_id = self.ensure_provider_customer_id(subscription)

        external_id = new_external_id()
        checkout = BillingCheckoutSession(
            organization_id=organization_id,
            owner_user_id=subscription.owner_user_id,
            subscription_id=subscription.id,
            target_plan_code=plan_code.value,
            billing_cycle=cycle.value,
            amount_cents=amount_cents,
            currency=DEFAULT_CURRENCY,
            provider_external_id=external_id,
            status=CheckoutStatus.PENDING.value,
            checkout_metadata=json.dumps({
                "billing_cycle": cycle.value,
                "billing_period_days": period_days,
                "organization_id": organization_id,
            }),
            created_at=now,
            updated_at=now,
        )
        self.session.add(checkout)
        self._commit()
        self.session.refresh(checkout)
        checkout_id = checkout.id

        annual = cycle == BillingCycle.ANNUAL
        try:
            billing = self.provider.create_billing({
                "frequency": "ONE_TIME" if annual else "MULTIPLE_PAYMENTS",
                "methods": ["PIX", "CARD"],
                "products": [{
                    "externalId": external_id,
                    "name": f"{plan.name} - {'Annual' if annual else 'Monthly'}",
                    "description": (
                        f"Annual {plan.name} subscription with 20% discount" if annual
                        else f"Monthly {plan.name} subscription"
                    ),
                    "quantity": 1,
                    "price": amount_cents,
                }],
                "returnUrl": settings.BILLING_RETURN_URL,
                "completionUrl": settings.billing_completion_url(checkout_id),
                "customerId": customer_id,
                "externalId": external_id,
                "metadata": {
                    "ownerUserId": subscription.owner_user_id,
                    "organizationId": organization_id,
                    "checkoutId": checkout_id,
                    "targetPlanCode": plan_code.value,
                    "billingCycle": cycle.value,
                    "billingPeriodDays": period_days,
                },
            })

            if not is_trusted_checkout_url(billing.url, settings.allowed_checkout_hosts):
                raise BillingIntegrityError("Checkout URL returned by the provider is not trusted.")

            mapped_status = map_billing_status(billing.status).value
            checkout.provider_billing_id = billing.id
            checkout.provider_billing_url = billing.url
            checkout.status = mapped_status
            checkout.updated_at = now
            subscription.pending_plan_code = plan_code.value
            subscription.updated_at = now
            invoice = BillingInvoice(
                owner_user_id=subscription.owner_user_id,
                subscription_id=subscription.id,
                checkout_session_id=checkout_id,
                provider_billing_id=billing.id,
                status=mapped_status,
                amount_cents=amount_cents,
                currency=DEFAULT_CURRENCY,
                billing_url=billing.url,
                created_at=now,
                updated_at=now,
            )
            self.session.add(checkout)
            self.session.add(subscription)
            self.session.add(invoice)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            self._compensate_failed_checkout(checkout_id, now)
            if isinstance(e, PaymentProviderTimeoutError):
                logger.warning(f"⏱️ Checkout {checkout_id} marked failed after provider timeout")
            else:
                logger.error(f"❌ Checkout {checkout_id} marked failed: {e}")
            raise

        logger.info(f"💳 Checkout {checkout_id} created for organization {organization_id} ({plan_code.value})")
        return {"checkout_url": billing.url, "checkout_id": checkout_id}

    def _compensate_failed_checkout(self, checkout_id: str, now: datetime) -> None:
        checkout = self.session.get(BillingCheckoutSession, checkout_id)
        if checkout is None or checkout.status != CheckoutStatus.PENDING:
            return
        checkout.status = CheckoutStatus.FAILED.value
        checkout.updated_at = now
        self.session.add(checkout)
        self._commit()

    # ============================================================
    # ⏳ Staleness
    # ============================================================
    def fail_stale_checkout(self, checkout: BillingCheckoutSession, now: Optional[datetime] = None) -> bool:
        """Force a PENDING checkout to FAILED and clear the pending plan it set."""
        now = now or datetime.utcnow()
        locked = self.session.exec(
            select(BillingCheckoutSession).where(BillingCheckoutSession.id == checkout.id).with_for_update()
        ).first()
        if locked is None or locked.status != CheckoutStatus.PENDING:
            self.session.rollback()
            return False

        locked.status = CheckoutStatus.FAILED.value
        locked.updated_at = now
        self.session.add(locked)

        subscription = self.session.get(OwnerSubscription, locked.subscription_id)
        if subscription and subscription.pending_plan_code == locked.target_plan_code:
            subscription.pending_plan_code = None
            subscription.updated_at = now
            self.session.add(subscription)
        self._commit()
        logger.info(f"⏳ Stale checkout {locked.id} marked failed")
        return True

    def sweep_stale_checkouts(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=settings.checkout_pending_timeout_minutes)
        stale = self.session.exec(
            select(BillingCheckoutSession).where(
                BillingCheckoutSession.status == CheckoutStatus.PENDING.value,
                BillingCheckoutSession.created_at <= cutoff,
            )
        ).all()
        failed = sum(1 for checkout in stale if self.fail_stale_checkout(checkout, now))
        if failed:
            logger.info(f"🧹 Swept {failed} stale checkout(s)")
        return failed

    # ============================================================
    # 🔄 Reconciliation
    # ============================================================
    def _find_billing(self, checkout: BillingCheckoutSession) -> Optional[AbacateBilling]:
        billings = self.provider.list_billings()
        if checkout.provider_billing_id:
            for billing in billings:
                if billing.id == checkout.provider_billing_id:
                    return billing
        for billing in billings:
            if checkout.provider_external_id in billing.product_external_ids():
                return billing
        return None

    def reconcile_checkout(self, organization_id: int, checkout_id: str, now: Optional[datetime] = None) -> bool:
        """Poll the provider for the checkout. Returns ``True`` when state changed."""
        if not self.provider_configured:
            return False

        checkout = self.session.exec(
            select(BillingCheckoutSession).where(
                BillingCheckoutSession.id == checkout_id,
                BillingCheckoutSession.organization_id == organization_id,
            )
        ).first()
        if checkout is None:
            return False

        billing = self._find_billing(checkout)
        if billing is None:
            return False

        trusted_url = sanitize_trusted_url(billing.url, settings.allowed_checkout_hosts)
        if not trusted_url:
            raise BillingIntegrityError("Billing URL returned by the provider is not trusted.")

        outcome = billing_status_to_outcome(billing.status)
        if outcome is None:
            # Never move a finalized checkout back to PENDING
            if is_checkout_final(checkout.status):
                return False
            checkout.status = map_billing_status(billing.status).value
            checkout.provider_billing_id = billing.id
            checkout.provider_billing_url = trusted_url
            checkout.updated_at = now or datetime.utcnow()
            self.session.add(checkout)
            self._commit()
            return False

        synthetic_payload = {
            "id": f"reconcile_{checkout.id}_{billing.id}",
            "event": RECONCILE_EVENT_NAME,
            "data": {
                "billing": {
                    "id": billing.id,
                    "status": billing.status,
                    "url": trusted_url,
                    "amount": billing.amount,
                    "paidAmount": billing.paid_amount,
                    "currency": billing.currency,
                    "products": [
                        {"externalId": p.external_id, "quantity": p.quantity, "price": p.price}
                        for p in billing.products
                    ],
                },
                "payment": {
                    "amount": billing.paid_amount if billing.paid_amount is not None else billing.amount,
                    "currency": billing.currency,
                },
            },
        }
        return self.processor.apply_outcome(checkout.id, synthetic_payload, outcome, source="reconcile", now=now)

    # ============================================================
    # 📄 Billing page
    # ============================================================
    def _safe_reconcile(self, organization_id: int, checkout_id: str, now: datetime) -> None:
        try:
            self.reconcile_checkout(organization_id, checkout_id, now)
        except PaymentProviderTimeoutError:
            logger.warning(f"⏱️ Reconcile of checkout {checkout_id} timed out; retrying on next read")
        except BillingError as e:
            logger.error(f"❌ Failed to reconcile checkout {checkout_id}: {e}")

    def get_checkout(self, organization_id: int, checkout_id: str) -> Optional[BillingCheckoutSession]:
        return self.session.exec(
            select(BillingCheckoutSession).where(
                BillingCheckoutSession.id == checkout_id,
                BillingCheckoutSession.organization_id == organization_id,
            )
        ).first()

    def read_checkout(self, organization_id: int, checkout_id: str,
                      now: Optional[datetime] = None) -> Optional[BillingCheckoutSession]:
        """Fetch a checkout, applying lazy staleness first."""
        now = now or datetime.utcnow()
        checkout = self.get_checkout(organization_id, checkout_id)
        if checkout and checkout.status == CheckoutStatus.PENDING and is_stale_pending_checkout(checkout.created_at, now):
            self.fail_stale_checkout(checkout, now)
            checkout = self.get_checkout(organization_id, checkout_id)
        return checkout

    def _heal_paid_checkout(self, checkout: BillingCheckoutSession, now: datetime) -> None:
        paid_invoice = self.session.exec(
            select(BillingInvoice)
            .where(
                BillingInvoice.checkout_session_id == checkout.id,
                BillingInvoice.status == CheckoutStatus.PAID.value,
            )
            .order_by(BillingInvoice.created_at.desc())
        ).first()
        if paid_invoice and can_transition_checkout(checkout.status, CheckoutStatus.PAID):
            checkout.status = CheckoutStatus.PAID.value
            checkout.paid_at = paid_invoice.paid_at or checkout.created_at
            checkout.updated_at = now
            self.session.add(checkout)
            self._commit()

    def get_billing_page_data(self, organization_id: int, checkout_id: Optional[str] = None,
                              now: Optional[datetime] = None) -> BillingPageData:
        now = now or datetime.utcnow()
        checkout_id = (checkout_id or "").strip() or None

        if checkout_id:
            self._safe_reconcile(organization_id, checkout_id, now)
            selected = self.get_checkout(organization_id, checkout_id)
        else:
            selected = self.session.exec(
                select(BillingCheckoutSession)
                .where(
                    BillingCheckoutSession.organization_id == organization_id,
                    BillingCheckoutSession.status == CheckoutStatus.PENDING.value,
                )
                .order_by(BillingCheckoutSession.created_at.desc())
            ).first()
            if selected and is_stale_pending_checkout(selected.created_at, now):
                self.fail_stale_checkout(selected, now)
                selected = None
            if selected:
                self._safe_reconcile(organization_id, selected.id, now)
                selected = self.get_checkout(organization_id, selected.id)

        if selected and selected.status == CheckoutStatus.PENDING:
            self._heal_paid_checkout(selected, now)
        if selected and selected.status == CheckoutStatus.PENDING and is_stale_pending_checkout(selected.created_at, now):
            self.fail_stale_checkout(selected, now)
            selected = self.get_checkout(organization_id, selected.id)

        entitlements = self.entitlements.get_owner_entitlements(organization_id, now=now)
        checkout_state = None
        if selected:
            checkout_state = CheckoutState(
                id=selected.id,
                status=selected.status,
                target_plan_code=selected.target_plan_code,
                created_at=selected.created_at,
                is_processing=(
                    selected.status == CheckoutStatus.PENDING
                    and entitlements.subscription.pending_plan_code == selected.target_plan_code
                ),
            )
        return BillingPageData(entitlements=entitlements, plans=self.catalog.all(), checkout_state=checkout_state)

    # ============================================================
    # 🧾 Invoices
    # ============================================================
    def list_invoices(self, organization_id: int, limit: int = INVOICE_PAGE_SIZE) -> List[BillingInvoice]:
        subscription = self.entitlements.ensure_subscription(organization_id)
        return list(self.session.exec(
            select(BillingInvoice)
            .where(BillingInvoice.subscription_id == subscription.id)
            .order_by(BillingInvoice.created_at.desc())
            .limit(limit)
        ).all())

    def sync_invoices_from_provider(self, organization_id: int, now: Optional[datetime] = None) -> int:
        """Upsert invoices for this organization's checkouts from the provider billing list."""
        if not self.provider_configured:
            return 0
        now = now or datetime.utcnow()
        subscription = self.entitlements.ensure_subscription(organization_id, now=now)
        checkouts = self.session.exec(
            select(BillingCheckoutSession)
            .where(BillingCheckoutSession.organization_id == organization_id)
            .order_by(BillingCheckoutSession.created_at.desc())
            .limit(INVOICE_SYNC_CHECKOUT_LIMIT)
        ).all()
        by_external_id = {c.provider_external_id: c for c in checkouts}
        by_billing_id = {c.provider_billing_id: c for c in checkouts if c.provider_billing_id}

        synced = 0
        for billing in self.provider.list_billings():
            checkout = next(
                (by_external_id[eid] for eid in billing.product_external_ids() if eid in by_external_id),
                None,
            ) or by_billing_id.get(billing.id)
            if checkout is None:
                continue
            self._sync_invoice(subscription, checkout, billing, now)
            synced += 1

        self._commit()
        if synced:
            logger.info(f"🧾 Synced {synced} invoice(s) for organization {organization_id}")
        return synced

    def _sync_invoice(self, subscription: OwnerSubscription, checkout: BillingCheckoutSession,
                      billing: AbacateBilling, now: datetime) -> None:
        incoming = map_billing_status(billing.status).value
        billing_url = sanitize_trusted_url(billing.url, settings.allowed_checkout_hosts)
        invoice = self.session.exec(
            select(BillingInvoice).where(BillingInvoice.provider_billing_id == billing.id)
        ).first()

        if invoice is None:
            invoice = BillingInvoice(
                owner_user_id=subscription.owner_user_id,
                subscription_id=subscription.id,
                provider_billing_id=billing.id,
                amount_cents=checkout.amount_cents,
                currency=checkout.currency,
                status=incoming,
                created_at=now,
            )
        elif not is_checkout_final(invoice.status) or can_transition_checkout(invoice.status, incoming):
            invoice.status = incoming

        invoice.checkout_session_id = checkout.id
        invoice.billing_url = billing_url or invoice.billing_url
        invoice.updated_at = now
        self.session.add(invoice)
