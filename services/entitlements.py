# services/entitlements.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.exceptions import (
    BillingValidationError,
    OrganizationBlockedError,
    OrganizationRestrictedError,
    PlanLimitError,
)
from models.models import (
    BillingPlanCode,
    CancellationReason,
    Invitation,
    InvitationStatus,
    OwnerSubscription,
    SubscriptionCancellationFeedback,
    SubscriptionStatus,
    User,
    UserRole,
)
from schemas.billing_schema import BillingProfileUpdate
from services.dunning import DunningState, dunning_state_for
from services.plan_catalog import (
    DEFAULT_PLAN_CATALOG,
    DEFAULT_TRIAL_DAYS,
    PlanCatalog,
    PlanDefinition,
    is_paid_plan,
    to_plan_code,
)
from services.transitions import apply_change, resolve_lapse_change
from services.usage import (
    DEFAULT_USAGE_METRIC_KEY,
    UsageSnapshot,
    find_pending_invitation,
    get_usage_snapshot,
    increment_monthly_usage,
)

logger = logging.getLogger(__name__)

DEFAULT_NEW_ORGANIZATION_TRIAL_PLAN_CODE = BillingPlanCode.STARTER_50
EXPIRED_TRIAL_BLOCK_MESSAGE = (
    f"The free {DEFAULT_TRIAL_DAYS}-day trial has ended. "
    "This organization is blocked until a paid plan is purchased."
)


# ============================================================
# 📦 Resolved state
# ============================================================
@dataclass(frozen=True)
class RestrictionState:
    is_restricted: bool = False
    exceeded_organizations: int = 0
    exceeded_users: int = 0


@dataclass
class OwnerEntitlements:
    organization_id: int
    owner_user_id: int
    subscription: OwnerSubscription
    effective_plan_code: BillingPlanCode
    usage: UsageSnapshot
    dunning: DunningState
    restriction: RestrictionState


# ============================================================
# 🧮 Pure resolution helpers
# ============================================================
def resolve_effective_plan_code(subscription, now: datetime) -> BillingPlanCode:
    """Plan that grants features right now, honoring trial and grace windows."""
    status = subscription.status
    if (
        status == SubscriptionStatus.TRIALING
        and subscription.trial_plan_code
        and subscription.trial_ends_at is not None
        and subscription.trial_ends_at > now
    ):
        return to_plan_code(subscription.trial_plan_code)

    period_open = subscription.current_period_end is not None and subscription.current_period_end > now
    if status == SubscriptionStatus.ACTIVE and period_open:
        return to_plan_code(subscription.plan_code)

    if status == SubscriptionStatus.PAST_DUE and period_open and is_paid_plan(subscription.plan_code):
        return to_plan_code(subscription.plan_code)

    return BillingPlanCode.FREE


def has_paid_access(subscription, now: datetime) -> bool:
    if not is_paid_plan(subscription.plan_code):
        return False
    end = subscription.current_period_end
    if subscription.status == SubscriptionStatus.ACTIVE:
        return end is None or end > now
    if subscription.status == SubscriptionStatus.PAST_DUE:
        return end is not None and end > now
    return False


def resolve_block_message(subscription, now: datetime) -> Optional[str]:
    """Blocked once a used trial is over and nothing paid replaced it."""
    if subscription.trial_used_at is None or subscription.trial_ends_at is None:
        return None
    if subscription.trial_ends_at > now:
        return None
    return None if has_paid_access(subscription, now) else EXPIRED_TRIAL_BLOCK_MESSAGE


def build_restriction_state(plan: PlanDefinition, usage: UsageSnapshot) -> RestrictionState:
    max_users = plan.limits.max_users
    exceeded_users = 0 if max_users is None else max(0, usage.reserved_seats - max_users)
    return RestrictionState(is_restricted=exceeded_users > 0, exceeded_users=exceeded_users)


def limit_error_message(resource: str, current: int, maximum: int) -> str:
    return f"Plan limit reached for {resource} ({current}/{maximum}). Upgrade to continue."


def restriction_error_message(restriction: RestrictionState) -> str:
    detail = "."
    if restriction.exceeded_users > 0:
        detail = f" ({restriction.exceeded_users} user(s) over the limit)."
    return (
        f"Account is restricted on the current plan{detail} "
        "Upgrade or remove the excess to continue."
    )


def resolve_primary_owner_user_id(session: Session, organization_id: int) -> Optional[int]:
    """Earliest member whose role contains ``owner``, else the earliest member."""
    owner = session.exec(
        select(User)
        .where(User.organization_id == organization_id, User.role.contains(UserRole.OWNER.value))
        .order_by(User.created_at, User.id)
    ).first()
    if owner:
        return owner.id

    fallback = session.exec(
        select(User).where(User.organization_id == organization_id).order_by(User.created_at, User.id)
    ).first()
    return fallback.id if fallback else None


# ============================================================
# 🔐 Entitlement service
# ============================================================
class EntitlementService:
    """Subscription lifecycle and plan-limit guards for one database session."""

    def __init__(self, session: Session, catalog: PlanCatalog = DEFAULT_PLAN_CATALOG):
        self.session = session
        self.catalog = catalog

    # -----------------------
    # Subscription row
    # -----------------------
    def get_subscription(self, organization_id: int) -> Optional[OwnerSubscription]:
        return self.session.exec(
            select(OwnerSubscription).where(OwnerSubscription.organization_id == organization_id)
        ).first()

    def ensure_subscription(self, organization_id: int, owner_user_id_hint: Optional[int] = None,
                            now: Optional[datetime] = None) -> OwnerSubscription:
        """Lazily create the organization's single subscription row (one trial, never renewed)."""
        now = now or datetime.utcnow()
        owner_user_id = resolve_primary_owner_user_id(self.session, organization_id) or owner_user_id_hint

        existing = self.get_subscription(organization_id)
        if existing:
            if owner_user_id and existing.owner_user_id != owner_user_id:
                existing.owner_user_id = owner_user_id
                existing.updated_at = now
                self.session.add(existing)
                self.session.commit()
                self.session.refresh(existing)
            return existing

        if not owner_user_id:
            raise BillingValidationError("Organization has no owner to configure a subscription.")

        owner = self.session.get(User, owner_user_id)
        subscription = OwnerSubscription(
            organization_id=organization_id,
            owner_user_id=owner_user_id,
            status=SubscriptionStatus.TRIALING.value,
            plan_code=BillingPlanCode.FREE.value,
            trial_plan_code=DEFAULT_NEW_ORGANIZATION_TRIAL_PLAN_CODE.value,
            trial_started_at=now,
            trial_ends_at=now + timedelta(days=DEFAULT_TRIAL_DAYS),
            trial_used_at=now,
            billing_name=(owner.full_name.strip() or None) if owner and owner.full_name else None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(subscription)
        try:
            self.session.commit()
        except IntegrityError:
            # A concurrent request created it first; use theirs
            self.session.rollback()
            existing = self.get_subscription(organization_id)
            if existing is None:
                raise
            return existing

        self.session.refresh(subscription)
        logger.info(f"✅ Created trial subscription for organization {organization_id}")
        return subscription

    def sync_lapsed(self, subscription: OwnerSubscription, now: Optional[datetime] = None) -> OwnerSubscription:
        """Persist a trial/period/grace lapse if one is due. Idempotent."""
        now = now or datetime.utcnow()
        change = resolve_lapse_change(subscription, now)
        if change is None or not apply_change(subscription, change, now):
            return subscription

        self.session.add(subscription)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(subscription)
        logger.info(
            f"🔄 Subscription {subscription.id} lapsed via {change.rule} -> {subscription.status}"
        )
        return subscription

    # -----------------------
    # Entitlements
    # -----------------------
    def get_owner_entitlements(self, organization_id: int, metric_key: str = DEFAULT_USAGE_METRIC_KEY,
                               now: Optional[datetime] = None) -> OwnerEntitlements:
        now = now or datetime.utcnow()
        subscription = self.sync_lapsed(self.ensure_subscription(organization_id, now=now), now)

        effective_plan_code = resolve_effective_plan_code(subscription, now)
        usage = get_usage_snapshot(self.session, organization_id, metric_key, now)
        return OwnerEntitlements(
            organization_id=organization_id,
            owner_user_id=subscription.owner_user_id,
            subscription=subscription,
            effective_plan_code=effective_plan_code,
            usage=usage,
            dunning=dunning_state_for(subscription, now),
            restriction=build_restriction_state(self.catalog.get(effective_plan_code), usage),
        )

    def get_organization_block_message(self, organization_id: int, now: Optional[datetime] = None) -> Optional[str]:
        now = now or datetime.utcnow()
        entitlements = self.get_owner_entitlements(organization_id, now=now)
        return resolve_block_message(entitlements.subscription, now)

    # -----------------------
    # Guards
    # -----------------------
    def _assert_not_blocked(self, entitlements: OwnerEntitlements, now: datetime) -> None:
        message = resolve_block_message(entitlements.subscription, now)
        if message:
            raise OrganizationBlockedError(message)

    def _assert_not_restricted(self, entitlements: OwnerEntitlements) -> None:
        if entitlements.restriction.is_restricted:
            raise OrganizationRestrictedError(
                restriction_error_message(entitlements.restriction),
                resource="users",
                current=entitlements.usage.reserved_seats,
                maximum=self.catalog.get(entitlements.effective_plan_code).limits.max_users,
            )

    def _assert_within(self, resource: str, current: int, additional: int, maximum: Optional[int],
                       reported: Optional[int] = None) -> None:
        if maximum is None:
            return
        if current + additional > maximum:
            shown = current if reported is None else reported
            raise PlanLimitError(limit_error_message(resource, shown, maximum),
                                 resource=resource, current=shown, maximum=maximum)

    def assert_organization_not_blocked(self, organization_id: int, now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        self._assert_not_blocked(self.get_owner_entitlements(organization_id, now=now), now)

    def assert_organization_can_create_invitation(self, organization_id: int, email: str,
                                                  now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        if find_pending_invitation(self.session, organization_id, email, now):
            return  # re-sending an existing invitation takes no new seat

        entitlements = self.get_owner_entitlements(organization_id, now=now)
        self._assert_not_blocked(entitlements, now)
        plan = self.catalog.get(entitlements.effective_plan_code)
        self._assert_within("users", entitlements.usage.reserved_seats, 1, plan.limits.max_users)

    def assert_organization_can_add_member(self, organization_id: int, target_user_id: Optional[int] = None,
                                           now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        entitlements = self.get_owner_entitlements(organization_id, now=now)
        self._assert_not_blocked(entitlements, now)
        plan = self.catalog.get(entitlements.effective_plan_code)

        additional = 1
        if target_user_id is not None:
            target = self.session.get(User, target_user_id)
            if target and target.email and find_pending_invitation(self.session, organization_id, target.email, now):
                additional = 0
        self._assert_within("users", entitlements.usage.reserved_seats, additional, plan.limits.max_users)

    def assert_organization_can_accept_invitation(self, organization_id: int, invitation_id: int,
                                                  now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        entitlements = self.get_owner_entitlements(organization_id, now=now)
        self._assert_not_blocked(entitlements, now)
        plan = self.catalog.get(entitlements.effective_plan_code)

        invitation = self.session.get(Invitation, invitation_id)
        holds_seat = (
            invitation is not None
            and invitation.organization_id == organization_id
            and invitation.status == InvitationStatus.PENDING
            and not invitation.is_expired(now)
        )
        reserved = entitlements.usage.reserved_seats
        projected = reserved if holds_seat else reserved + 1
        self._assert_within("users", projected, 0, plan.limits.max_users)

    def assert_organization_can_create_project(self, organization_id: int, increment: int = 1,
                                               now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        entitlements = self.get_owner_entitlements(organization_id, now=now)
        self._assert_not_blocked(entitlements, now)
        self._assert_not_restricted(entitlements)
        plan = self.catalog.get(entitlements.effective_plan_code)
        self._assert_within("projects", entitlements.usage.projects, increment, plan.limits.max_projects)

    def assert_organization_can_consume_monthly_usage(self, organization_id: int, increment: int = 1,
                                                      metric_key: str = DEFAULT_USAGE_METRIC_KEY,
                                                      now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        entitlements = self.get_owner_entitlements(organization_id, metric_key, now=now)
        self._assert_not_blocked(entitlements, now)
        self._assert_not_restricted(entitlements)
        plan = self.catalog.get(entitlements.effective_plan_code)
        self._assert_within("monthly usage", entitlements.usage.monthly_usage, increment,
                            plan.limits.max_monthly_usage)

    def assert_owner_can_create_organization(self, owner_user_id: int, now: Optional[datetime] = None) -> None:
        now = now or datetime.utcnow()
        owner = self.session.get(User, owner_user_id)
        if owner is None:
            raise BillingValidationError("Invalid user for organization creation.")

        owned_ids = self.session.exec(
            select(User.id).where(
                func.lower(User.email) == owner.email.lower(),
                User.role.contains(UserRole.OWNER.value),
            )
        ).all()
        subscriptions = []
        if owned_ids:
            subscriptions = self.session.exec(
                select(OwnerSubscription).where(OwnerSubscription.owner_user_id.in_(owned_ids))
            ).all()

        plan_codes = [resolve_effective_plan_code(sub, now) for sub in subscriptions] or [BillingPlanCode.FREE]
        limits = [self.catalog.get(code).limits.max_organizations for code in plan_codes]
        if any(limit is None for limit in limits):
            return
        self._assert_within("organizations", len(owned_ids), 1, max(limits))

    # -----------------------
    # Metered usage
    # -----------------------
    def consume_monthly_usage(self, organization_id: int, increment: int,
                              metric_key: str = DEFAULT_USAGE_METRIC_KEY, now: Optional[datetime] = None):
        if increment <= 0:
            raise BillingValidationError("Usage increment must be positive.")
        subscription = self.ensure_subscription(organization_id, now=now)
        return increment_monthly_usage(self.session, subscription.owner_user_id, organization_id,
                                       increment, metric_key, now)

    # -----------------------
    # Lifecycle mutations
    # -----------------------
    def _save(self, subscription: OwnerSubscription, now: datetime) -> OwnerSubscription:
        subscription.updated_at = now
        self.session.add(subscription)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(subscription)
        return subscription

    def update_billing_profile(self, organization_id: int, billing_name: str, billing_cellphone: str,
                               billing_tax_id: str, now: Optional[datetime] = None) -> OwnerSubscription:
        now = now or datetime.utcnow()
        try:
            profile = BillingProfileUpdate(
                billing_name=billing_name,
                billing_cellphone=billing_cellphone,
                billing_tax_id=billing_tax_id,
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            raise BillingValidationError(str(first.get("msg", "Invalid billing profile."))) from exc

        subscription = self.ensure_subscription(organization_id, now=now)
        subscription.billing_name = profile.billing_name
        subscription.billing_cellphone = profile.billing_cellphone
        subscription.billing_tax_id = profile.billing_tax_id
        return self._save(subscription, now)

    def start_trial(self, organization_id: int, trial_plan_code: str,
                    now: Optional[datetime] = None) -> OwnerSubscription:
        now = now or datetime.utcnow()
        if not is_paid_plan(trial_plan_code):
            raise BillingValidationError("Trials are only available for paid plans.")

        subscription = self.ensure_subscription(organization_id, now=now)
        if (
            subscription.status == SubscriptionStatus.TRIALING
            and subscription.trial_ends_at is not None
            and subscription.trial_ends_at > now
        ):
            raise BillingValidationError("A trial is already active for this organization.")
        if subscription.trial_used_at is not None:
            raise BillingValidationError("The trial was already used by this organization.")

        subscription.status = SubscriptionStatus.TRIALING.value
        subscription.trial_plan_code = to_plan_code(trial_plan_code).value
        subscription.trial_started_at = now
        subscription.trial_ends_at = now + timedelta(days=DEFAULT_TRIAL_DAYS)
        subscription.trial_used_at = now
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        return self._save(subscription, now)

    def cancel_subscription(self, organization_id: int, immediate: bool = False,
                            reason: Optional[CancellationReason] = None, reason_detail: Optional[str] = None,
                            now: Optional[datetime] = None) -> OwnerSubscription:
        now = now or datetime.utcnow()
        detail = (reason_detail or "").strip() or None
        if reason == CancellationReason.OTHER and (detail is None or len(detail) < 5):
            raise BillingValidationError("Describe the cancellation reason (at least 5 characters).")

        subscription = self.ensure_subscription(organization_id, now=now)
        if immediate or subscription.status == SubscriptionStatus.TRIALING:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.plan_code = BillingPlanCode.FREE.value
            subscription.pending_plan_code = None
            subscription.trial_plan_code = None
            subscription.current_period_end = now
        subscription.cancel_at_period_end = True
        subscription.canceled_at = now
        subscription = self._save(subscription, now)
        logger.info(f"🛑 Subscription {subscription.id} canceled (immediate={immediate})")

        if reason is not None:
            self._record_cancellation_feedback(subscription, immediate, reason, detail, now)
        return subscription

    def _record_cancellation_feedback(self, subscription: OwnerSubscription, immediate: bool,
                                      reason: CancellationReason, detail: Optional[str], now: datetime) -> None:
        feedback = SubscriptionCancellationFeedback(
            owner_user_id=subscription.owner_user_id,
            subscription_id=subscription.id,
            immediate=immediate,
            reason_code=CancellationReason(reason).value,
            reason_detail=detail,
            created_at=now,
        )
        self.session.add(feedback)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"❌ Failed to record cancellation feedback: {e}")

    def reactivate_subscription(self, organization_id: int, now: Optional[datetime] = None) -> OwnerSubscription:
        now = now or datetime.utcnow()
        subscription = self.ensure_subscription(organization_id, now=now)
        active = (
            subscription.status == SubscriptionStatus.ACTIVE
            and subscription.current_period_end is not None
            and subscription.current_period_end > now
        )
        trialing = (
            subscription.status == SubscriptionStatus.TRIALING
            and subscription.trial_ends_at is not None
            and subscription.trial_ends_at > now
        )
        if not (active or trialing):
            raise BillingValidationError("There is no active subscription to reactivate. Choose a plan to continue.")

        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        return self._save(subscription, now)

    def apply_free_downgrade(self, organization_id: int, now: Optional[datetime] = None) -> OwnerSubscription:
        now = now or datetime.utcnow()
        subscription = self.ensure_subscription(organization_id, now=now)
        subscription.status = SubscriptionStatus.FREE.value
        subscription.plan_code = BillingPlanCode.FREE.value
        subscription.pending_plan_code = None
        subscription.trial_plan_code = None
        subscription.current_period_start = None
        subscription.current_period_end = None
        subscription.cancel_at_period_end = False
        subscription.canceled_at = now
        return self._save(subscription, now)
