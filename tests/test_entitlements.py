"""
Tests for the entitlement resolver and plan-limit guards:
- Lazy subscription creation starts the single 7-day trial
- Free plan seat limit (1/1) blocks invitations until an upgrade is paid
- Grace period keeps the paid plan; an expired trial blocks the organization
- Lifecycle mutations: billing profile, trial, cancel, reactivate, downgrade
"""
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlmodel import select

from conftest import NOW, VALID_CNPJ, make_checkout, make_invitation, make_organization, make_subscription, paid_event
from core.exceptions import BillingValidationError, OrganizationBlockedError, OrganizationRestrictedError, PlanLimitError
from models.models import (
    BillingPlanCode,
    CancellationReason,
    OwnerSubscription,
    SubscriptionCancellationFeedback,
    SubscriptionStatus,
    User,
    UserRole,
)
from services.entitlements import EXPIRED_TRIAL_BLOCK_MESSAGE, EntitlementService
from services.plan_catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from services.webhook_processor import WebhookProcessor


def test_first_read_creates_trial_subscription(session):
    org, owner = make_organization(session)
    service = EntitlementService(session)

    entitlements = service.get_owner_entitlements(org.id, now=NOW)

    sub = entitlements.subscription
    assert sub.status == SubscriptionStatus.TRIALING.value
    assert sub.plan_code == "FREE"
    assert sub.trial_plan_code == "STARTER_50"
    assert sub.trial_ends_at == NOW + timedelta(days=7)
    assert sub.trial_used_at == NOW
    assert sub.owner_user_id == owner.id
    assert entitlements.effective_plan_code == BillingPlanCode.STARTER_50


def test_ensure_subscription_is_idempotent(session):
    org, _ = make_organization(session)
    service = EntitlementService(session)
    first = service.ensure_subscription(org.id, now=NOW)
    second = service.ensure_subscription(org.id, now=NOW + timedelta(days=1))
    assert first.id == second.id
    assert len(session.exec(select(OwnerSubscription)).all()) == 1


def test_organization_without_members_cannot_get_subscription(session):
    from models.models import Organization

    org = Organization(name="Empty")
    session.add(org)
    session.commit()
    session.refresh(org)
    with pytest.raises(BillingValidationError):
        EntitlementService(session).ensure_subscription(org.id, now=NOW)


def test_owner_is_resolved_by_role_not_insertion_order(session):
    org, owner = make_organization(session)
    early_member = User(full_name="Early", email="early@acme.com", role=UserRole.MEMBER.value,
                        organization_id=org.id, created_at=NOW - timedelta(days=365))
    session.add(early_member)
    session.commit()
    sub = EntitlementService(session).ensure_subscription(org.id, now=NOW)
    assert sub.owner_user_id == owner.id


def test_free_plan_seat_limit_then_upgrade(session, notifier):
    """1/1 seats on FREE rejects the invitation; after paying STARTER_50 it passes."""
    org, owner = make_organization(session)
    sub = make_subscription(session, org, owner)
    service = EntitlementService(session)

    with pytest.raises(PlanLimitError) as exc_info:
        service.assert_organization_can_create_invitation(org.id, "new@acme.com", now=NOW)
    assert str(exc_info.value) == "Plan limit reached for users (1/1). Upgrade to continue."
    assert exc_info.value.current == 1
    assert exc_info.value.maximum == 1

    checkout = make_checkout(session, sub)
    WebhookProcessor(session, notifier=notifier).process_webhook(paid_event(), now=NOW)
    session.refresh(checkout)
    assert checkout.status == "paid"

    entitlements = service.get_owner_entitlements(org.id, now=NOW + timedelta(minutes=1))
    assert entitlements.effective_plan_code == BillingPlanCode.STARTER_50
    service.assert_organization_can_create_invitation(org.id, "new@acme.com", now=NOW + timedelta(minutes=1))


def test_pending_invitation_reserves_a_seat(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="STARTER_50",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    make_invitation(session, org, "pending@acme.com")
    make_invitation(session, org, "old@acme.com", expires_at=NOW - timedelta(days=1))

    usage = EntitlementService(session).get_owner_entitlements(org.id, now=NOW).usage
    assert usage.users == 1
    assert usage.pending_invitations == 1
    assert usage.reserved_seats == 2


def test_resending_pending_invitation_needs_no_new_seat(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner)
    make_invitation(session, org, "Pending@Acme.com")
    # 2 reserved seats on a 1-seat plan, but re-sending takes no extra seat
    EntitlementService(session).assert_organization_can_create_invitation(org.id, "pending@acme.com", now=NOW)


def test_accepting_seat_holding_invitation_is_allowed(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="STARTER_50",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    invitation = make_invitation(session, org, "guest@acme.com")
    EntitlementService(session).assert_organization_can_accept_invitation(org.id, invitation.id, now=NOW)


def test_restricted_organization_cannot_grow(session):
    org, owner = make_organization(session, members=2)
    make_subscription(session, org, owner)
    service = EntitlementService(session)

    entitlements = service.get_owner_entitlements(org.id, now=NOW)
    assert entitlements.restriction.is_restricted
    assert entitlements.restriction.exceeded_users == 2

    with pytest.raises(OrganizationRestrictedError):
        service.assert_organization_can_create_project(org.id, now=NOW)
    with pytest.raises(OrganizationRestrictedError):
        service.assert_organization_can_consume_monthly_usage(org.id, now=NOW)


def test_grace_period_keeps_paid_plan(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="past_due", plan_code="PRO_100",
                      current_period_start=NOW - timedelta(days=20),
                      current_period_end=NOW + timedelta(days=8))
    entitlements = EntitlementService(session).get_owner_entitlements(org.id, now=NOW)
    assert entitlements.effective_plan_code == BillingPlanCode.PRO_100
    assert entitlements.dunning.in_grace_period
    assert entitlements.dunning.days_until_downgrade == 8
    assert entitlements.dunning.reminder_checkpoint_day == 14


def test_exhausted_grace_lapses_on_read(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="past_due", plan_code="PRO_100",
                      current_period_start=NOW - timedelta(days=28),
                      current_period_end=NOW - timedelta(seconds=1))
    entitlements = EntitlementService(session).get_owner_entitlements(org.id, now=NOW)
    assert entitlements.subscription.status == SubscriptionStatus.EXPIRED.value
    assert entitlements.effective_plan_code == BillingPlanCode.FREE


def test_expired_trial_blocks_organization(session):
    org, _ = make_organization(session)
    service = EntitlementService(session)
    service.ensure_subscription(org.id, now=NOW)
    later = NOW + timedelta(days=8)

    assert service.get_organization_block_message(org.id, now=later) == EXPIRED_TRIAL_BLOCK_MESSAGE
    with pytest.raises(OrganizationBlockedError):
        service.assert_organization_not_blocked(org.id, now=later)
    with pytest.raises(OrganizationBlockedError):
        service.assert_organization_can_create_project(org.id, now=later)

    sub = service.get_subscription(org.id)
    assert sub.status == SubscriptionStatus.EXPIRED.value


def test_trial_cannot_be_started_twice(session):
    org, _ = make_organization(session)
    service = EntitlementService(session)
    service.ensure_subscription(org.id, now=NOW)
    with pytest.raises(BillingValidationError):
        service.start_trial(org.id, "PRO_100", now=NOW + timedelta(days=10))


def test_start_trial_on_fresh_free_subscription(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner)
    sub = EntitlementService(session).start_trial(org.id, "PRO_100", now=NOW)
    assert sub.status == SubscriptionStatus.TRIALING.value
    assert sub.trial_plan_code == "PRO_100"
    assert sub.trial_used_at == NOW


def test_monthly_usage_counter(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner)
    service = EntitlementService(session)
    service.consume_monthly_usage(org.id, 3, now=NOW)
    service.consume_monthly_usage(org.id, 2, now=NOW + timedelta(days=1))
    assert service.get_owner_entitlements(org.id, now=NOW + timedelta(days=1)).usage.monthly_usage == 5
    # A new month starts from zero
    assert service.get_owner_entitlements(org.id, now=NOW + timedelta(days=30)).usage.monthly_usage == 0
    with pytest.raises(BillingValidationError):
        service.consume_monthly_usage(org.id, 0, now=NOW)


def test_organization_limit_uses_best_owned_plan(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner)
    # Default catalog has no organization cap
    EntitlementService(session).assert_owner_can_create_organization(owner.id, now=NOW)

    capped = PlanCatalog([
        replace(plan, limits=replace(plan.limits, max_organizations=1))
        for plan in DEFAULT_PLAN_CATALOG.all()
    ])
    with pytest.raises(PlanLimitError) as exc_info:
        EntitlementService(session, capped).assert_owner_can_create_organization(owner.id, now=NOW)
    assert exc_info.value.resource == "organizations"


def test_billing_profile_is_validated_and_normalized(session):
    org, _ = make_organization(session)
    service = EntitlementService(session)
    sub = service.update_billing_profile(org.id, " Acme LTDA ", "(11) 98765-4321", "11.222.333/0001-81", now=NOW)
    assert sub.billing_name == "Acme LTDA"
    assert sub.billing_cellphone == "11987654321"
    assert sub.billing_tax_id == VALID_CNPJ

    with pytest.raises(BillingValidationError, match="valid CPF or CNPJ"):
        service.update_billing_profile(org.id, "Acme", "11987654321", "11111111111", now=NOW)


def test_cancel_with_other_reason_requires_detail(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="STARTER_50",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    service = EntitlementService(session)
    with pytest.raises(BillingValidationError):
        service.cancel_subscription(org.id, reason=CancellationReason.OTHER, reason_detail="meh", now=NOW)


def test_cancel_at_period_end_then_reactivate(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="STARTER_50",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    service = EntitlementService(session)

    sub = service.cancel_subscription(org.id, reason=CancellationReason.TOO_EXPENSIVE, now=NOW)
    assert sub.status == SubscriptionStatus.ACTIVE.value
    assert sub.cancel_at_period_end
    feedback = session.exec(select(SubscriptionCancellationFeedback)).all()
    assert [f.reason_code for f in feedback] == ["TOO_EXPENSIVE"]

    sub = service.reactivate_subscription(org.id, now=NOW + timedelta(days=1))
    assert not sub.cancel_at_period_end
    assert sub.canceled_at is None


def test_immediate_cancel_drops_to_free(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="STARTER_50",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    service = EntitlementService(session)
    sub = service.cancel_subscription(org.id, immediate=True, now=NOW)
    assert sub.status == SubscriptionStatus.CANCELED.value
    assert service.get_owner_entitlements(org.id, now=NOW).effective_plan_code == BillingPlanCode.FREE
    with pytest.raises(BillingValidationError):
        service.reactivate_subscription(org.id, now=NOW)


def test_free_downgrade(session):
    org, owner = make_organization(session)
    make_subscription(session, org, owner, status="active", plan_code="PRO_100", pending_plan_code="SCALE_400",
                      current_period_start=NOW, current_period_end=NOW + timedelta(days=30))
    sub = EntitlementService(session).apply_free_downgrade(org.id, now=NOW)
    assert sub.status == SubscriptionStatus.FREE.value
    assert sub.plan_code == "FREE"
    assert sub.pending_plan_code is None
    assert sub.current_period_end is None
