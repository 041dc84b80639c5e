"""Subscription and checkout state-transition tables.

``SUBSCRIPTION_TRANSITIONS`` maps ``(subscription status, checkout outcome)`` to an
ordered tuple of rules. The first rule whose guard accepts the context decides
the change. Read-triggered lapses live in ``LAPSE_RULES`` keyed by status alone.
Rules only compute field updates; persisting them is the caller's job.
"""

from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from models.models import BillingPlanCode, CheckoutStatus, SubscriptionStatus
from services.dunning import DEFAULT_PAST_DUE_GRACE_DAYS, grace_window
from services.plan_catalog import get_billing_period_days, is_paid_plan


# ============================================================
# CHECKOUT STATUS MACHINE
# ============================================================
CHECKOUT_TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    CheckoutStatus.PAID.value,
    CheckoutStatus.FAILED.value,
    CheckoutStatus.EXPIRED.value,
    CheckoutStatus.CANCELED.value,
    CheckoutStatus.CHARGEBACK.value,
})

ALLOWED_CHECKOUT_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    CheckoutStatus.PENDING.value: CHECKOUT_TERMINAL_STATUSES,
    CheckoutStatus.PAID.value: frozenset({CheckoutStatus.CHARGEBACK.value}),
}


def _key(value) -> str:
    return value.value if isinstance(value, Enum) else value


def is_checkout_final(status: str) -> bool:
    return _key(status) in CHECKOUT_TERMINAL_STATUSES


def can_transition_checkout(current: str, outcome: str) -> bool:
    return _key(outcome) in ALLOWED_CHECKOUT_TRANSITIONS.get(_key(current), frozenset())


# ============================================================
# CONTEXT + CHANGE
# ============================================================
@dataclass(frozen=True)
class OutcomeContext:
    """Everything a rule may look at. ``subscription`` is read, never mutated."""

    subscription: object
    outcome: CheckoutStatus
    target_plan_code: str
    billing_cycle: str
    now: datetime
    recurring_paid: bool = False
    superseded: bool = False

    @property
    def has_pending_plan_change(self) -> bool:
        pending = self.subscription.pending_plan_code
        return pending is not None and _key(pending) == _key(self.target_plan_code)


@dataclass(frozen=True)
class SubscriptionChange:
    rule: str
    updates: Mapping[str, object] = field(default_factory=dict)
    opens_grace: bool = False

    @property
    def next_status(self) -> Optional[str]:
        return self.updates.get("status")

    @property
    def is_noop(self) -> bool:
        return not self.updates


Guard = Callable[[OutcomeContext], bool]
Effect = Callable[[OutcomeContext], Dict[str, object]]


@dataclass(frozen=True)
class TransitionRule:
    name: str
    guard: Guard
    effect: Effect
    opens_grace: bool = False

    def apply(self, ctx: OutcomeContext) -> SubscriptionChange:
        return SubscriptionChange(rule=self.name, updates=self.effect(ctx), opens_grace=self.opens_grace)


# ============================================================
# GUARDS
# ============================================================
def always(ctx: OutcomeContext) -> bool:
    return True


def period_ended(ctx: OutcomeContext) -> bool:
    end = ctx.subscription.current_period_end
    return end is not None and end <= ctx.now


def on_paid_plan(ctx: OutcomeContext) -> bool:
    return is_paid_plan(ctx.subscription.plan_code)


def paid_and_period_ended(ctx: OutcomeContext) -> bool:
    return on_paid_plan(ctx) and period_ended(ctx)


def superseded(ctx: OutcomeContext) -> bool:
    return ctx.superseded


def no_pending_change(ctx: OutcomeContext) -> bool:
    return not ctx.has_pending_plan_change


def lapsed_without_pending_change(ctx: OutcomeContext) -> bool:
    return no_pending_change(ctx) and period_ended(ctx)


def paid_without_pending_change(ctx: OutcomeContext) -> bool:
    return no_pending_change(ctx) and on_paid_plan(ctx)


def paid_lapsed_without_pending_change(ctx: OutcomeContext) -> bool:
    return no_pending_change(ctx) and paid_and_period_ended(ctx)


def has_open_grace_window(subscription, now: datetime) -> bool:
    end = subscription.current_period_end
    return subscription.status == SubscriptionStatus.PAST_DUE and end is not None and end > now


# ============================================================
# EFFECTS
# ============================================================
def _activate(ctx: OutcomeContext) -> Dict[str, object]:
    end = ctx.subscription.current_period_end
    start = end if ctx.recurring_paid and end is not None and end > ctx.now else ctx.now
    return {
        "status": SubscriptionStatus.ACTIVE.value,
        "plan_code": ctx.target_plan_code,
        "pending_plan_code": None,
        "trial_plan_code": None,
        "current_period_start": start,
        "current_period_end": start + timedelta(days=get_billing_period_days(ctx.billing_cycle)),
        "cancel_at_period_end": False,
        "canceled_at": None,
    }


def _chargeback(ctx: OutcomeContext) -> Dict[str, object]:
    return {
        "status": SubscriptionStatus.PAST_DUE.value,
        "plan_code": BillingPlanCode.FREE.value,
        "pending_plan_code": None,
        "current_period_start": ctx.now,
        "current_period_end": ctx.now,
        "cancel_at_period_end": False,
        "canceled_at": ctx.now,
    }


def _expire_to_free(ctx: OutcomeContext) -> Dict[str, object]:
    return {
        "status": SubscriptionStatus.EXPIRED.value,
        "plan_code": BillingPlanCode.FREE.value,
        "pending_plan_code": None,
        "current_period_end": ctx.now,
    }


def _clear_matching_pending(ctx: OutcomeContext) -> Dict[str, object]:
    if ctx.subscription.pending_plan_code and ctx.subscription.pending_plan_code == ctx.target_plan_code:
        return {"pending_plan_code": None}
    return {}


def _open_or_extend_grace(ctx: OutcomeContext) -> Dict[str, object]:
    sub = ctx.subscription
    if has_open_grace_window(sub, ctx.now) and sub.current_period_start is not None:
        start, end = sub.current_period_start, sub.current_period_end
    else:
        start, end = grace_window(ctx.now, DEFAULT_PAST_DUE_GRACE_DAYS)
    updates = {
        "status": SubscriptionStatus.PAST_DUE.value,
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": False,
        "canceled_at": None,
    }
    updates.update(_clear_matching_pending(ctx))
    return updates


def _noop(ctx: OutcomeContext) -> Dict[str, object]:
    return {}


ACTIVATE = TransitionRule("activate_paid_plan", always, _activate)
CHARGEBACK = TransitionRule("chargeback_to_free", always, _chargeback)
KEEP_NEWER_INTENT = TransitionRule("superseded_by_newer_checkout", superseded, _noop)
EXPIRE_LAPSED = TransitionRule("expire_lapsed_subscription", no_pending_change, _expire_to_free)
EXPIRE_ENDED_PERIOD = TransitionRule("expire_ended_period", lapsed_without_pending_change, _expire_to_free)
EXTEND_GRACE = TransitionRule("extend_grace_window", paid_without_pending_change, _open_or_extend_grace, opens_grace=True)
OPEN_GRACE = TransitionRule("open_grace_window", paid_lapsed_without_pending_change, _open_or_extend_grace, opens_grace=True)
CLEAR_PENDING = TransitionRule("clear_pending_plan", always, _clear_matching_pending)


def _build_subscription_table() -> Dict[Tuple[str, str], Tuple[TransitionRule, ...]]:
    table: Dict[Tuple[str, str], Tuple[TransitionRule, ...]] = {}
    for status in SubscriptionStatus:
        s = status.value
        table[(s, CheckoutStatus.PAID.value)] = (ACTIVATE,)
        table[(s, CheckoutStatus.CHARGEBACK.value)] = (CHARGEBACK,)
        table[(s, CheckoutStatus.EXPIRED.value)] = (KEEP_NEWER_INTENT, CLEAR_PENDING)
        table[(s, CheckoutStatus.FAILED.value)] = (CLEAR_PENDING,)
        table[(s, CheckoutStatus.CANCELED.value)] = (CLEAR_PENDING,)

    past_due, active = SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.ACTIVE.value
    table[(past_due, CheckoutStatus.EXPIRED.value)] = (KEEP_NEWER_INTENT, EXPIRE_LAPSED, CLEAR_PENDING)
    table[(active, CheckoutStatus.EXPIRED.value)] = (KEEP_NEWER_INTENT, EXPIRE_ENDED_PERIOD, CLEAR_PENDING)
    table[(past_due, CheckoutStatus.FAILED.value)] = (EXTEND_GRACE, CLEAR_PENDING)
    table[(active, CheckoutStatus.FAILED.value)] = (OPEN_GRACE, CLEAR_PENDING)
    return table


SUBSCRIPTION_TRANSITIONS = _build_subscription_table()


def resolve_subscription_change(ctx: OutcomeContext) -> SubscriptionChange:
    rules = SUBSCRIPTION_TRANSITIONS.get((_key(ctx.subscription.status), _key(ctx.outcome)), (CLEAR_PENDING,))
    for rule in rules:
        if rule.guard(ctx):
            return rule.apply(ctx)
    return SubscriptionChange(rule="no_matching_rule")


# ============================================================
# READ-TRIGGERED LAPSES
# ============================================================
@dataclass(frozen=True)
class LapseRule:
    name: str
    guard: Callable[[object, datetime], bool]
    effect: Callable[[object, datetime], Dict[str, object]]


def _trial_over(sub, now: datetime) -> bool:
    return sub.trial_ends_at is not None and sub.trial_ends_at <= now


def _active_period_over(sub, now: datetime) -> bool:
    return sub.current_period_end is not None and sub.current_period_end <= now


def _grace_over(sub, now: datetime) -> bool:
    return sub.current_period_end is None or sub.current_period_end <= now


LAPSE_RULES: Mapping[str, Tuple[LapseRule, ...]] = {
    SubscriptionStatus.TRIALING.value: (
        LapseRule(
            "trial_expired",
            _trial_over,
            lambda sub, now: {
                "status": SubscriptionStatus.EXPIRED.value,
                "plan_code": BillingPlanCode.FREE.value,
                "pending_plan_code": None,
                "trial_plan_code": None,
                "current_period_start": None,
                "current_period_end": None,
                "cancel_at_period_end": False,
                "canceled_at": now,
            },
        ),
    ),
    SubscriptionStatus.ACTIVE.value: (
        LapseRule(
            "canceled_at_period_end",
            lambda sub, now: _active_period_over(sub, now) and sub.cancel_at_period_end,
            lambda sub, now: {
                "status": SubscriptionStatus.CANCELED.value,
                "plan_code": BillingPlanCode.FREE.value,
                "pending_plan_code": None,
                "canceled_at": now,
            },
        ),
        LapseRule(
            "renewal_missed",
            _active_period_over,
            lambda sub, now: {
                "status": SubscriptionStatus.PAST_DUE.value,
                "pending_plan_code": None,
                "current_period_start": grace_window(now)[0],
                "current_period_end": grace_window(now)[1],
                "cancel_at_period_end": False,
                "canceled_at": None,
            },
        ),
    ),
    SubscriptionStatus.PAST_DUE.value: (
        LapseRule(
            "grace_exhausted",
            _grace_over,
            lambda sub, now: {
                "status": SubscriptionStatus.EXPIRED.value,
                "plan_code": BillingPlanCode.FREE.value,
                "pending_plan_code": None,
                "canceled_at": now,
            },
        ),
    ),
}


def resolve_lapse_change(subscription, now: datetime) -> Optional[SubscriptionChange]:
    for rule in LAPSE_RULES.get(_key(subscription.status), ()):
        if rule.guard(subscription, now):
            return SubscriptionChange(rule=rule.name, updates=rule.effect(subscription, now))
    return None


def apply_change(subscription, change: SubscriptionChange, now: datetime) -> bool:
    """Copy the change onto the row. Returns ``False`` when nothing changed."""
    if change.is_noop:
        return False
    for key, value in change.updates.items():
        setattr(subscription, key, value)
    subscription.updated_at = now
    return True
