"""Grace-period arithmetic for PAST_DUE subscriptions.

Every function here is pure: callers pass ``now`` explicitly so the result is
fully determined by its arguments.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence, Tuple

from models.models import SubscriptionStatus

DEFAULT_PAST_DUE_GRACE_DAYS = 28
PAST_DUE_REMINDER_DAYS: Tuple[int, ...] = (7, 14, 21)
DUNNING_EMAIL_DAYS: Tuple[int, ...] = (1, 3, 7, 14)
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass(frozen=True)
class DunningState:
    in_grace_period: bool = False
    grace_started_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    days_in_grace_period: Optional[int] = None
    days_until_downgrade: Optional[int] = None
    reminder_checkpoint_day: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "in_grace_period": self.in_grace_period,
            "grace_started_at": self.grace_started_at,
            "grace_ends_at": self.grace_ends_at,
            "days_in_grace_period": self.days_in_grace_period,
            "days_until_downgrade": self.days_until_downgrade,
            "reminder_checkpoint_day": self.reminder_checkpoint_day,
        }


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


def grace_window(now: datetime, days: int = DEFAULT_PAST_DUE_GRACE_DAYS) -> Tuple[datetime, datetime]:
    return now, now + timedelta(days=days)


def resolve_reminder_checkpoint(days_in_grace: int,
                                checkpoints: Sequence[int] = PAST_DUE_REMINDER_DAYS) -> Optional[int]:
    """Largest checkpoint already reached, or ``None`` before the first one."""
    reached = [day for day in checkpoints if days_in_grace >= day]
    return max(reached) if reached else None


def resolve_dunning_email_day(grace_started_at: datetime, now: datetime,
                              email_days: Sequence[int] = DUNNING_EMAIL_DAYS) -> Optional[int]:
    """Dunning email slot for the current grace day (day 1 is the day grace opened)."""
    elapsed = max(0, math.floor(_days_between(grace_started_at, now)))
    current_day = elapsed + 1
    reached = [day for day in email_days if current_day >= day]
    return max(reached) if reached else None


def build_dunning_state(status: str,
                        current_period_start: Optional[datetime],
                        current_period_end: Optional[datetime],
                        now: datetime,
                        grace_days: int = DEFAULT_PAST_DUE_GRACE_DAYS) -> DunningState:
    if status != SubscriptionStatus.PAST_DUE or current_period_end is None:
        return DunningState()

    grace_ends_at = current_period_end
    in_grace = grace_ends_at > now
    days_until = max(0, math.ceil(_days_between(now, grace_ends_at))) if in_grace else 0

    grace_started_at = (
        current_period_start
        if current_period_start is not None and current_period_start < grace_ends_at
        else None
    )
    if grace_started_at is not None:
        days_in_grace = max(0, math.floor(_days_between(grace_started_at, now)))
    else:
        days_in_grace = max(0, grace_days - days_until)

    return DunningState(
        in_grace_period=in_grace,
        grace_started_at=grace_started_at,
        grace_ends_at=grace_ends_at,
        days_in_grace_period=days_in_grace,
        days_until_downgrade=days_until,
        reminder_checkpoint_day=resolve_reminder_checkpoint(days_in_grace),
    )


def dunning_state_for(subscription, now: datetime) -> DunningState:
    return build_dunning_state(
        subscription.status,
        subscription.current_period_start,
        subscription.current_period_end,
        now,
    )
