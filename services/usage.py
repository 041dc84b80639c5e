# services/usage.py
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from models.models import Invitation, InvitationStatus, OwnerMonthlyUsage, Project, User

logger = logging.getLogger(__name__)

DEFAULT_USAGE_METRIC_KEY = "workspace_events"


@dataclass(frozen=True)
class UsageSnapshot:
    organizations: int
    users: int
    pending_invitations: int
    projects: int
    monthly_usage: int

    @property
    def reserved_seats(self) -> int:
        return self.users + self.pending_invitations

    def to_dict(self) -> dict:
        return asdict(self)


def start_of_utc_month(reference: Optional[datetime] = None) -> datetime:
    reference = reference or datetime.utcnow()
    return datetime(reference.year, reference.month, 1)


def pending_invitation_filter(organization_id: int, now: datetime):
    """Where-clause for invitations that still hold a seat."""
    return (
        Invitation.organization_id == organization_id,
        Invitation.status == InvitationStatus.PENDING.value,
        Invitation.expires_at > now,
    )


def find_pending_invitation(session: Session, organization_id: int, email: str,
                            now: Optional[datetime] = None) -> Optional[Invitation]:
    now = now or datetime.utcnow()
    return session.exec(
        select(Invitation).where(
            *pending_invitation_filter(organization_id, now),
            func.lower(Invitation.email) == email.strip().lower(),
        )
    ).first()


def get_usage_snapshot(
    session: Session,
    organization_id: int,
    metric_key: str = DEFAULT_USAGE_METRIC_KEY,
    now: Optional[datetime] = None,
) -> UsageSnapshot:
    """Read-only counts used for limit and restriction checks."""
    now = now or datetime.utcnow()

    users = session.exec(
        select(func.count(User.id)).where(
            User.organization_id == organization_id, User.is_active == True  # noqa: E712
        )
    ).one()

    pending = session.exec(
        select(func.count(Invitation.id)).where(*pending_invitation_filter(organization_id, now))
    ).one()

    projects = session.exec(
        select(func.count(Project.id)).where(Project.organization_id == organization_id)
    ).one()

    monthly = session.exec(
        select(func.coalesce(func.sum(OwnerMonthlyUsage.value), 0)).where(
            OwnerMonthlyUsage.organization_id == organization_id,
            OwnerMonthlyUsage.metric_key == metric_key,
            OwnerMonthlyUsage.period_start == start_of_utc_month(now),
        )
    ).one()

    return UsageSnapshot(
        organizations=1,
        users=int(users or 0),
        pending_invitations=int(pending or 0),
        projects=int(projects or 0),
        monthly_usage=int(monthly or 0),
    )


def increment_monthly_usage(
    session: Session,
    owner_user_id: int,
    organization_id: int,
    increment: int,
    metric_key: str = DEFAULT_USAGE_METRIC_KEY,
    now: Optional[datetime] = None,
) -> OwnerMonthlyUsage:
    """Upsert the counter for ``metric_key`` in the current UTC month."""
    now = now or datetime.utcnow()
    period_start = start_of_utc_month(now)

    def _existing() -> Optional[OwnerMonthlyUsage]:
        return session.exec(
            select(OwnerMonthlyUsage).where(
                OwnerMonthlyUsage.owner_user_id == owner_user_id,
                OwnerMonthlyUsage.organization_id == organization_id,
                OwnerMonthlyUsage.metric_key == metric_key,
                OwnerMonthlyUsage.period_start == period_start,
            )
        ).first()

    row = _existing()
    if row is None:
        row = OwnerMonthlyUsage(
            owner_user_id=owner_user_id,
            organization_id=organization_id,
            metric_key=metric_key,
            period_start=period_start,
            value=increment,
            updated_at=now,
        )
        session.add(row)
        try:
            session.commit()
            session.refresh(row)
            return row
        except IntegrityError:
            # Another request created the row first
            session.rollback()
            row = _existing()
            if row is None:
                raise

    # Atomic increment
    session.execute(
        update(OwnerMonthlyUsage)
        .where(OwnerMonthlyUsage.id == row.id)
        .values(value=OwnerMonthlyUsage.value + increment, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.refresh(row)
    logger.info(f"📈 Usage {metric_key} for org {organization_id} is now {row.value}")
    return row
