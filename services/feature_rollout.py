"""Feature flags: per-organization override, then plan features, then percentage rollout."""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.exceptions import BillingValidationError
from models.models import FeatureRollout, OwnerFeatureOverride
from services.entitlements import EntitlementService
from services.plan_catalog import DEFAULT_PLAN_CATALOG, FEATURE_LABELS, PlanCatalog, PlanDefinition

logger = logging.getLogger(__name__)

SOURCE_OVERRIDE = "override"
SOURCE_PLAN = "plan"
SOURCE_ROLLOUT = "rollout"
SOURCE_DISABLED = "disabled"


@dataclass(frozen=True)
class FeatureStatus:
    key: str
    label: str
    enabled: bool
    source: str


def bucket_for_rollout(seed: str, subject_key: str) -> int:
    """Stable bucket in [0, 100) from the first four bytes of sha256(seed:subject)."""
    digest = hashlib.sha256(f"{seed}:{subject_key}".encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % 100


def default_subject_key(organization_id: int, feature_key: str) -> str:
    return f"{organization_id}:{feature_key}"


def resolve_feature_status(
    feature_key: str,
    plan: PlanDefinition,
    override: Optional[OwnerFeatureOverride],
    rollout: Optional[FeatureRollout],
    subject_key: str,
) -> FeatureStatus:
    label = FEATURE_LABELS.get(feature_key, feature_key)

    if override is not None:
        return FeatureStatus(feature_key, label, bool(override.enabled), SOURCE_OVERRIDE)

    if plan.has_feature(feature_key):
        return FeatureStatus(feature_key, label, True, SOURCE_PLAN)

    if rollout is None or not rollout.enabled or rollout.rollout_percentage <= 0:
        return FeatureStatus(feature_key, label, False, SOURCE_DISABLED)

    if rollout.rollout_percentage >= 100:
        enabled = True
    else:
        enabled = bucket_for_rollout(rollout.seed, subject_key) < rollout.rollout_percentage
    return FeatureStatus(feature_key, label, enabled, SOURCE_ROLLOUT if enabled else SOURCE_DISABLED)


class FeatureRolloutService:
    def __init__(self, session: Session, catalog: PlanCatalog = DEFAULT_PLAN_CATALOG):
        self.session = session
        self.catalog = catalog
        self.entitlements = EntitlementService(session, catalog)

    def _override(self, organization_id: int, feature_key: str) -> Optional[OwnerFeatureOverride]:
        return self.session.exec(
            select(OwnerFeatureOverride).where(
                OwnerFeatureOverride.organization_id == organization_id,
                OwnerFeatureOverride.feature_key == feature_key,
            )
        ).first()

    def _rollout(self, feature_key: str) -> Optional[FeatureRollout]:
        return self.session.exec(select(FeatureRollout).where(FeatureRollout.feature_key == feature_key)).first()

    def is_feature_enabled(self, organization_id: int, feature_key: str, subject_key: Optional[str] = None,
                           now: Optional[datetime] = None) -> bool:
        entitlements = self.entitlements.get_owner_entitlements(organization_id, now=now)
        status = resolve_feature_status(
            feature_key,
            self.catalog.get(entitlements.effective_plan_code),
            self._override(organization_id, feature_key),
            self._rollout(feature_key),
            subject_key or default_subject_key(organization_id, feature_key),
        )
        return status.enabled

    def list_feature_statuses(self, organization_id: int, now: Optional[datetime] = None) -> List[FeatureStatus]:
        entitlements = self.entitlements.get_owner_entitlements(organization_id, now=now)
        plan = self.catalog.get(entitlements.effective_plan_code)
        keys = list(FEATURE_LABELS.keys())

        overrides = {
            o.feature_key: o
            for o in self.session.exec(
                select(OwnerFeatureOverride).where(OwnerFeatureOverride.organization_id == organization_id)
            ).all()
        }
        rollouts = {
            r.feature_key: r
            for r in self.session.exec(select(FeatureRollout).where(FeatureRollout.feature_key.in_(keys))).all()
        }
        return [
            resolve_feature_status(key, plan, overrides.get(key), rollouts.get(key),
                                   default_subject_key(organization_id, key))
            for key in keys
        ]

    # -----------------------
    # Configuration
    # -----------------------
    def _save(self, row):
        self.session.add(row)
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self.session.refresh(row)
        return row

    def set_feature_override(self, organization_id: int, feature_key: str, enabled: bool,
                             note: Optional[str] = None) -> OwnerFeatureOverride:
        if feature_key not in FEATURE_LABELS:
            raise BillingValidationError(f"Unknown feature: {feature_key}")
        now = datetime.utcnow()
        override = self._override(organization_id, feature_key) or OwnerFeatureOverride(
            organization_id=organization_id, feature_key=feature_key, created_at=now
        )
        override.enabled = enabled
        override.note = note
        override.updated_at = now
        logger.info(f"🚩 Override {feature_key}={enabled} for organization {organization_id}")
        return self._save(override)

    def clear_feature_override(self, organization_id: int, feature_key: str) -> bool:
        override = self._override(organization_id, feature_key)
        if override is None:
            return False
        self.session.delete(override)
        self.session.commit()
        return True

    def set_feature_rollout(self, feature_key: str, rollout_percentage: int, enabled: bool = True,
                            seed: Optional[str] = None) -> FeatureRollout:
        if feature_key not in FEATURE_LABELS:
            raise BillingValidationError(f"Unknown feature: {feature_key}")
        if not 0 <= rollout_percentage <= 100:
            raise BillingValidationError("Rollout percentage must be between 0 and 100.")
        now = datetime.utcnow()
        rollout = self._rollout(feature_key) or FeatureRollout(feature_key=feature_key, created_at=now)
        rollout.rollout_percentage = rollout_percentage
        rollout.enabled = enabled
        if seed:
            rollout.seed = seed
        rollout.updated_at = now
        logger.info(f"🚩 Rollout {feature_key} at {rollout_percentage}% (enabled={enabled})")
        return self._save(rollout)
