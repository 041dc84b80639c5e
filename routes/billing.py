# routes/billing.py
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from core.database import get_session
from core.exceptions import (
    BillingError,
    BillingIntegrityError,
    BillingValidationError,
    PaymentProviderError,
    PlanLimitError,
    ProviderNotConfiguredError,
)
from core.security import get_current_user, require_organization_owner
from models.models import User
from schemas.billing_schema import (
    BillingPageRead,
    CancelSubscriptionRequest,
    CheckoutCreate,
    CheckoutCreated,
    CheckoutRead,
    CheckoutStateRead,
    DunningRead,
    EntitlementsRead,
    FeatureOverrideUpdate,
    FeatureStatusRead,
    InvoiceRead,
    InvoiceSyncResult,
    PlanRead,
    ReconcileResult,
    RestrictionRead,
    SubscriptionRead,
    TrialStart,
    UsageRead,
)
from services.checkout import CheckoutService
from services.entitlements import EntitlementService, OwnerEntitlements
from services.feature_rollout import FeatureRolloutService, FeatureStatus
from services.plan_catalog import DEFAULT_PLAN_CATALOG, PlanDefinition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing"])


# ==================================================================
#  🔌 Service providers (overridable in tests)
# ==================================================================
def get_entitlement_service(session: Session = Depends(get_session)) -> EntitlementService:
    return EntitlementService(session)


def get_checkout_service(session: Session = Depends(get_session)) -> CheckoutService:
    return CheckoutService(session)


def get_feature_rollout_service(session: Session = Depends(get_session)) -> FeatureRolloutService:
    return FeatureRolloutService(session)


# ==================================================================
#  🧯 Error translation
# ==================================================================
def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, PlanLimitError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, BillingValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, BillingIntegrityError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ProviderNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, PaymentProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    logger.error(f"❌ Unexpected billing failure: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="A billing error occurred. Please try again.",
    )


# ==================================================================
#  🧱 Response builders
# ==================================================================
def plan_to_read(plan: PlanDefinition) -> PlanRead:
    return PlanRead.model_validate(plan.to_dict())


def entitlements_to_read(entitlements: OwnerEntitlements, block_message: Optional[str] = None) -> EntitlementsRead:
    return EntitlementsRead(
        organization_id=entitlements.organization_id,
        owner_user_id=entitlements.owner_user_id,
        effective_plan_code=entitlements.effective_plan_code,
        subscription=SubscriptionRead.model_validate(entitlements.subscription),
        usage=UsageRead(**entitlements.usage.to_dict()),
        dunning=DunningRead(**entitlements.dunning.to_dict()),
        restriction=RestrictionRead(
            is_restricted=entitlements.restriction.is_restricted,
            exceeded_organizations=entitlements.restriction.exceeded_organizations,
            exceeded_users=entitlements.restriction.exceeded_users,
        ),
        block_message=block_message,
    )


def feature_to_read(feature: FeatureStatus) -> FeatureStatusRead:
    return FeatureStatusRead(key=feature.key, label=feature.label, enabled=feature.enabled, source=feature.source)


# ==================================================================
#  📦 Plans + entitlements
# ==================================================================
@router.get("/plans", response_model=List[PlanRead])
def list_plans():
    return [plan_to_read(plan) for plan in DEFAULT_PLAN_CATALOG.all()]


@router.get("/entitlements", response_model=EntitlementsRead)
def get_entitlements(
    current_user: User = Depends(get_current_user),
    service: EntitlementService = Depends(get_entitlement_service),
):
    try:
        entitlements = service.get_owner_entitlements(current_user.organization_id)
        block_message = service.get_organization_block_message(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)
    return entitlements_to_read(entitlements, block_message)


# ==================================================================
#  🚩 Feature flags
# ==================================================================
@router.get("/features", response_model=List[FeatureStatusRead])
def list_features(
    current_user: User = Depends(get_current_user),
    service: FeatureRolloutService = Depends(get_feature_rollout_service),
):
    try:
        statuses = service.list_feature_statuses(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)
    return [feature_to_read(s) for s in statuses]


@router.put("/features/{feature_key}/override", response_model=List[FeatureStatusRead])
def set_feature_override(
    feature_key: str,
    data: FeatureOverrideUpdate,
    current_user: User = Depends(require_organization_owner),
    service: FeatureRolloutService = Depends(get_feature_rollout_service),
):
    try:
        service.set_feature_override(current_user.organization_id, feature_key, data.enabled, data.note)
        statuses = service.list_feature_statuses(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)
    return [feature_to_read(s) for s in statuses]


@router.delete("/features/{feature_key}/override", status_code=status.HTTP_204_NO_CONTENT)
def clear_feature_override(
    feature_key: str,
    current_user: User = Depends(require_organization_owner),
    service: FeatureRolloutService = Depends(get_feature_rollout_service),
):
    if not service.clear_feature_override(current_user.organization_id, feature_key):
        raise HTTPException(status_code=404, detail="No override set for this feature.")


# ==================================================================
#  🪪 Billing profile
# ==================================================================
@router.put("/profile", response_model=SubscriptionRead)
def update_billing_profile(
    data: Dict[str, str] = Body(...),
    current_user: User = Depends(require_organization_owner),
    service: EntitlementService = Depends(get_entitlement_service),
):
    # Validated in the service so bad documents surface as 400 with a readable message
    try:
        return service.update_billing_profile(
            current_user.organization_id,
            billing_name=data.get("billing_name", ""),
            billing_cellphone=data.get("billing_cellphone", ""),
            billing_tax_id=data.get("billing_tax_id", ""),
        )
    except BillingError as e:
        raise to_http_exception(e)
    except SQLAlchemyError:
        raise HTTPException(status_code=500, detail="A database error occurred while saving the billing profile.")


# ==================================================================
#  💳 Checkout
# ==================================================================
@router.post("/checkout", response_model=CheckoutCreated, status_code=status.HTTP_201_CREATED)
def create_checkout(
    data: CheckoutCreate,
    current_user: User = Depends(require_organization_owner),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        result = service.create_plan_checkout_session(
            current_user.organization_id,
            data.plan_code.value,
            billing_cycle=data.billing_cycle,
            allow_same_plan=data.allow_same_plan,
        )
    except BillingError as e:
        raise to_http_exception(e)
    logger.info(f"💳 Checkout {result['checkout_id']} created by user {current_user.id}")
    return CheckoutCreated(**result)


@router.get("/checkout/{checkout_id}", response_model=CheckoutRead)
def get_checkout(
    checkout_id: str,
    current_user: User = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    checkout = service.read_checkout(current_user.organization_id, checkout_id)
    if not checkout:
        raise HTTPException(status_code=404, detail="Checkout not found")
    return checkout


@router.post("/checkout/{checkout_id}/reconcile", response_model=ReconcileResult)
def reconcile_checkout(
    checkout_id: str,
    current_user: User = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        changed = service.reconcile_checkout(current_user.organization_id, checkout_id)
    except BillingError as e:
        raise to_http_exception(e)
    checkout = service.read_checkout(current_user.organization_id, checkout_id)
    return ReconcileResult(changed=changed, checkout=CheckoutRead.model_validate(checkout) if checkout else None)


@router.get("/page", response_model=BillingPageRead)
def get_billing_page(
    checkout: Optional[str] = Query(default=None),
    current_user: User = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        page = service.get_billing_page_data(current_user.organization_id, checkout_id=checkout)
        block_message = service.entitlements.get_organization_block_message(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)

    state = page.checkout_state
    return BillingPageRead(
        entitlements=entitlements_to_read(page.entitlements, block_message),
        plans=[plan_to_read(plan) for plan in page.plans],
        checkout_state=CheckoutStateRead(
            id=state.id,
            status=state.status,
            target_plan_code=state.target_plan_code,
            created_at=state.created_at,
            is_processing=state.is_processing,
        ) if state else None,
    )


# ==================================================================
#  🔁 Subscription lifecycle
# ==================================================================
@router.post("/trial", response_model=SubscriptionRead)
def start_trial(
    data: TrialStart,
    current_user: User = Depends(require_organization_owner),
    service: EntitlementService = Depends(get_entitlement_service),
):
    try:
        return service.start_trial(current_user.organization_id, data.plan_code.value)
    except BillingError as e:
        raise to_http_exception(e)


@router.post("/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    data: CancelSubscriptionRequest,
    current_user: User = Depends(require_organization_owner),
    service: EntitlementService = Depends(get_entitlement_service),
):
    try:
        return service.cancel_subscription(
            current_user.organization_id,
            immediate=data.immediate,
            reason=data.reason,
            reason_detail=data.reason_detail,
        )
    except BillingError as e:
        raise to_http_exception(e)


@router.post("/reactivate", response_model=SubscriptionRead)
def reactivate_subscription(
    current_user: User = Depends(require_organization_owner),
    service: EntitlementService = Depends(get_entitlement_service),
):
    try:
        return service.reactivate_subscription(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)


@router.post("/downgrade", response_model=SubscriptionRead)
def downgrade_to_free(
    current_user: User = Depends(require_organization_owner),
    service: EntitlementService = Depends(get_entitlement_service),
):
    try:
        return service.apply_free_downgrade(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)


# ==================================================================
#  🧾 Invoices
# ==================================================================
@router.get("/invoices", response_model=List[InvoiceRead])
def list_invoices(
    current_user: User = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        return service.list_invoices(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)


@router.post("/invoices/sync", response_model=InvoiceSyncResult)
def sync_invoices(
    current_user: User = Depends(require_organization_owner),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        synced = service.sync_invoices_from_provider(current_user.organization_id)
    except BillingError as e:
        raise to_http_exception(e)
    return InvoiceSyncResult(synced=synced)
