from .billing_schema import (
    BillingProfileUpdate,
    PlanLimitsRead, PlanRead,
    UsageRead, DunningRead, RestrictionRead, SubscriptionRead, EntitlementsRead, FeatureStatusRead,
    CheckoutCreate, CheckoutCreated, CheckoutStateRead, CheckoutRead, ReconcileResult, BillingPageRead,
    TrialStart, CancelSubscriptionRequest,
    InvoiceRead, InvoiceSyncResult,
    FeatureOverrideUpdate,
    WebhookAck,
)

__all__ = [
    # Billing profile
    "BillingProfileUpdate",

    # Plans + entitlements
    "PlanLimitsRead", "PlanRead",
    "UsageRead", "DunningRead", "RestrictionRead", "SubscriptionRead", "EntitlementsRead", "FeatureStatusRead",

    # Checkout
    "CheckoutCreate", "CheckoutCreated", "CheckoutStateRead", "CheckoutRead", "ReconcileResult", "BillingPageRead",

    # Lifecycle
    "TrialStart", "CancelSubscriptionRequest",

    # Invoices
    "InvoiceRead", "InvoiceSyncResult",

    # Feature configuration
    "FeatureOverrideUpdate",

    # Webhooks
    "WebhookAck",
]
