# core/exceptions.py
from typing import Optional


class BillingError(RuntimeError):
    """Base class for every billing failure surfaced to callers."""


class BillingValidationError(BillingError):
    """Bad input or missing billing data. Shown to the user, never retried."""


class PlanLimitError(BillingError):
    """Raised when an action would exceed the effective plan's limits."""

    def __init__(self, message: str, resource: Optional[str] = None,
                 current: Optional[int] = None, maximum: Optional[int] = None):
        super().__init__(message)
        self.resource = resource
        self.current = current
        self.maximum = maximum


class OrganizationRestrictedError(PlanLimitError):
    """Usage already exceeds the plan; growth actions are blocked."""


class OrganizationBlockedError(PlanLimitError):
    """The single-use trial ended and no paid access exists."""


class BillingIntegrityError(BillingError):
    """Mismatched amounts, untrusted URLs and other payloads that must never apply."""


class InvalidWebhookPayloadError(BillingValidationError):
    """Webhook body is not an object carrying both an id and an event name."""


class ProviderNotConfiguredError(BillingError):
    """The payment provider credentials are missing."""


class PaymentProviderError(BillingError):
    """The payment provider answered with an error or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PaymentProviderTimeoutError(PaymentProviderError):
    """The payment provider did not answer within the configured timeout."""
