# ================================================================
# services/abacatepay.py — AbacatePay REST client (PIX / card billings)
# ================================================================
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field

from core.config import DEFAULT_ALLOWED_CHECKOUT_HOSTS, settings
from core.exceptions import (
    PaymentProviderError,
    PaymentProviderTimeoutError,
    ProviderNotConfiguredError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "billing-backend/1.0"
DEFAULT_PROVIDER_ERROR = "Failed to communicate with the AbacatePay API."
INVALID_RESPONSE_ERROR = "Invalid response from the AbacatePay API."


# ------------------------
# Response models
# ------------------------
class AbacateBillingStatus(str, Enum):
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class _AbacateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AbacateCustomer(_AbacateModel):
    id: str
    name: Optional[str] = None
    cellphone: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = Field(default=None, alias="taxId")


class AbacateBillingProduct(_AbacateModel):
    id: Optional[str] = None
    external_id: Optional[str] = Field(default=None, alias="externalId")
    quantity: int = 1
    price: Optional[int] = None


class AbacateBilling(_AbacateModel):
    id: str
    url: str = ""
    status: str = AbacateBillingStatus.PENDING.value
    amount: Optional[int] = None
    paid_amount: Optional[int] = Field(default=None, alias="paidAmount")
    currency: Optional[str] = None
    methods: List[str] = Field(default_factory=list)
    frequency: Optional[str] = None
    products: List[AbacateBillingProduct] = Field(default_factory=list)
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    def product_external_ids(self) -> List[str]:
        return [p.external_id for p in self.products if p.external_id]


class AbacatePixQrCode(_AbacateModel):
    id: str
    amount: Optional[int] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    br_code: Optional[str] = Field(default=None, alias="brCode")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")


# ------------------------
# Checkout URL trust
# ------------------------
def _host_matches(hostname: str, allowed_host: str) -> bool:
    return hostname == allowed_host or hostname.endswith(f".{allowed_host}")


def is_trusted_checkout_url(raw_url: Optional[str], allowed_hosts: Optional[Sequence[str]] = None) -> bool:
    """Only https URLs on an allowed host (or a subdomain of one) are trusted."""
    if not raw_url:
        return False
    try:
        parsed = urlparse(raw_url)
    except ValueError:
        return False
    if parsed.scheme != "https" or not parsed.hostname:
        return False

    hosts = [h.lower() for h in (allowed_hosts or DEFAULT_ALLOWED_CHECKOUT_HOSTS)]
    hostname = parsed.hostname.lower()
    return any(_host_matches(hostname, allowed) for allowed in hosts)


def sanitize_trusted_url(raw_url: Optional[str], allowed_hosts: Optional[Sequence[str]] = None) -> Optional[str]:
    normalized = (raw_url or "").strip()
    if not normalized:
        return None
    return normalized if is_trusted_checkout_url(normalized, allowed_hosts) else None


def normalize_base_url(raw: str, require_https: bool = False) -> str:
    parsed = urlparse((raw or "").strip())
    if not parsed.scheme or not parsed.netloc:
        raise ProviderNotConfiguredError("ABACATEPAY_BASE_URL is invalid.")
    if require_https and parsed.scheme != "https":
        raise ProviderNotConfiguredError("ABACATEPAY_BASE_URL must use HTTPS in production.")
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path.rstrip('/')}"


# ============================================================
# 🥑 Client
# ============================================================
class AbacatePayClient:
    """Thin synchronous wrapper over the AbacatePay ``{data, error}`` envelope."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout_seconds: float = 10.0,
        list_timeout_seconds: float = 20.0,
        list_retries: int = 1,
        require_https: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = normalize_base_url(base_url, require_https=require_https)
        self.timeout_seconds = timeout_seconds if timeout_seconds > 0 else 10.0
        self.list_timeout_seconds = list_timeout_seconds if list_timeout_seconds > 0 else 20.0
        self.list_retries = max(0, list_retries)
        self._transport = transport

    @classmethod
    def from_settings(cls, transport: Optional[httpx.BaseTransport] = None) -> "AbacatePayClient":
        return cls(
            api_key=settings.ABACATEPAY_API_KEY,
            base_url=settings.ABACATEPAY_BASE_URL,
            timeout_seconds=settings.ABACATEPAY_TIMEOUT_SECONDS,
            list_timeout_seconds=settings.ABACATEPAY_BILLING_LIST_TIMEOUT_SECONDS,
            list_retries=settings.ABACATEPAY_BILLING_LIST_RETRIES,
            require_https=settings.IS_PRODUCTION,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ProviderNotConfiguredError("ABACATEPAY_API_KEY is not configured.")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, str]] = None, timeout: Optional[float] = None) -> Any:
        headers = self._headers()
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(transport=self._transport, timeout=timeout or self.timeout_seconds) as client:
                response = client.request(method, url, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ AbacatePay timeout on {method} {path}")
            raise PaymentProviderTimeoutError("AbacatePay API timed out.") from e
        except httpx.HTTPError as e:
            logger.error(f"❌ AbacatePay transport error on {method} {path}: {e}")
            raise PaymentProviderError(DEFAULT_PROVIDER_ERROR) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = None
        remote_error = payload.get("error") if payload else None

        if response.is_error:
            message = remote_error if isinstance(remote_error, str) else DEFAULT_PROVIDER_ERROR
            logger.error(f"❌ AbacatePay {method} {path} failed: HTTP {response.status_code}")
            raise PaymentProviderError(f"{message} (HTTP {response.status_code})", status_code=response.status_code)

        if payload is None or payload.get("data") is None:
            message = remote_error if isinstance(remote_error, str) else INVALID_RESPONSE_ERROR
            raise PaymentProviderError(message, status_code=response.status_code)

        return payload["data"]

    # -----------------------
    # Endpoints
    # -----------------------
    def create_customer(self, name: str, cellphone: str, email: str, tax_id: str) -> AbacateCustomer:
        data = self._request("POST", "/customer/create", json={
            "name": name,
            "cellphone": cellphone,
            "email": email,
            "taxId": tax_id,
        })
        return AbacateCustomer.model_validate(data)

    def create_billing(self, payload: Dict[str, Any]) -> AbacateBilling:
        data = self._request("POST", "/billing/create", json=payload)
        return AbacateBilling.model_validate(data)

    def list_billings(self) -> List[AbacateBilling]:
        for attempt in range(self.list_retries + 1):
            try:
                data = self._request("GET", "/billing/list", timeout=self.list_timeout_seconds)
            except PaymentProviderTimeoutError:
                if attempt == self.list_retries:
                    raise
                logger.info(f"🔄 Retrying AbacatePay billing list (attempt {attempt + 2})")
                continue
            if not isinstance(data, list):
                raise PaymentProviderError(INVALID_RESPONSE_ERROR)
            return [AbacateBilling.model_validate(item) for item in data]
        return []

    def simulate_pix_payment(self, pix_qr_code_id: str, metadata: Optional[Dict[str, Any]] = None) -> AbacatePixQrCode:
        pix_id = (pix_qr_code_id or "").strip()
        if not pix_id:
            raise PaymentProviderError("Invalid PIX QR code id for simulation.")
        data = self._request(
            "POST",
            "/pixQrCode/simulate-payment",
            params={"id": pix_id},
            json={"metadata": metadata or {}},
        )
        return AbacatePixQrCode.model_validate(data)
