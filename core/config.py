# ==================================================================================
# core/config.py — Billing backend configuration (SendGrid + AbacatePay + Pydantic v2)
# ==================================================================================
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import ValidationError
import sys


DEFAULT_ABACATEPAY_BASE_URL = "https://api.abacatepay.com/v1"
DEFAULT_ALLOWED_CHECKOUT_HOSTS = ("abacatepay.com",)
MAX_CHECKOUT_PENDING_TIMEOUT_MINUTES = 5


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./billing.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: Optional[str] = None
    MAIL_FROM: Optional[str] = None  # Example: "Billing <billing@example.com>"

    # ------------------------
    # FRONTEND & BACKEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:5173"

    # ------------------------
    # ABACATEPAY / PAYMENT CONFIG
    # ------------------------
    ABACATEPAY_API_KEY: Optional[str] = None
    ABACATEPAY_BASE_URL: str = DEFAULT_ABACATEPAY_BASE_URL
    ABACATEPAY_TIMEOUT_SECONDS: float = 10.0
    ABACATEPAY_BILLING_LIST_TIMEOUT_SECONDS: float = 20.0
    ABACATEPAY_BILLING_LIST_RETRIES: int = 1
    ABACATEPAY_ALLOWED_CHECKOUT_HOSTS: Optional[str] = None

    ABACATEPAY_WEBHOOK_SECRET: Optional[str] = None
    ABACATEPAY_WEBHOOK_SIGNATURE_KEY: Optional[str] = None
    ABACATEPAY_PUBLIC_KEY: Optional[str] = None
    ABACATEPAY_WEBHOOK_ALLOWED_IPS: Optional[str] = None
    ABACATEPAY_WEBHOOK_RATE_LIMIT_MAX: int = 120
    ABACATEPAY_WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # ------------------------
    # BILLING LIFECYCLE
    # ------------------------
    CHECKOUT_PENDING_TIMEOUT_MINUTES: int = 5
    BILLING_SWEEP_INTERVAL_SECONDS: int = 0  # 0 disables the periodic stale-checkout sweep

    @property
    def BILLING_RETURN_URL(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}/billing"

    def billing_completion_url(self, checkout_id: str) -> str:
        return f"{self.BILLING_RETURN_URL}?checkout={checkout_id}"

    @property
    def allowed_checkout_hosts(self) -> List[str]:
        hosts = _split_csv(self.ABACATEPAY_ALLOWED_CHECKOUT_HOSTS)
        return hosts or list(DEFAULT_ALLOWED_CHECKOUT_HOSTS)

    @property
    def webhook_signature_key(self) -> Optional[str]:
        return (self.ABACATEPAY_WEBHOOK_SIGNATURE_KEY or "").strip() or (self.ABACATEPAY_PUBLIC_KEY or "").strip() or None

    @property
    def webhook_allowed_ips(self) -> List[str]:
        return _split_csv(self.ABACATEPAY_WEBHOOK_ALLOWED_IPS)

    @property
    def checkout_pending_timeout_minutes(self) -> int:
        """Configured staleness window, never above the hard cap."""
        configured = self.CHECKOUT_PENDING_TIMEOUT_MINUTES
        if configured <= 0:
            configured = MAX_CHECKOUT_PENDING_TIMEOUT_MINUTES
        return min(configured, MAX_CHECKOUT_PENDING_TIMEOUT_MINUTES)

    @property
    def abacatepay_configured(self) -> bool:
        return bool((self.ABACATEPAY_API_KEY or "").strip())

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    # ------------------------
    # Pydantic v2 Settings
    # ------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    print("✅ Environment variables loaded successfully.")
    print(f"🌍 Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    print("❌ Environment configuration error — missing or invalid settings!")
    print(e)
    sys.exit(1)
