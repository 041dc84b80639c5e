# routes/webhooks.py
import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlmodel import Session

from core.config import settings
from core.database import get_session
from core.exceptions import InvalidWebhookPayloadError
from core.rate_limit import FixedWindowRateLimiter
from core.security import is_ip_allowed, resolve_client_ip, secrets_match, verify_webhook_signature
from schemas.billing_schema import WebhookAck
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])

MAX_WEBHOOK_BODY_BYTES = 256 * 1024

webhook_rate_limiter = FixedWindowRateLimiter(
    settings.ABACATEPAY_WEBHOOK_RATE_LIMIT_MAX,
    settings.ABACATEPAY_WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
)


def get_webhook_processor(session: Session = Depends(get_session)) -> WebhookProcessor:
    return WebhookProcessor(session)


def _error(status_code: int, message: str, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message}, headers=headers)


def _received_secret(request: Request) -> str:
    header_secret = (request.headers.get("x-webhook-secret") or "").strip()
    if header_secret:
        return header_secret
    query = request.query_params
    return (query.get("webhookSecret") or "").strip() or (query.get("secret") or "").strip()


# ==================================================================
#  🥑 AbacatePay webhook
# ==================================================================
@router.post("/abacatepay", response_model=WebhookAck)
async def abacatepay_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    client_ip = resolve_client_ip(request.headers, request.client.host if request.client else None)
    if not is_ip_allowed(client_ip, settings.webhook_allowed_ips):
        logger.warning(f"🚫 Webhook from disallowed origin {client_ip}")
        return _error(status.HTTP_403_FORBIDDEN, "Webhook origin not allowed.")

    limit = webhook_rate_limiter.hit(client_ip or "unknown")
    if limit.limited:
        return _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Webhook rate limit exceeded.",
            headers={"Retry-After": str(limit.retry_after_seconds)},
        )

    expected_secret = (settings.ABACATEPAY_WEBHOOK_SECRET or "").strip()
    if not expected_secret:
        logger.error("❌ ABACATEPAY_WEBHOOK_SECRET is not configured")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook is not configured on the server.")

    received_secret = _received_secret(request)
    if not received_secret:
        return _error(
            status.HTTP_401_UNAUTHORIZED,
            "Missing webhook secret. Send it in the x-webhook-secret header or the webhookSecret query parameter.",
        )
    if not secrets_match(expected_secret, received_secret):
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook secret.")

    content_length = (request.headers.get("content-length") or "").strip()
    if content_length.isascii() and content_length.isdigit() and int(content_length) > MAX_WEBHOOK_BODY_BYTES:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Payload exceeds the allowed size.")

    raw_body = await request.body()
    if len(raw_body) > MAX_WEBHOOK_BODY_BYTES:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "Payload exceeds the allowed size.")

    signing_key = settings.webhook_signature_key
    if not signing_key:
        logger.error("❌ ABACATEPAY_WEBHOOK_SIGNATURE_KEY is not configured")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Webhook signature key is not configured on the server.")

    signature = (request.headers.get("x-webhook-signature") or "").strip()
    if not signature:
        return _error(status.HTTP_401_UNAUTHORIZED, "Missing webhook signature.")
    if not verify_webhook_signature(raw_body, signature, signing_key):
        return _error(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature.")

    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON payload.")

    try:
        result = processor.process_webhook(payload)
    except InvalidWebhookPayloadError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    except Exception as e:
        logger.error(f"❌ Failed to process AbacatePay webhook: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal failure while processing webhook.")

    return WebhookAck(ok=True, duplicate=result.duplicate, processed=result.processed)
