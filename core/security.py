# core/security.py
import base64
import hashlib
import hmac
import ipaddress
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Iterable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlmodel import Session, select

from core.database import get_session
from core.config import settings
from models.models import User


# ========================================
# 🔑 JWT / APP CONFIG
# ========================================
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM or "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

bearer_scheme = HTTPBearer(auto_error=False)


# ========================================
# 🔑 Token Helpers
# ========================================
def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode JWT and return payload."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_token_for_user(user: User) -> str:
    return create_access_token({
        "sub": user.email,
        "user_id": user.id,
        "organization_id": user.organization_id,
        "role": user.role,
    })


# ========================================
# 👤 Authentication & Role Checks
# ========================================
def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Extract user from the bearer token and load the full record from DB."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    user_id = payload.get("user_id")
    organization_id = payload.get("organization_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = session.exec(select(User).where(User.id == user_id)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is inactive")

    # A token minted for another organization is never honored
    if organization_id and str(user.organization_id) != str(organization_id):
        raise HTTPException(status_code=403, detail="User not part of this organization")

    return user


def require_organization_owner(current_user: User = Depends(get_current_user)) -> User:
    """Only the organization owner may change billing."""
    if not current_user.is_owner():
        raise HTTPException(status_code=403, detail="Only the organization owner can manage billing")
    return current_user


# ========================================
# 🥑 Webhook verification helpers
# ========================================
def normalize_ip(value: Optional[str]) -> Optional[str]:
    """Return a bare IP address, dropping an IPv4 ``:port`` suffix; None when unparseable."""
    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass

    parts = candidate.split(":")
    if len(parts) == 2:
        try:
            return str(ipaddress.ip_address(parts[0]))
        except ValueError:
            return None
    return None


def resolve_client_ip(headers, fallback: Optional[str] = None) -> Optional[str]:
    """cf-connecting-ip, then x-real-ip, then the first valid x-forwarded-for hop, then the socket peer."""
    for header in ("cf-connecting-ip", "x-real-ip"):
        ip = normalize_ip(headers.get(header))
        if ip:
            return ip

    for hop in (headers.get("x-forwarded-for") or "").split(","):
        ip = normalize_ip(hop)
        if ip:
            return ip

    return normalize_ip(fallback)


def is_ip_allowed(client_ip: Optional[str], allowed_ips: Iterable[str]) -> bool:
    allowed = {ip for ip in (normalize_ip(value) for value in allowed_ips) if ip}
    if not allowed:
        return True
    return client_ip is not None and client_ip in allowed


def secrets_match(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def compute_webhook_signature(raw_body: bytes, signing_key: str) -> str:
    """Base64 HMAC-SHA256 of the exact request bytes."""
    digest = hmac.new(signing_key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(raw_body: bytes, signature: str, signing_key: str) -> bool:
    if not signature:
        return False
    return secrets_match(compute_webhook_signature(raw_body, signing_key), signature.strip())
