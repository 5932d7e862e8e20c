"""
Password hashing, bearer-token helpers and client-address handling.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).
- The bearer credential is a JWT carrying `sub` and `session_id`; it
  expires together with its session's absolute deadline.
- Only the SHA-256 of the JWT is persisted, so a leaked `sessions`
  table cannot be replayed as credentials.
"""

import functools
import hashlib
import ipaddress
import secrets
import uuid
from datetime import datetime
from typing import Any

import bcrypt
from fastapi import Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from helpdesk.core.config import settings

# ── Password hashing ────────────────────────────────────────────────

# bcrypt only looks at the first 72 bytes; bcrypt>=5 refuses anything longer
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    secret = plain.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(secret, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """A password too long to have been hashed can never match."""
    secret = plain.encode("utf-8")
    if len(secret) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(secret, hashed.encode("utf-8"))


@functools.lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    """Digest burned on unknown accounts so both paths cost one bcrypt check."""
    return hash_password(secrets.token_urlsafe(32))


# ── Token hashing ───────────────────────────────────────────────────


def hash_token(token: str) -> str:
    """SHA-256 hash — suitable for high-entropy tokens like JWTs."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ── JWT ──────────────────────────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def create_session_token(user_id: uuid.UUID, session_id: uuid.UUID, expires_at: datetime) -> str:
    to_encode: dict[str, Any] = {
        "sub": str(user_id),
        "session_id": str(session_id),
        "jti": secrets.token_hex(8),
        "exp": expires_at,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str) -> dict[str, Any] | None:
    """Decode & validate a bearer JWT.  Returns None when it is unusable."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or not payload.get("session_id"):
        return None
    return payload


# ── Client address ──────────────────────────────────────────────────


def normalize_ip(raw: str | None) -> str:
    """Canonical text form of an address (IPv4-mapped IPv6 collapses to IPv4)."""
    if not raw:
        return "unknown"
    try:
        addr = ipaddress.ip_address(raw.strip())
    except ValueError:
        return raw.strip()[:64] or "unknown"
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return addr.compressed


def client_ip(request: Request) -> str:
    return normalize_ip(request.client.host if request.client else None)
