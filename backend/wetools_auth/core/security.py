import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, Request
from passlib.context import CryptContext
from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.core.config import settings
from wetools_auth.core.errors import TokenInvalidOrExpired
from wetools_auth.db.database import get_db
from wetools_auth.models.refresh_token import RefreshToken
from wetools_auth.models.user import User

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ── Password hashing (bcrypt) ────────────────────────────────
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plain password against a bcrypt hash."""
    return pwd_context.verify(plain, hashed)


# ── Provider-linked credentials ──────────────────────────────
#
# Linked accounts never see a user-chosen password. Their credential is
# derived from the external identity. Two schemes exist: the legacy one
# (the raw external id) and the current keyed one. Accounts are migrated
# from legacy to current on their first successful legacy sign-in.

def derive_current_credential(provider: str, external_id: str) -> str:
    """HMAC-SHA256 over ``provider:external_id`` keyed by CREDENTIAL_SECRET."""
    message = f"{provider}:{external_id}".encode()
    return hmac.new(settings.CREDENTIAL_SECRET.encode(), message, hashlib.sha256).hexdigest()


def derive_legacy_credential(provider: str, external_id: str) -> str:
    """Scheme used by earlier releases: the external id itself."""
    return external_id


def synthetic_email(provider: str, external_id: str) -> str:
    """Deterministic, non-deliverable address keying a provider-linked account."""
    return f"{external_id}@{provider}.{settings.INTERNAL_DOMAIN}.auth"


# ── JWT access tokens ────────────────────────────────────────

def create_access_token(user_id: uuid.UUID) -> str:
    """Create a short-lived JWT access token."""
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str, *, allow_expired: bool = False) -> dict:
    """Decode and validate an access JWT. Returns the payload or raises."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": not allow_expired},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenInvalidOrExpired("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalidOrExpired("Invalid token") from exc
    if payload.get("type") != "access":
        raise TokenInvalidOrExpired("Invalid token type")
    return payload


# ── Refresh token hashing ────────────────────────────────────

def hash_token(raw_token: str) -> str:
    """SHA-256 hash a raw token for safe storage in the database."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


async def create_refresh_token(user_id: uuid.UUID, db: AsyncSession) -> str:
    """
    Create a long-lived refresh token.
    Returns the RAW token (for the cookie).
    Stores only the SHA-256 HASH in the database.
    """
    raw_token = secrets.token_urlsafe(64)
    refresh = RefreshToken(
        user_id=user_id,
        token_hash=hash_token(raw_token),
        expires_at=datetime.now(timezone.utc) + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    )
    db.add(refresh)
    await db.flush()
    return raw_token  # raw goes to cookie, hash stays in DB


# ── FastAPI dependencies ─────────────────────────────────────

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: reads access token from httpOnly cookie, returns the user.

    Raises ``TokenInvalidOrExpired``; the app-level handler purges the
    client's auth artifacts as a side effect.
    """
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise TokenInvalidOrExpired("Not authenticated")

    payload = verify_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise TokenInvalidOrExpired("Invalid token payload")

    try:
        user = await db.get(User, uuid.UUID(user_id))
    except ValueError as exc:
        raise TokenInvalidOrExpired("Invalid token subject") from exc
    if not user or not user.is_active:
        raise TokenInvalidOrExpired("User not found or inactive")

    return user
