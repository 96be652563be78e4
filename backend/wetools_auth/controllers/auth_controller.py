"""Auth controller: backend auth operations the QQ login flow is built on."""

import logging
import uuid
from dataclasses import dataclass
from datetime import timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.core.client_storage import ClientStorage
from wetools_auth.core.config import settings
from wetools_auth.core.errors import (
    AccountLinkConflict,
    InvalidCredentials,
    TokenInvalidOrExpired,
)
from wetools_auth.core.security import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    create_access_token,
    create_refresh_token,
    hash_password,
    hash_token,
    verify_password,
)
from wetools_auth.db.database import session_scope
from wetools_auth.models.base import utc_now
from wetools_auth.models.oauth_account import OAuthAccount
from wetools_auth.models.profile import UserProfile
from wetools_auth.models.refresh_token import RefreshToken
from wetools_auth.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    user: User


def store_session(storage: ClientStorage, session: AuthSession) -> None:
    """Persist the token pair in the client's cookie layer."""
    storage.set(
        ACCESS_COOKIE, session.access_token,
        layer="cookies", max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    storage.set(
        REFRESH_COOKIE, session.refresh_token,
        layer="cookies", max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400,
    )


# ── Account lookup ────────────────────────────────────────────

async def account_exists_for_external_id(provider: str, external_id: str, db: AsyncSession) -> bool:
    """Authoritative existence check for a provider-linked account."""
    result = await db.execute(
        select(OAuthAccount.id).where(
            OAuthAccount.provider == provider,
            OAuthAccount.provider_user_id == external_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def get_user_by_email(email: str, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


# ── Sign-in / sign-up ─────────────────────────────────────────

async def issue_session(user: User, db: AsyncSession) -> AuthSession:
    """Create access + refresh tokens for ``user``."""
    user.last_login_at = utc_now()
    db.add(user)
    access_token = create_access_token(user.id)
    refresh_token = await create_refresh_token(user.id, db)
    return AuthSession(access_token=access_token, refresh_token=refresh_token, user=user)


async def sign_in_with_password(email: str, password: str, db: AsyncSession) -> AuthSession:
    """Authenticate by email + password and open a session."""
    user = await get_user_by_email(email, db)

    if not user or not user.hashed_password:
        raise InvalidCredentials("Invalid login credentials")

    if not verify_password(password, user.hashed_password):
        raise InvalidCredentials("Invalid login credentials")

    if not user.is_active:
        raise InvalidCredentials("Account is inactive")

    return await issue_session(user, db)


async def sign_up(
    email: str,
    password: str,
    metadata: dict,
    db: AsyncSession,
) -> User:
    """
    Register a provider-linked account and commit it.

    A concurrent registration of the same account (duplicate tab, double
    submit) surfaces as ``AccountLinkConflict`` so callers can fall back to
    signing in.
    """
    if await get_user_by_email(email, db):
        raise AccountLinkConflict(f"Account {email} already registered")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        display_name=metadata.get("display_name"),
        avatar_url=metadata.get("avatar_url"),
        user_metadata=metadata,
    )
    db.add(user)
    db.add(
        OAuthAccount(
            user_id=user.id,
            provider=metadata["provider"],
            provider_user_id=metadata["external_id"],
            is_verified=metadata.get("identity_trust") != "fallback",
            provider_nickname=metadata.get("display_name"),
        )
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise AccountLinkConflict(f"Account {email} was created concurrently") from exc
    await db.refresh(user)
    return user


async def create_profile(user: User, db: AsyncSession) -> UserProfile:
    """Insert the profile row that carries display data and moderation flags."""
    metadata = user.user_metadata or {}
    profile = UserProfile(
        user_id=user.id,
        nickname=metadata.get("display_name"),
        full_name=metadata.get("display_name"),
        avatar_url=metadata.get("avatar_url"),
        qq_open_id=metadata.get("external_id") if metadata.get("provider") == "qq" else None,
    )
    db.add(profile)
    await db.commit()
    return profile


async def update_user_password(user_id: uuid.UUID, new_password: str) -> None:
    """Rewrite a stored credential. Runs in its own session, outside any request."""
    async with session_scope() as db:
        user = await db.get(User, user_id)
        if not user:
            raise InvalidCredentials("User vanished before credential rewrite")
        user.hashed_password = hash_password(new_password)
        db.add(user)


# ── Token Refresh ─────────────────────────────────────────────

async def refresh_session(refresh_token_value: str | None, db: AsyncSession) -> AuthSession:
    """
    Validate a refresh token, rotate it, and issue a new access token.

    Theft detection: if a revoked token is reused, it means someone stole it
    (the real user already rotated it). In this case, revoke ALL tokens for
    that user and force re-login on all devices.
    """
    if not refresh_token_value:
        raise TokenInvalidOrExpired("No refresh token")

    token_record = await _get_refresh_record(refresh_token_value, db)

    if not token_record:
        raise TokenInvalidOrExpired("Invalid refresh token")

    # ── Theft detection ──────────────────────────────────────
    if token_record.is_revoked:
        await _revoke_all(token_record.user_id, db)
        raise TokenInvalidOrExpired("Refresh token reuse detected, all sessions revoked")

    expires_at = token_record.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < utc_now():
        raise TokenInvalidOrExpired("Refresh token expired")

    # Rotate: revoke old token
    token_record.is_revoked = True
    token_record.revoked_at = utc_now()
    db.add(token_record)

    user = await db.get(User, token_record.user_id)
    if not user or not user.is_active:
        raise TokenInvalidOrExpired("User not found or inactive")

    return await issue_session(user, db)


# ── Logout ────────────────────────────────────────────────────

async def sign_out(refresh_token_value: str | None, db: AsyncSession) -> None:
    """Global sign-out: revoke every refresh token of the token's owner."""
    if not refresh_token_value:
        return
    token_record = await _get_refresh_record(refresh_token_value, db)
    if token_record:
        await _revoke_all(token_record.user_id, db)


async def _get_refresh_record(refresh_token_value: str, db: AsyncSession) -> RefreshToken | None:
    result = await db.execute(
        select(RefreshToken).where(RefreshToken.token_hash == hash_token(refresh_token_value))
    )
    return result.scalar_one_or_none()


async def _revoke_all(user_id: uuid.UUID, db: AsyncSession) -> None:
    await db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.user_id == user_id,
            RefreshToken.is_revoked == False,  # noqa: E712
        )
        .values(is_revoked=True, revoked_at=utc_now())
    )
