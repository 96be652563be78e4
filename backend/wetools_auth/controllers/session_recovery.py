"""Session recovery: run at client bootstrap and whenever a token turns out bad."""

import asyncio
import logging
from dataclasses import dataclass

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.controllers import auth_controller
from wetools_auth.controllers.auth_controller import AuthSession
from wetools_auth.core.client_storage import LOGIN_ATTEMPT_KEY, ClientStorage
from wetools_auth.core.errors import AuthFlowError, ErrorKind, is_token_error
from wetools_auth.core.security import ACCESS_COOKIE, REFRESH_COOKIE, verify_access_token

logger = logging.getLogger(__name__)


@dataclass
class StoredSession:
    access_token: str | None
    refresh_token: str


@dataclass
class RecoveryResult:
    success: bool
    session: AuthSession | None = None
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    purged: bool = False


class SessionRecoveryManager:
    def __init__(self, storage: ClientStorage, db: AsyncSession | None):
        self.storage = storage
        self.db = db
        self._purge_lock = asyncio.Lock()

    def current_session(self) -> StoredSession | None:
        """Read the persisted token pair. Raises ``TokenInvalidOrExpired`` on corruption.

        An expired access token is fine (that is what refresh is for); a
        token that does not decode at all is not.
        """
        refresh_token = self.storage.get(REFRESH_COOKIE)
        access_token = self.storage.get(ACCESS_COOKIE)
        if access_token:
            verify_access_token(access_token, allow_expired=True)
        if not refresh_token:
            return None
        return StoredSession(access_token=access_token, refresh_token=refresh_token)

    async def recover_session(self) -> RecoveryResult:
        if self.storage.pop(LOGIN_ATTEMPT_KEY):
            logger.info("Recovering a session left behind by a QQ login attempt")

        purged = False
        try:
            stored = self.current_session()
        except AuthFlowError as exc:
            logger.warning("Stored session is unreadable (%s), purging", exc.detail)
            await self.purge_all_auth_artifacts()
            purged = True
            stored = None

        if stored is None:
            logger.info("No active session to recover")
            return RecoveryResult(success=False, purged=purged)

        if self.db is None:
            return RecoveryResult(success=False, error_detail="No database session")

        try:
            session = await auth_controller.refresh_session(stored.refresh_token, self.db)
        except (AuthFlowError, HTTPException) as exc:
            detail = getattr(exc, "detail", str(exc))
            logger.error("Session refresh failed: %s", detail)
            if is_token_error(exc):
                logger.info("Refresh rejected the stored token, purging all auth artifacts")
                await self.purge_all_auth_artifacts()
                purged = True
            return RecoveryResult(
                success=False,
                error_kind=getattr(exc, "kind", ErrorKind.token_invalid_or_expired),
                error_detail=str(detail),
                purged=purged,
            )

        auth_controller.store_session(self.storage, session)
        logger.info("Session recovered for %s", session.user.email)
        return RecoveryResult(success=True, session=session)

    async def purge_all_auth_artifacts(self) -> list[str]:
        """Remove every auth artifact from every client layer, then sign out globally.

        Idempotent: a second call (or a concurrent one) finds nothing left to
        remove and changes nothing.
        """
        async with self._purge_lock:
            refresh_token = self.storage.get(REFRESH_COOKIE)
            removed = self.storage.purge_auth_keys()
            if removed:
                logger.info("Purged client auth artifacts: %s", ", ".join(removed))

            if refresh_token and self.db is not None:
                try:
                    await auth_controller.sign_out(refresh_token, self.db)
                except SQLAlchemyError as exc:
                    logger.error("Backend sign-out failed, local purge completed anyway: %s", exc)
            return removed
