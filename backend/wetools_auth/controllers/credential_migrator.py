"""Sign-in that transparently moves accounts off the legacy credential scheme."""

import asyncio
import logging
import uuid
from collections.abc import Callable

from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.controllers import auth_controller
from wetools_auth.controllers.auth_controller import AuthSession
from wetools_auth.core.errors import InvalidCredentials

logger = logging.getLogger(__name__)

# Same shape as fastapi.BackgroundTasks.add_task
Scheduler = Callable[..., None]

_background: set[asyncio.Task] = set()


def spawn(func, *args) -> None:
    """Default scheduler: run ``func(*args)`` as a fire-and-forget task."""
    task = asyncio.ensure_future(func(*args))
    _background.add(task)
    task.add_done_callback(_background.discard)


def pending_rewrites() -> list[asyncio.Task]:
    return list(_background)


async def rewrite_credential(user_id: uuid.UUID, email: str, current_password: str) -> None:
    """Best-effort: failures are logged, never raised."""
    try:
        await auth_controller.update_user_password(user_id, current_password)
    except Exception as exc:
        logger.warning("Credential migration for %s failed, will retry on next login: %s", email, exc)
        return
    logger.info("Credential for %s migrated to current scheme", email)


async def sign_in_with_migration(
    email: str,
    current_password: str,
    legacy_password: str,
    db: AsyncSession,
    schedule: Scheduler | None = None,
) -> AuthSession:
    """
    Sign in with the current credential, falling back to the legacy one.

    1. Current scheme succeeds → done, legacy is never tried.
    2. Current fails with anything but bad credentials → propagate.
    3. Legacy succeeds → schedule a rewrite to the current scheme.
    4. Legacy fails too → re-raise the current-scheme error.
    """
    try:
        return await auth_controller.sign_in_with_password(email, current_password, db)
    except InvalidCredentials as current_error:
        logger.info("Current credential rejected for %s, trying legacy scheme", email)
        try:
            session = await auth_controller.sign_in_with_password(email, legacy_password, db)
        except Exception as legacy_error:
            logger.warning("Legacy sign-in failed for %s: %s", email, legacy_error)
            raise current_error from None

    logger.info("Signed in %s with legacy credential, scheduling migration", email)
    (schedule or spawn)(rewrite_credential, session.user.id, email, current_password)
    return session
