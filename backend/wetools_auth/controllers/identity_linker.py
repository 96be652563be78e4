"""Maps an external identity onto a local account, creating one if needed."""

import logging
from dataclasses import dataclass, field

from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.controllers import auth_controller
from wetools_auth.controllers.auth_controller import AuthSession
from wetools_auth.controllers.credential_migrator import Scheduler, sign_in_with_migration
from wetools_auth.controllers.identity_resolver import ExternalIdentity
from wetools_auth.core.errors import (
    AccountLinkConflict,
    AccountLinkError,
    AuthFlowError,
    ProfileSyncWarning,
)
from wetools_auth.core.security import (
    derive_current_credential,
    derive_legacy_credential,
    synthetic_email,
)

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    is_new_account: bool
    session: AuthSession
    warnings: list[ProfileSyncWarning] = field(default_factory=list)


async def link_external_identity(
    identity: ExternalIdentity,
    db: AsyncSession,
    schedule: Scheduler | None = None,
) -> LinkResult:
    """
    Find or create the account for ``identity`` and sign it in.

    1. Account linked to (provider, external_id) exists → sign in (with migration)
    2. Otherwise → register, then create the profile row (best-effort)
    3. Registration lost a race to another tab → sign in instead
    """
    email = synthetic_email(identity.provider, identity.external_id)
    current = derive_current_credential(identity.provider, identity.external_id)
    legacy = derive_legacy_credential(identity.provider, identity.external_id)

    try:
        if await auth_controller.account_exists_for_external_id(
            identity.provider, identity.external_id, db
        ):
            logger.info("Account exists for %s:%s, signing in", identity.provider, identity.external_id)
            session = await sign_in_with_migration(email, current, legacy, db, schedule)
            return LinkResult(is_new_account=False, session=session)

        logger.info("No account for %s:%s, registering", identity.provider, identity.external_id)
        metadata = {
            "display_name": identity.display_name,
            "avatar_url": identity.avatar_url,
            "external_id": identity.external_id,
            "provider": identity.provider,
            "identity_trust": identity.trust,
        }
        try:
            user = await auth_controller.sign_up(email, current, metadata, db)
        except AccountLinkConflict:
            logger.warning("Concurrent registration for %s, retrying sign-in", email)
            session = await sign_in_with_migration(email, current, legacy, db, schedule)
            return LinkResult(is_new_account=False, session=session)

        warnings = []
        try:
            await auth_controller.create_profile(user, db)
        except Exception as exc:
            await db.rollback()
            await db.refresh(user)
            logger.error("Profile creation failed for user %s, account kept: %s", user.id, exc)
            warnings.append(ProfileSyncWarning(f"Profile record could not be created: {exc}"))

        session = await auth_controller.issue_session(user, db)
        return LinkResult(is_new_account=True, session=session, warnings=warnings)
    except AuthFlowError as exc:
        raise AccountLinkError(exc) from exc
    except Exception as exc:
        logger.error("Linking %s:%s failed: %s", identity.provider, identity.external_id, exc, exc_info=True)
        raise AccountLinkError(exc) from exc
