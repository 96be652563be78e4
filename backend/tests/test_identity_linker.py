import pytest
from sqlalchemy import select

from conftest import OPEN_ID
from wetools_auth.controllers import auth_controller
from wetools_auth.controllers.identity_linker import link_external_identity
from wetools_auth.controllers.identity_resolver import (
    ExternalIdentity,
    synthesize_fallback_identity,
)
from wetools_auth.core.errors import AccountLinkError, ErrorKind
from wetools_auth.core.security import (
    derive_current_credential,
    derive_legacy_credential,
    verify_access_token,
    verify_password,
)
from wetools_auth.models.oauth_account import OAuthAccount
from wetools_auth.models.profile import UserProfile
from wetools_auth.models.user import User

IDENTITY = ExternalIdentity(
    provider="qq",
    external_id=OPEN_ID,
    display_name="小明",
    avatar_url="http://thirdqq.qlogo.cn/g?s=100",
    gender="男",
)


def _no_schedule(func, *args):
    raise AssertionError("no credential rewrite expected")


async def _profile_for(db, user_id):
    result = await db.execute(select(UserProfile).where(UserProfile.user_id == user_id))
    return result.scalar_one_or_none()


async def test_new_identity_creates_account_and_profile(db):
    result = await link_external_identity(IDENTITY, db, _no_schedule)
    await db.commit()

    assert result.is_new_account
    assert result.warnings == []
    user = result.session.user
    assert user.email == f"{OPEN_ID}@qq.wetools.auth"
    assert user.display_name == "小明"
    assert user.user_metadata["identity_trust"] == "verified"
    assert verify_password(derive_current_credential("qq", OPEN_ID), user.hashed_password)
    assert verify_access_token(result.session.access_token)["sub"] == str(user.id)

    profile = await _profile_for(db, user.id)
    assert profile.nickname == "小明"
    assert profile.qq_open_id == OPEN_ID
    assert profile.avatar_url == "http://thirdqq.qlogo.cn/g?s=100"

    account = (await db.execute(select(OAuthAccount))).scalar_one()
    assert (account.provider, account.provider_user_id, account.is_verified) == ("qq", OPEN_ID, True)
    assert account.provider_nickname == "小明"
    assert user.last_login_at is not None


async def test_returning_identity_signs_into_same_account(db):
    first = await link_external_identity(IDENTITY, db, _no_schedule)
    await db.commit()

    second = await link_external_identity(IDENTITY, db, _no_schedule)
    await db.commit()

    assert not second.is_new_account
    assert second.session.user.id == first.session.user.id
    users = (await db.execute(select(User))).scalars().all()
    assert len(users) == 1


async def test_fallback_identity_is_flagged(db):
    identity = synthesize_fallback_identity("qq", "CODE1", "STATE")

    result = await link_external_identity(identity, db, _no_schedule)
    await db.commit()

    assert result.session.user.user_metadata["identity_trust"] == "fallback"
    account = (await db.execute(select(OAuthAccount))).scalar_one()
    assert account.is_verified is False


async def test_profile_failure_keeps_the_account(db, monkeypatch):
    async def broken_profile(user, session):
        raise RuntimeError("user_profiles insert rejected")

    monkeypatch.setattr(auth_controller, "create_profile", broken_profile)

    result = await link_external_identity(IDENTITY, db, _no_schedule)
    await db.commit()

    assert result.is_new_account
    assert len(result.warnings) == 1
    assert result.warnings[0].kind == ErrorKind.profile_sync_warning
    assert await auth_controller.account_exists_for_external_id("qq", OPEN_ID, db)
    assert await _profile_for(db, result.session.user.id) is None


async def test_registration_race_falls_back_to_sign_in(db, make_user):
    # Another tab registered the account between our lookup and our insert
    existing = await make_user(password=derive_current_credential("qq", OPEN_ID), linked=False)

    result = await link_external_identity(IDENTITY, db, _no_schedule)
    await db.commit()

    assert not result.is_new_account
    assert result.session.user.id == existing.id


async def test_legacy_account_is_signed_in_and_migrated(db, make_user):
    user = await make_user(password=derive_legacy_credential("qq", OPEN_ID))
    scheduled = []

    result = await link_external_identity(IDENTITY, db, lambda func, *args: scheduled.append(args))
    await db.commit()

    assert not result.is_new_account
    assert result.session.user.id == user.id
    assert scheduled == [(user.id, user.email, derive_current_credential("qq", OPEN_ID))]


async def test_unexpected_failure_is_wrapped(db, monkeypatch):
    async def down(provider, external_id, session):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(auth_controller, "account_exists_for_external_id", down)

    with pytest.raises(AccountLinkError) as exc_info:
        await link_external_identity(IDENTITY, db, _no_schedule)
    assert exc_info.value.kind == ErrorKind.account_link_failed
    assert isinstance(exc_info.value.cause, RuntimeError)
