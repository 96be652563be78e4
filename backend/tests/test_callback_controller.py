import asyncio

import pytest

from conftest import OPEN_ID, FakeSdkClient, make_loader, memory_storage
from wetools_auth.controllers.auth_controller import AuthSession
from wetools_auth.controllers.callback_controller import (
    CallbackState,
    QQCallbackHandler,
    RedirectParams,
    validate_redirect,
)
from wetools_auth.controllers.identity_linker import LinkResult
from wetools_auth.core.client_storage import CSRF_STATE_KEY, LOGIN_ATTEMPT_KEY
from wetools_auth.core.errors import (
    AccountLinkConflict,
    AccountLinkError,
    ErrorKind,
    ProfileSyncWarning,
)
from wetools_auth.core.result import Fail, Ok
from wetools_auth.models.user import User

S = CallbackState


class RecordingLinker:
    def __init__(self, error=None, warnings=None):
        self.error = error
        self.warnings = warnings or []
        self.identities = []

    async def __call__(self, identity, db, schedule=None):
        self.identities.append(identity)
        if self.error:
            raise self.error
        user = User(email=f"{identity.external_id}@qq.wetools.auth")
        return LinkResult(
            is_new_account=True,
            session=AuthSession(access_token="access", refresh_token="refresh", user=user),
            warnings=list(self.warnings),
        )


def _handler(params, storage, loader, config, linker, **kwargs):
    kwargs.setdefault("watchdog_seconds", 5)
    kwargs.setdefault("sdk_call_timeout", 1)
    return QQCallbackHandler(
        params, storage, None, loader=loader, provider_config=config, linker=linker, **kwargs
    )


# ── Redirect validation ───────────────────────────────────────

def test_matching_state_passes_and_is_consumed():
    storage = memory_storage(session={CSRF_STATE_KEY: "S1"})
    result = validate_redirect({"code": "C", "state": "S1"}, storage)
    assert result == Ok(RedirectParams(code="C", state="S1"))
    assert storage.get(CSRF_STATE_KEY) is None


def test_state_mismatch_is_rejected_and_state_still_consumed():
    storage = memory_storage(session={CSRF_STATE_KEY: "S1"})
    result = validate_redirect({"code": "C", "state": "FORGED"}, storage)
    assert isinstance(result, Fail)
    assert result.kind == ErrorKind.csrf_mismatch
    assert storage.get(CSRF_STATE_KEY) is None


def test_missing_stored_state_skips_the_check():
    result = validate_redirect({"code": "C", "state": "ANY"}, memory_storage())
    assert result == Ok(RedirectParams(code="C", state="ANY"))


def test_missing_code_and_provider_error():
    missing = validate_redirect({"state": "S1"}, memory_storage())
    assert missing.kind == ErrorKind.missing_authorization_code

    denied = validate_redirect(
        {"error": "access_denied", "error_description": "user cancelled", "code": "C"},
        memory_storage(),
    )
    assert denied.kind == ErrorKind.provider_error
    assert "access_denied" in denied.detail


# ── Handler ───────────────────────────────────────────────────

async def test_sdk_path_establishes_session(provider_config, sdk_client):
    storage = memory_storage(session={CSRF_STATE_KEY: "S1", LOGIN_ATTEMPT_KEY: "true"})
    linker = RecordingLinker()
    handler = _handler({"code": "AUTHCODE123", "state": "S1"}, storage, make_loader(sdk_client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.ok
    assert outcome.history == [S.INIT, S.VALIDATING_REDIRECT, S.SDK_PATH, S.LINKING, S.ESTABLISHED]
    assert outcome.identity.external_id == OPEN_ID
    assert outcome.identity.verified
    assert outcome.session.access_token == "access"
    assert storage.get(LOGIN_ATTEMPT_KEY) is None
    assert handler._watchdog is None
    assert any(line.startswith("Callback started: code=AUTHC...") for line in outcome.trail)


async def test_blocked_sdk_goes_straight_to_fallback(provider_config):
    client = FakeSdkClient(fail_load=True)
    storage = memory_storage(session={CSRF_STATE_KEY: "S1"})
    linker = RecordingLinker()
    handler = _handler({"code": "C1", "state": "S1"}, storage, make_loader(client, blocked=True), provider_config, linker)

    outcome = await handler.run()

    assert outcome.ok
    assert S.FALLBACK_PATH in outcome.history
    assert client.info_calls == 0
    assert outcome.identity.external_id.startswith("qq_fb_")
    assert not outcome.identity.verified


async def test_watchdog_forces_fallback_when_sdk_hangs(provider_config):
    client = FakeSdkClient(delay=10)
    linker = RecordingLinker()
    handler = _handler(
        {"code": "C1", "state": "S1"}, memory_storage(), make_loader(client), provider_config, linker,
        watchdog_seconds=0.05, sdk_call_timeout=30,
    )

    outcome = await asyncio.wait_for(handler.run(), timeout=5)

    assert handler.watchdog_fired
    assert outcome.ok
    assert outcome.history == [
        S.INIT, S.VALIDATING_REDIRECT, S.SDK_PATH, S.FALLBACK_PATH, S.LINKING, S.ESTABLISHED,
    ]
    assert linker.identities[0].external_id.startswith("qq_fb_")


async def test_csrf_mismatch_never_links(provider_config, sdk_client):
    storage = memory_storage(session={CSRF_STATE_KEY: "S1", LOGIN_ATTEMPT_KEY: "true"})
    linker = RecordingLinker()
    handler = _handler({"code": "C1", "state": "FORGED"}, storage, make_loader(sdk_client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.state == S.ERROR
    assert outcome.history == [S.INIT, S.VALIDATING_REDIRECT, S.ERROR]
    assert outcome.error_kind == ErrorKind.csrf_mismatch
    assert linker.identities == []
    assert sdk_client.load_calls == 0
    assert storage.get(LOGIN_ATTEMPT_KEY) is None


async def test_link_failure_ends_in_error_with_trail(provider_config, sdk_client):
    linker = RecordingLinker(error=AccountLinkError(AccountLinkConflict("taken")))
    handler = _handler({"code": "C1"}, memory_storage(), make_loader(sdk_client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.state == S.ERROR
    assert outcome.error_kind == ErrorKind.account_link_conflict
    assert outcome.history[-2:] == [S.LINKING, S.ERROR]
    assert any("Callback failed" in line for line in outcome.trail)


async def test_profile_warning_is_surfaced(provider_config, sdk_client):
    linker = RecordingLinker(warnings=[ProfileSyncWarning("profile insert failed")])
    handler = _handler({"code": "C1"}, memory_storage(), make_loader(sdk_client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.ok
    assert outcome.warnings == ["profile insert failed"]


async def test_terminal_state_is_final(provider_config, sdk_client):
    handler = _handler({"code": "C1"}, memory_storage(), make_loader(sdk_client), provider_config, RecordingLinker())
    await handler.run()

    with pytest.raises(RuntimeError):
        handler._enter(S.LINKING)


async def test_cancel_stops_the_flow(provider_config):
    storage = memory_storage(session={LOGIN_ATTEMPT_KEY: "true"})
    client = FakeSdkClient(delay=10)
    handler = _handler({"code": "C1"}, storage, make_loader(client), provider_config, RecordingLinker(), sdk_call_timeout=30)

    task = asyncio.ensure_future(handler.run())
    while client.info_calls == 0:
        await asyncio.sleep(0.01)
    handler.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert handler._watchdog is None
    assert storage.get(LOGIN_ATTEMPT_KEY) is None


async def test_unexpected_sdk_error_takes_the_fallback_path(provider_config):
    client = FakeSdkClient(info_error=RuntimeError("sdk internal error"))
    linker = RecordingLinker()
    handler = _handler({"code": "C1", "state": "S1"}, memory_storage(), make_loader(client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.ok
    assert outcome.history == [
        S.INIT, S.VALIDATING_REDIRECT, S.SDK_PATH, S.FALLBACK_PATH, S.LINKING, S.ESTABLISHED,
    ]
    assert client.info_calls == 1
    assert linker.identities[0].external_id.startswith("qq_fb_")
    assert any("sdk internal error" in line for line in outcome.trail)


async def test_non_dict_user_info_takes_the_fallback_path(provider_config):
    client = FakeSdkClient(info=[{"ret": 0, "openId": OPEN_ID}])
    linker = RecordingLinker()
    handler = _handler({"code": "C1"}, memory_storage(), make_loader(client), provider_config, linker)

    outcome = await handler.run()

    assert outcome.ok
    assert S.FALLBACK_PATH in outcome.history
    assert not linker.identities[0].verified
