import logging

from conftest import OPEN_ID, QQ_USER_INFO, FakeSdkClient, make_loader
from wetools_auth.controllers.identity_resolver import (
    identity_from_user_info,
    resolve_via_sdk,
    synthesize_fallback_identity,
)
from wetools_auth.core.client_storage import SDK_BLOCKED_KEY
from wetools_auth.core.config import settings
from wetools_auth.core.diagnostics import DiagnosticTrail
from wetools_auth.core.result import Fallback, Ok


def _trail():
    return DiagnosticTrail(logging.getLogger("tests.resolver"))


def test_fallback_identity_is_deterministic_per_code_and_state():
    first = synthesize_fallback_identity("qq", "CODE1", "STATE")
    again = synthesize_fallback_identity("qq", "CODE1", "STATE")
    other_code = synthesize_fallback_identity("qq", "CODE2", "STATE")

    assert first.external_id == again.external_id
    assert first.external_id != other_code.external_id
    assert first.external_id.startswith("qq_fb_")
    assert len(first.external_id) == len("qq_fb_") + 32


def test_fallback_identity_treats_missing_state_as_empty():
    assert (
        synthesize_fallback_identity("qq", "CODE1", None).external_id
        == synthesize_fallback_identity("qq", "CODE1", "").external_id
    )


def test_fallback_identity_is_unverified():
    identity = synthesize_fallback_identity("qq", "CODE1", "STATE")
    assert identity.verified is False
    assert identity.trust == "fallback"
    assert identity.avatar_url == settings.FALLBACK_AVATAR_URL


def test_identity_from_user_info():
    result = identity_from_user_info("qq", QQ_USER_INFO)
    assert isinstance(result, Ok)
    assert result.value.external_id == OPEN_ID
    assert result.value.display_name == "小明"
    assert result.value.avatar_url == "http://thirdqq.qlogo.cn/g?s=100"
    assert result.value.trust == "verified"

    unnamed = identity_from_user_info("qq", {"ret": 0, "openId": OPEN_ID})
    assert unnamed.value.display_name == "QQ user"


def test_identity_from_user_info_rejects_bad_payloads():
    assert isinstance(identity_from_user_info("qq", {"ret": 100030, "msg": "denied"}), Fallback)
    assert isinstance(identity_from_user_info("qq", {"ret": 0, "nickname": "x"}), Fallback)
    assert isinstance(identity_from_user_info("qq", None), Fallback)


async def test_resolve_via_sdk_success(provider_config, sdk_client, storage):
    result = await resolve_via_sdk(make_loader(sdk_client), provider_config, "CODE", storage, _trail(), 1.0)

    assert isinstance(result, Ok)
    assert result.value.external_id == OPEN_ID
    assert sdk_client.info_calls == 1


async def test_blocked_sdk_is_remembered_and_user_info_never_requested(provider_config, storage):
    client = FakeSdkClient(fail_load=True)
    loader = make_loader(client, blocked=True)

    result = await resolve_via_sdk(loader, provider_config, "CODE", storage, _trail(), 1.0)

    assert result == Fallback("sdk blocked")
    assert storage.get(SDK_BLOCKED_KEY) == "true"
    assert client.info_calls == 0

    # Next attempt in the same session skips loading entirely
    result = await resolve_via_sdk(loader, provider_config, "CODE", storage, _trail(), 1.0)
    assert result == Fallback("sdk blocked")
    assert client.load_calls == 1


async def test_load_failure_without_blocker(provider_config, storage):
    client = FakeSdkClient(fail_load=True)

    result = await resolve_via_sdk(make_loader(client), provider_config, "CODE", storage, _trail(), 1.0)

    assert result == Fallback("sdk load failure")
    assert storage.get(SDK_BLOCKED_KEY) is None


async def test_slow_user_info_times_out(provider_config, storage):
    client = FakeSdkClient(delay=1.0)
    trail = _trail()

    result = await resolve_via_sdk(make_loader(client), provider_config, "CODE", storage, trail, 0.05)

    assert result == Fallback("identity retrieval timeout")
    assert any("exceeded" in line for line in trail.lines)


async def test_unusable_user_info_falls_back(provider_config, storage):
    client = FakeSdkClient(info={"ret": -1, "msg": "client request's parameters are invalid"})

    result = await resolve_via_sdk(make_loader(client), provider_config, "CODE", storage, _trail(), 1.0)

    assert isinstance(result, Fallback)
    assert "ret=-1" in result.reason
