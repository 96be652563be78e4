"""Turns a provider redirect into an ``ExternalIdentity``.

Two sources: the provider SDK (preferred) and a locally synthesised
fallback identity for when the SDK is unavailable, blocked or too slow.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from wetools_auth.core.client_storage import SDK_BLOCKED_KEY, ClientStorage
from wetools_auth.core.config import settings
from wetools_auth.core.diagnostics import DiagnosticTrail
from wetools_auth.core.errors import IdentityRetrievalTimeout
from wetools_auth.core.qq_connect import ProviderConfig, preferred_avatar
from wetools_auth.core.result import Fallback, Ok, StepResult
from wetools_auth.core.sdk_loader import SdkLoader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    external_id: str
    display_name: str
    avatar_url: str | None
    gender: str | None = None
    verified: bool = True

    @property
    def trust(self) -> str:
        return "verified" if self.verified else "fallback"


def identity_from_user_info(provider: str, info: dict[str, Any]) -> StepResult[ExternalIdentity]:
    """Validate a raw ``get_user_info`` payload (``ret == 0`` means success)."""
    if not isinstance(info, dict):
        return Fallback(f"malformed user info: {type(info).__name__}")
    if info.get("ret") != 0:
        return Fallback(f"user info returned ret={info.get('ret')}, msg={info.get('msg')}")
    open_id = info.get("openId")
    if not open_id:
        return Fallback("user info has no openId")
    return Ok(ExternalIdentity(
        provider=provider,
        external_id=open_id,
        display_name=info.get("nickname") or f"{provider.upper()} user",
        avatar_url=preferred_avatar(info),
        gender=info.get("gender"),
    ))


def synthesize_fallback_identity(provider: str, code: str, state: str | None) -> ExternalIdentity:
    """Deterministic stand-in identity for one authorization code.

    ``external_id = "<provider>_fb_" + sha256(code || state)[:32]``, where
    ``||`` is plain string concatenation and a missing state counts as "".
    Replays of the same code/state map to the same account; a new code
    never does. The identity is marked unverified.
    """
    digest = hashlib.sha256((code + (state or "")).encode()).hexdigest()
    return ExternalIdentity(
        provider=provider,
        external_id=f"{provider}_fb_{digest[:32]}",
        display_name=f"{provider.upper()} user {digest[:6]}",
        avatar_url=settings.FALLBACK_AVATAR_URL,
        verified=False,
    )


async def resolve_via_sdk(
    loader: SdkLoader,
    config: ProviderConfig,
    code: str,
    storage: ClientStorage,
    trail: DiagnosticTrail,
    call_timeout: float,
) -> StepResult[ExternalIdentity]:
    """SDK path. Every failure is a ``Fallback``, never an error."""
    if storage.get(SDK_BLOCKED_KEY):
        trail.add("Content blocker detected earlier in this session, skipping SDK")
        return Fallback("sdk blocked")

    trail.add("Loading provider SDK...")
    if not await loader.ensure_sdk_ready(config):
        if await loader.probe_blocked(config):
            storage.set(SDK_BLOCKED_KEY, "true")
            trail.warning("SDK load failed and a content blocker was detected")
            return Fallback("sdk blocked")
        trail.warning("SDK load failed")
        return Fallback("sdk load failure")

    client = loader.get_client(config)
    if client is None:
        return Fallback("sdk client unavailable")

    trail.add("SDK ready, requesting user info")
    try:
        info = await asyncio.wait_for(client.get_user_info(code), timeout=call_timeout)
    except asyncio.TimeoutError:
        trail.warning("%s", IdentityRetrievalTimeout(f"get_user_info exceeded {call_timeout}s").detail)
        return Fallback("identity retrieval timeout")
    except Exception as exc:
        trail.warning("SDK user info failed: %s", exc)
        return Fallback(f"sdk error: {exc}")

    result = identity_from_user_info(config.provider, info)
    if isinstance(result, Fallback):
        trail.warning("SDK user info unusable: %s", result.reason)
    return result
