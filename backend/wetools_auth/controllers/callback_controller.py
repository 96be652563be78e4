"""
QQ callback controller: drives a provider redirect to an established session.

    INIT → VALIDATING_REDIRECT → SDK_PATH | FALLBACK_PATH → LINKING → ESTABLISHED
                                                                    ↘ ERROR (from any state)

A watchdog armed at INIT forces FALLBACK_PATH if identity resolution has
not finished in time, so a slow or hung SDK never strands the user.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.controllers.auth_controller import AuthSession
from wetools_auth.controllers.credential_migrator import Scheduler
from wetools_auth.controllers.identity_linker import LinkResult, link_external_identity
from wetools_auth.controllers.identity_resolver import (
    ExternalIdentity,
    resolve_via_sdk,
    synthesize_fallback_identity,
)
from wetools_auth.core.client_storage import CSRF_STATE_KEY, LOGIN_ATTEMPT_KEY, ClientStorage
from wetools_auth.core.config import settings
from wetools_auth.core.diagnostics import DiagnosticTrail, redact
from wetools_auth.core.errors import (
    AuthFlowError,
    CsrfMismatch,
    ErrorKind,
    MissingAuthorizationCode,
    ProviderError,
)
from wetools_auth.core.qq_connect import ProviderConfig
from wetools_auth.core.result import Fail, Fallback, Ok, StepResult
from wetools_auth.core.sdk_loader import SdkLoader

logger = logging.getLogger(__name__)

Linker = Callable[[ExternalIdentity, AsyncSession, Scheduler | None], Awaitable[LinkResult]]


class CallbackState(str, Enum):
    INIT = "init"
    VALIDATING_REDIRECT = "validating_redirect"
    SDK_PATH = "sdk_path"
    FALLBACK_PATH = "fallback_path"
    LINKING = "linking"
    ESTABLISHED = "established"
    ERROR = "error"


TERMINAL_STATES = {CallbackState.ESTABLISHED, CallbackState.ERROR}


@dataclass(frozen=True)
class RedirectParams:
    code: str
    state: str | None


@dataclass
class CallbackOutcome:
    state: CallbackState
    history: list[CallbackState]
    trail: list[str]
    session: AuthSession | None = None
    is_new_account: bool = False
    identity: ExternalIdentity | None = None
    error_kind: ErrorKind | None = None
    error_detail: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state == CallbackState.ESTABLISHED


def validate_redirect(params: Mapping[str, str], storage: ClientStorage) -> StepResult[RedirectParams]:
    """Check the redirect query. The stored CSRF state is consumed whatever the outcome."""
    stored_state = storage.pop(CSRF_STATE_KEY)
    error_code = params.get("error")
    if error_code:
        err = ProviderError(error_code, params.get("error_description"))
        return Fail(err.kind, err.detail)

    code = params.get("code")
    if not code:
        return Fail(ErrorKind.missing_authorization_code, MissingAuthorizationCode().detail)

    state = params.get("state")
    if stored_state is not None and state != stored_state:
        return Fail(ErrorKind.csrf_mismatch, CsrfMismatch().detail)

    return Ok(RedirectParams(code=code, state=state))


class QQCallbackHandler:
    """One callback invocation. Not reusable: create one per redirect."""

    def __init__(
        self,
        params: Mapping[str, str],
        storage: ClientStorage,
        db: AsyncSession,
        *,
        loader: SdkLoader,
        provider_config: ProviderConfig,
        linker: Linker = link_external_identity,
        schedule: Scheduler | None = None,
        watchdog_seconds: float | None = None,
        sdk_call_timeout: float | None = None,
    ):
        self.params = params
        self.storage = storage
        self.db = db
        self.loader = loader
        self.config = provider_config
        self.linker = linker
        self.schedule = schedule
        self.watchdog_seconds = watchdog_seconds if watchdog_seconds is not None else settings.CALLBACK_WATCHDOG_SECONDS
        self.sdk_call_timeout = sdk_call_timeout if sdk_call_timeout is not None else settings.SDK_CALL_TIMEOUT_SECONDS

        self.state = CallbackState.INIT
        self.history: list[CallbackState] = [CallbackState.INIT]
        self.trail = DiagnosticTrail(logger, "[QQ Callback] ")
        self.watchdog_fired = False
        self._watchdog: asyncio.TimerHandle | None = None
        self._resolution: asyncio.Task | None = None

    # ── State bookkeeping ─────────────────────────────────────

    def _enter(self, state: CallbackState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Callback already finished in {self.state.value}")
        self.trail.add("%s → %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _arm_watchdog(self) -> None:
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self.watchdog_seconds, self._on_watchdog)

    def _on_watchdog(self) -> None:
        self._watchdog = None
        if self.state in TERMINAL_STATES:
            return
        self.watchdog_fired = True
        self.trail.warning("Watchdog fired after %.1fs in %s", self.watchdog_seconds, self.state.value)
        # Only identity resolution is abandoned; linking runs to completion.
        if self._resolution is not None and not self._resolution.done():
            self._resolution.cancel()

    def _clear_timers(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def cancel(self) -> None:
        """Teardown: the owner is gone (navigation, disconnect). Stops timers and work."""
        self._clear_timers()
        if self._resolution is not None and not self._resolution.done():
            self._resolution.cancel()

    # ── Flow ──────────────────────────────────────────────────

    async def run(self) -> CallbackOutcome:
        self._arm_watchdog()
        self.trail.add(
            "Callback started: code=%s, state=%s",
            redact(self.params.get("code")), self.params.get("state") or "N/A",
        )
        try:
            self._enter(CallbackState.VALIDATING_REDIRECT)
            validated = validate_redirect(self.params, self.storage)
            if isinstance(validated, Fail):
                return self._fail(validated.kind, validated.detail)
            redirect = validated.value
            self.trail.add("State check passed" if redirect.state else "No state to verify")

            identity = await self._resolve_identity(redirect)

            self._enter(CallbackState.LINKING)
            try:
                link = await self.linker(identity, self.db, self.schedule)
            except AuthFlowError as exc:
                return self._fail(exc.kind, exc.detail)
            return self._establish(identity, link)
        except asyncio.CancelledError:
            self.trail.error("Callback cancelled in %s", self.state.value)
            self._finish()
            raise
        except Exception as exc:
            logger.error("Unexpected callback failure: %s", exc, exc_info=True)
            return self._fail(ErrorKind.account_link_failed, str(exc))

    async def _resolve_identity(self, redirect: RedirectParams) -> ExternalIdentity:
        result: StepResult[ExternalIdentity] = Fallback("watchdog")
        if not self.watchdog_fired:
            self._enter(CallbackState.SDK_PATH)
            self._resolution = asyncio.ensure_future(resolve_via_sdk(
                self.loader, self.config, redirect.code, self.storage, self.trail, self.sdk_call_timeout,
            ))
            try:
                result = await self._resolution
            except asyncio.CancelledError:
                if not self.watchdog_fired:
                    raise
                result = Fallback("watchdog fired during SDK path")
            finally:
                self._resolution = None

        if isinstance(result, Ok):
            self.trail.add("Provider identity resolved: %s", result.value.display_name)
            return result.value

        self._enter(CallbackState.FALLBACK_PATH)
        self.trail.add("Using fallback identity (%s)", result.reason)
        return synthesize_fallback_identity(self.config.provider, redirect.code, redirect.state)

    def _establish(self, identity: ExternalIdentity, link: LinkResult) -> CallbackOutcome:
        self._enter(CallbackState.ESTABLISHED)
        for warning in link.warnings:
            self.trail.warning("%s", warning.detail)
        self.trail.add("Session established (%s account)", "new" if link.is_new_account else "existing")
        self._finish()
        return CallbackOutcome(
            state=self.state,
            history=list(self.history),
            trail=self.trail.lines,
            session=link.session,
            is_new_account=link.is_new_account,
            identity=identity,
            warnings=[w.detail for w in link.warnings],
        )

    def _fail(self, kind: ErrorKind, detail: str) -> CallbackOutcome:
        self.trail.error("Callback failed (%s): %s", kind.value, detail)
        self._enter(CallbackState.ERROR)
        self._finish()
        return CallbackOutcome(
            state=self.state,
            history=list(self.history),
            trail=self.trail.lines,
            error_kind=kind,
            error_detail=detail,
        )

    def _finish(self) -> None:
        self._clear_timers()
        self.storage.delete(LOGIN_ATTEMPT_KEY)
