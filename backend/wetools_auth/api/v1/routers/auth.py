"""Auth router: thin HTTP layer, delegates all logic to the controllers."""

import logging
import secrets
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.responses import RedirectResponse

from wetools_auth.api.deps import (
    get_client_storage,
    get_current_user,
    get_db,
    get_provider_config,
    get_sdk_loader,
)
from wetools_auth.controllers import auth_controller
from wetools_auth.controllers.callback_controller import QQCallbackHandler
from wetools_auth.controllers.session_recovery import SessionRecoveryManager
from wetools_auth.core.client_storage import (
    CSRF_STATE_KEY,
    LOGIN_ATTEMPT_KEY,
    LOGIN_FROM_KEY,
    ClientStorage,
)
from wetools_auth.core.config import settings
from wetools_auth.core.errors import NetworkUnavailable
from wetools_auth.core.qq_connect import (
    ProviderConfig,
    QQConnectClient,
    build_authorize_url,
    exchange_code_for_profile,
)
from wetools_auth.core.sdk_loader import SdkLoader
from wetools_auth.models.user import User
from wetools_auth.schemas.auth import (
    CallbackFailure,
    ExchangeRequest,
    ExchangeResponse,
    RecoveryRead,
    UserRead,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _safe_next(path: str | None) -> str:
    """Only same-site absolute paths are allowed as post-login targets."""
    if not path or not path.startswith("/") or path.startswith("//"):
        return "/"
    return path


# ── QQ OAuth ──────────────────────────────────────────────────

@router.get("/qq/login")
async def qq_login(
    next: str | None = None,
    storage: ClientStorage = Depends(get_client_storage),
    config: ProviderConfig = Depends(get_provider_config),
):
    """Redirect the user to QQ's consent screen, after persisting the CSRF state."""
    state = secrets.token_urlsafe(32)
    storage.set(CSRF_STATE_KEY, state)
    storage.set(LOGIN_FROM_KEY, _safe_next(next))
    storage.set(LOGIN_ATTEMPT_KEY, "true")
    return RedirectResponse(url=build_authorize_url(config, state), status_code=302)


@router.get("/qq/callback")
async def qq_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    storage: ClientStorage = Depends(get_client_storage),
    loader: SdkLoader = Depends(get_sdk_loader),
    config: ProviderConfig = Depends(get_provider_config),
    db: AsyncSession = Depends(get_db),
):
    """Handle the redirect back from QQ and establish a session."""
    handler = QQCallbackHandler(
        dict(request.query_params),
        storage,
        db,
        loader=loader,
        provider_config=config,
        schedule=background_tasks.add_task,
    )
    outcome = await handler.run()
    login_from = _safe_next(storage.pop(LOGIN_FROM_KEY))

    if not outcome.ok:
        body = CallbackFailure(
            kind=outcome.error_kind.value,
            detail=outcome.error_detail or "Login failed",
            trail=outcome.trail,
            retry_url=f"{settings.API_V1_STR}/auth/qq/login?{urlencode({'next': login_from})}",
            sign_in_url="/login",
        )
        response = JSONResponse(status_code=400, content=body.model_dump())
        storage.apply(response)
        return response

    auth_controller.store_session(storage, outcome.session)
    redirect = RedirectResponse(url=f"{settings.FRONTEND_ORIGIN}{login_from}", status_code=302)
    storage.apply(redirect)
    return redirect


@router.post("/qq/exchange", response_model=ExchangeResponse)
async def qq_exchange(
    payload: ExchangeRequest,
    config: ProviderConfig = Depends(get_provider_config),
):
    """Server-side code exchange: code → access token → openid → trimmed profile."""
    client = QQConnectClient(config)
    try:
        return await exchange_code_for_profile(client, payload.code)
    except httpx.HTTPError as exc:
        logger.error("QQ exchange failed: %s", exc)
        raise NetworkUnavailable(f"QQ API unreachable: {exc}") from exc
    finally:
        await client.aclose()


# ── Session Management ────────────────────────────────────────

@router.post("/recover", response_model=RecoveryRead)
async def recover(
    response: Response,
    storage: ClientStorage = Depends(get_client_storage),
    db: AsyncSession = Depends(get_db),
):
    """Bootstrap-time session recovery: refresh, or purge everything on a bad token."""
    result = await SessionRecoveryManager(storage, db).recover_session()
    storage.apply(response)
    return RecoveryRead(
        success=result.success,
        purged=result.purged,
        user=UserRead.model_validate(result.session.user) if result.session else None,
        error_kind=result.error_kind.value if result.error_kind else None,
        error_detail=result.error_detail,
    )


@router.post("/logout")
async def logout(
    response: Response,
    storage: ClientStorage = Depends(get_client_storage),
    db: AsyncSession = Depends(get_db),
):
    """Purge every client auth artifact and revoke the session server-side."""
    removed = await SessionRecoveryManager(storage, db).purge_all_auth_artifacts()
    storage.apply(response)
    return {"status": "logged_out", "removed": removed}


@router.get("/me", response_model=UserRead)
async def get_me(user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return user
