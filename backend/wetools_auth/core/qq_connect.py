"""
QQ Connect client
OAuth code exchange and OpenAPI access against graph.qq.com.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import parse_qs, urlencode

import httpx

from wetools_auth.core.config import settings
from wetools_auth.core.errors import ProviderError, SdkLoadFailure
from wetools_auth.core.retry import retry_async

logger = logging.getLogger(__name__)

PROVIDER = "qq"

# Avatar fields in order of preference (100x100 QQ avatar first).
AVATAR_FIELDS = ("figureurl_qq_2", "figureurl_qq_1", "figureurl_2", "figureurl_1", "figureurl")


@dataclass(frozen=True)
class ProviderConfig:
    app_id: str
    app_key: str
    redirect_uri: str
    scope: str
    graph_base: str
    sdk_url: str
    probe_url: str
    provider: str = PROVIDER

    @property
    def marker_id(self) -> str:
        """Identifies one loaded SDK instance; loads are deduplicated on it."""
        return f"{self.provider}-connect-sdk:{self.app_id}"

    @property
    def authorize_url(self) -> str:
        return f"{self.graph_base}/oauth2.0/authorize"


def provider_config_from_settings() -> ProviderConfig:
    return ProviderConfig(
        app_id=settings.QQ_APP_ID,
        app_key=settings.QQ_APP_KEY,
        redirect_uri=settings.QQ_REDIRECT_URI,
        scope=settings.QQ_SCOPE,
        graph_base=settings.QQ_GRAPH_BASE.rstrip("/"),
        sdk_url=settings.QQ_SDK_URL,
        probe_url=settings.QQ_SDK_PROBE_URL,
    )


class ProviderSdkClient(Protocol):
    """What the callback flow needs from a provider SDK."""

    def is_ready(self) -> bool: ...

    async def load(self) -> None: ...

    def login(self, state: str) -> str: ...

    async def get_user_info(self, code: str) -> Dict[str, Any]: ...

    async def aclose(self) -> None: ...


def build_authorize_url(config: ProviderConfig, state: str) -> str:
    """Authorization URL for the outbound redirect."""
    query = urlencode({
        "response_type": "code",
        "client_id": config.app_id,
        "redirect_uri": config.redirect_uri,
        "state": state,
        "scope": config.scope,
    })
    return f"{config.authorize_url}?{query}"


def strip_jsonp(body: str) -> Dict[str, Any]:
    """Decode ``callback( {...} );`` payloads returned by the oauth2.0 endpoints."""
    text = body.strip()
    if text.startswith("callback"):
        text = text[text.index("{"): text.rindex("}") + 1]
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ProviderError("invalid_response", f"Unparseable provider response: {body[:200]}") from exc


def preferred_avatar(info: Dict[str, Any]) -> Optional[str]:
    for field in AVATAR_FIELDS:
        if info.get(field):
            return info[field]
    return None


class QQConnectClient:
    """httpx-backed implementation of ``ProviderSdkClient``."""

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._http = httpx.AsyncClient(
            timeout=settings.QQ_HTTP_TIMEOUT_SECONDS,
            transport=transport or httpx.AsyncHTTPTransport(retries=2),
        )
        self._ready = False

    def is_ready(self) -> bool:
        return self._ready

    async def load(self) -> None:
        """Fetch the SDK bootstrap; an empty or failed response counts as a load error."""
        r = await self._http.get(self.config.sdk_url)
        r.raise_for_status()
        if not r.content:
            raise SdkLoadFailure(f"Empty SDK payload from {self.config.sdk_url}")
        self._ready = True

    def login(self, state: str) -> str:
        return build_authorize_url(self.config, state)

    async def exchange_code_for_token(self, code: str) -> str:
        """Exchange authorization code for access token. Codes are single-use: no retry."""
        r = await self._http.get(f"{self.config.graph_base}/oauth2.0/token", params={
            "grant_type": "authorization_code",
            "client_id": self.config.app_id,
            "client_secret": self.config.app_key,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        })
        r.raise_for_status()
        body = r.text
        access_token = parse_qs(body).get("access_token", [None])[0]
        if access_token:
            return access_token
        # Errors come back as JSONP even though success is urlencoded
        error = strip_jsonp(body) if "{" in body else {}
        raise ProviderError(
            str(error.get("error", "token_exchange_failed")),
            error.get("error_description") or f"No access_token in response: {body[:200]}",
        )

    async def get_openid(self, access_token: str) -> str:
        async def call() -> httpx.Response:
            r = await self._http.get(
                f"{self.config.graph_base}/oauth2.0/me", params={"access_token": access_token}
            )
            r.raise_for_status()
            return r

        r = await retry_async(call, attempts=3, interval=0.2, retry_on=(httpx.TransportError,))
        data = strip_jsonp(r.text)
        openid = data.get("openid")
        if not openid:
            raise ProviderError(str(data.get("error", "missing_openid")), data.get("error_description"))
        return openid

    async def fetch_user_info(self, access_token: str, openid: str) -> Dict[str, Any]:
        async def call() -> httpx.Response:
            r = await self._http.get(f"{self.config.graph_base}/user/get_user_info", params={
                "access_token": access_token,
                "oauth_consumer_key": self.config.app_id,
                "openid": openid,
            })
            r.raise_for_status()
            return r

        r = await retry_async(call, attempts=3, interval=0.2, retry_on=(httpx.TransportError,))
        return r.json()

    async def get_me(self, code: str) -> Tuple[str, str]:
        access_token = await self.exchange_code_for_token(code)
        return access_token, await self.get_openid(access_token)

    async def get_user_info(self, code: str) -> Dict[str, Any]:
        """Raw ``get_user_info`` payload with ``openId`` filled in from the ``/me`` call."""
        access_token, openid = await self.get_me(code)
        info = await self.fetch_user_info(access_token, openid)
        if info.get("openId") and info["openId"] != openid:
            logger.warning("get_user_info openId %s differs from /me openid %s; using /me", info["openId"], openid)
        info["openId"] = openid
        return info

    async def aclose(self) -> None:
        await self._http.aclose()


async def exchange_code_for_profile(client: QQConnectClient, code: str) -> Dict[str, Any]:
    """Server-side exchange: code → token → openid → trimmed profile."""
    info = await client.get_user_info(code)
    if info.get("ret") != 0:
        raise ProviderError(str(info.get("ret")), info.get("msg"))
    return {
        "openId": info["openId"],
        "nickname": info.get("nickname"),
        "gender": info.get("gender"),
        "avatarUrl": preferred_avatar(info),
    }
