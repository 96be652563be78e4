"""Loads and initialises the provider SDK client, once per provider app."""

import asyncio
import logging
from collections.abc import Callable

import httpx

from wetools_auth.core.config import settings
from wetools_auth.core.qq_connect import ProviderConfig, ProviderSdkClient, QQConnectClient
from wetools_auth.core.retry import poll_until

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderConfig], ProviderSdkClient]


class SdkLoader:
    """Factory for ready ``ProviderSdkClient`` instances.

    Loading is idempotent: concurrent callers share one in-flight load per
    marker id, and a ready client is returned without reloading. A failed
    load drops the marker so the next call starts over.
    """

    def __init__(
        self,
        client_factory: ClientFactory = QQConnectClient,
        probe_transport: httpx.AsyncBaseTransport | None = None,
        poll_attempts: int | None = None,
        poll_interval: float | None = None,
    ):
        self._client_factory = client_factory
        self._probe_transport = probe_transport
        self._poll_attempts = poll_attempts if poll_attempts is not None else settings.SDK_POLL_ATTEMPTS
        self._poll_interval = poll_interval if poll_interval is not None else settings.SDK_POLL_INTERVAL_SECONDS
        self._clients: dict[str, ProviderSdkClient] = {}
        self._loads: dict[str, asyncio.Future] = {}

    def get_client(self, config: ProviderConfig) -> ProviderSdkClient | None:
        client = self._clients.get(config.marker_id)
        if client is not None and client.is_ready():
            return client
        return None

    async def ensure_sdk_ready(self, config: ProviderConfig) -> bool:
        """Resolve ``True`` once the SDK client is usable, ``False`` if it cannot be loaded."""
        marker = config.marker_id
        if self.get_client(config) is not None:
            return True

        load = self._loads.get(marker)
        if load is None:
            logger.info("[%s] loading SDK from %s", marker, config.sdk_url)
            client = self._client_factory(config)
            self._clients[marker] = client
            load = asyncio.ensure_future(client.load())
            self._loads[marker] = load
        else:
            logger.info("[%s] SDK load already in progress, waiting", marker)
            client = self._clients[marker]

        try:
            await asyncio.shield(load)
        except Exception as exc:
            logger.error("[%s] SDK load failed: %s", marker, exc)
            await self._discard(marker, client)
            return False

        # The SDK may finish initialising after its payload arrives
        if not await poll_until(client.is_ready, attempts=self._poll_attempts, interval=self._poll_interval):
            logger.error("[%s] SDK loaded but never became ready", marker)
            await self._discard(marker, client)
            return False

        logger.info("[%s] SDK ready", marker)
        return True

    async def probe_blocked(self, config: ProviderConfig) -> bool:
        """Detect a content blocker sitting between us and the SDK host.

        Requests a URL made of well-known ad markers. Filtering proxies and
        DNS sinkholes answer with an empty body or refuse the connection.
        """
        try:
            async with httpx.AsyncClient(timeout=5, transport=self._probe_transport) as client:
                r = await client.get(config.probe_url)
        except httpx.TransportError as exc:
            logger.warning("[%s] ad-block probe refused (%s), treating as blocked", config.marker_id, exc)
            return True
        blocked = len(r.content) == 0
        if blocked:
            logger.warning("[%s] ad-block probe collapsed to an empty body", config.marker_id)
        return blocked

    async def _discard(self, marker: str, client: ProviderSdkClient) -> None:
        if self._clients.get(marker) is client:
            del self._clients[marker]
            self._loads.pop(marker, None)
            await client.aclose()

    async def aclose(self) -> None:
        for client in list(self._clients.values()):
            await client.aclose()
        self._clients.clear()
        self._loads.clear()


sdk_loader = SdkLoader()
