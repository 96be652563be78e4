"""
Shared FastAPI dependencies: single source of truth for DI.

All routers should import their dependencies from HERE, not directly
from core.security, core.sdk_loader or db.database. Tests override these.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from wetools_auth.core.client_storage import ClientStorage
from wetools_auth.core.qq_connect import ProviderConfig, provider_config_from_settings
from wetools_auth.core.sdk_loader import SdkLoader, sdk_loader
from wetools_auth.core.security import get_current_user as _require_auth
from wetools_auth.db.database import get_db as _get_db
from wetools_auth.models.user import User

__all__ = [
    "get_db",
    "get_current_user",
    "get_client_storage",
    "get_sdk_loader",
    "get_provider_config",
]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async for session in _get_db():
        yield session


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    return await _require_auth(request, db)


def get_client_storage(request: Request) -> ClientStorage:
    """Session + cookie layers of the calling client, shared within one request."""
    return ClientStorage.from_request(request)


def get_sdk_loader() -> SdkLoader:
    return sdk_loader


def get_provider_config() -> ProviderConfig:
    return provider_config_from_settings()
