"""Client-persisted state, seen as a set of key-value layers.

The browser keeps login state in two places we control: the signed
Starlette session (CSRF state, login origin, attempt marker) and plain
cookies (the access/refresh token pair). Both are exposed through the same
small interface so the purge can sweep every layer with one loop.
"""

from collections.abc import Iterable, MutableMapping
from typing import Protocol

from fastapi import Request, Response

from wetools_auth.core.config import ModeEnum, settings

# Single-use keys written by the QQ login flow
CSRF_STATE_KEY = "qq_state"
LOGIN_FROM_KEY = "qq_login_from"
LOGIN_ATTEMPT_KEY = "qq_login_attempt"
SDK_BLOCKED_KEY = "qq_sdk_blocked"

# Any key containing one of these belongs to auth and is swept on purge
AUTH_KEY_PATTERNS = ("auth", "token", "sb-", "qq_")


def is_auth_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in AUTH_KEY_PATTERNS)


class ClientStore(Protocol):
    name: str

    def keys(self) -> list[str]: ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, max_age: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Plain dict layer. Used outside a request and in tests."""

    def __init__(self, name: str = "memory", data: dict[str, str] | None = None):
        self.name = name
        self.data: dict[str, str] = dict(data or {})

    def keys(self) -> list[str]:
        return list(self.data)

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str, max_age: int | None = None) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SessionStore:
    """Layer over ``request.session`` (SessionMiddleware)."""

    name = "session"

    def __init__(self, session: MutableMapping):
        self._session = session

    def keys(self) -> list[str]:
        return list(self._session.keys())

    def get(self, key: str) -> str | None:
        value = self._session.get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str, max_age: int | None = None) -> None:
        self._session[key] = value

    def delete(self, key: str) -> None:
        self._session.pop(key, None)


class CookieStore:
    """Layer over request cookies. Writes are queued and applied to whichever
    response the route finally returns (JSON or redirect)."""

    name = "cookies"

    def __init__(self, cookies: dict[str, str]):
        self._values: dict[str, str] = dict(cookies)
        self._pending: dict[str, tuple[str | None, int | None]] = {}

    def keys(self) -> list[str]:
        return list(self._values)

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str, max_age: int | None = None) -> None:
        self._values[key] = value
        self._pending[key] = (value, max_age)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._pending[key] = (None, None)

    def apply(self, response: Response) -> None:
        """Emit Set-Cookie headers for every queued write and delete."""
        is_secure = settings.MODE != ModeEnum.development
        for key, (value, max_age) in self._pending.items():
            if value is None:
                response.delete_cookie(key, path="/")
            else:
                response.set_cookie(
                    key=key,
                    value=value,
                    httponly=True,
                    secure=is_secure,
                    samesite="lax",
                    max_age=max_age,
                    path="/",
                )
        self._pending.clear()


class ClientStorage:
    """All layers of one client. Reads return the first hit, deletes hit every layer."""

    def __init__(self, layers: Iterable[ClientStore]):
        self.layers: list[ClientStore] = list(layers)

    @classmethod
    def from_request(cls, request: Request) -> "ClientStorage":
        return cls([SessionStore(request.session), CookieStore(request.cookies)])

    def layer(self, name: str) -> ClientStore | None:
        for layer in self.layers:
            if layer.name == name:
                return layer
        return None

    def get(self, key: str) -> str | None:
        for layer in self.layers:
            value = layer.get(key)
            if value is not None:
                return value
        return None

    def set(self, key: str, value: str, *, layer: str = "session", max_age: int | None = None) -> None:
        target = self.layer(layer) or self.layers[0]
        target.set(key, value, max_age=max_age)

    def pop(self, key: str) -> str | None:
        value = self.get(key)
        self.delete(key)
        return value

    def delete(self, key: str) -> None:
        for layer in self.layers:
            layer.delete(key)

    def auth_keys(self) -> dict[str, list[str]]:
        return {layer.name: [k for k in layer.keys() if is_auth_key(k)] for layer in self.layers}

    def purge_auth_keys(self) -> list[str]:
        """Delete every auth-pattern key from every layer. Returns what was removed."""
        removed = []
        for layer in self.layers:
            for key in layer.keys():
                if is_auth_key(key):
                    layer.delete(key)
                    removed.append(f"{layer.name}:{key}")
        return removed

    def apply(self, response: Response) -> None:
        for layer in self.layers:
            if isinstance(layer, CookieStore):
                layer.apply(response)
