"""Error taxonomy for the QQ login flow and session handling.

Every error carries an ``ErrorKind`` so that callers (the callback state
machine, the HTTP layer, the error page) can branch on data instead of on
exception classes.
"""

from enum import Enum

import jwt
from fastapi import HTTPException


class ErrorKind(str, Enum):
    csrf_mismatch = "csrf_mismatch"
    missing_authorization_code = "missing_authorization_code"
    provider_error = "provider_error"
    sdk_load_failure = "sdk_load_failure"
    identity_retrieval_timeout = "identity_retrieval_timeout"
    account_link_conflict = "account_link_conflict"
    account_link_failed = "account_link_failed"
    invalid_credentials = "invalid_credentials"
    token_invalid_or_expired = "token_invalid_or_expired"
    network_unavailable = "network_unavailable"
    profile_sync_warning = "profile_sync_warning"


class AuthFlowError(Exception):
    """Base class for every error raised by the login and session flows."""

    kind: ErrorKind = ErrorKind.account_link_failed
    status_code: int = 400
    default_detail: str = "Authentication failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class CsrfMismatch(AuthFlowError):
    kind = ErrorKind.csrf_mismatch
    default_detail = "State parameter mismatch, possible CSRF attempt"


class MissingAuthorizationCode(AuthFlowError):
    kind = ErrorKind.missing_authorization_code
    default_detail = "No authorization code in the redirect"


class ProviderError(AuthFlowError):
    kind = ErrorKind.provider_error
    status_code = 502

    def __init__(self, code: str, description: str | None = None):
        self.code = code
        self.description = description or "unknown provider error"
        super().__init__(f"Provider returned error: {code} - {self.description}")


class SdkLoadFailure(AuthFlowError):
    kind = ErrorKind.sdk_load_failure
    status_code = 503
    default_detail = "Provider SDK could not be loaded"


class IdentityRetrievalTimeout(AuthFlowError):
    kind = ErrorKind.identity_retrieval_timeout
    status_code = 504
    default_detail = "Timed out retrieving the provider identity"


class AccountLinkConflict(AuthFlowError):
    kind = ErrorKind.account_link_conflict
    status_code = 409
    default_detail = "Account already exists"


class InvalidCredentials(AuthFlowError):
    kind = ErrorKind.invalid_credentials
    status_code = 401
    default_detail = "Invalid credentials"


class TokenInvalidOrExpired(AuthFlowError):
    kind = ErrorKind.token_invalid_or_expired
    status_code = 401
    default_detail = "Token invalid or expired"


class NetworkUnavailable(AuthFlowError):
    kind = ErrorKind.network_unavailable
    status_code = 503
    default_detail = "Upstream service unreachable"


class ProfileSyncWarning(AuthFlowError):
    """Non-fatal: the account exists but its profile row could not be written."""

    kind = ErrorKind.profile_sync_warning
    status_code = 200
    default_detail = "Profile record could not be created"


class AccountLinkError(AuthFlowError):
    """Linking an external identity failed. Wraps the underlying cause."""

    kind = ErrorKind.account_link_failed

    def __init__(self, cause: Exception):
        self.cause = cause
        if isinstance(cause, AuthFlowError):
            self.kind = cause.kind
            self.status_code = cause.status_code
        super().__init__(f"Account linking failed: {cause}")


_TOKEN_ERROR_MARKERS = ("token", "jwt")
_AUTH_STATUS_CODES = {400, 401, 403}


def is_token_error(exc: BaseException) -> bool:
    """True when ``exc`` looks like a corrupted, expired or rejected session token."""
    if isinstance(exc, TokenInvalidOrExpired | jwt.PyJWTError):
        return True
    if isinstance(exc, InvalidCredentials):
        return False
    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, HTTPException | AuthFlowError) and status_code in _AUTH_STATUS_CODES:
        return True
    message = str(getattr(exc, "detail", None) or exc).lower()
    return any(marker in message for marker in _TOKEN_ERROR_MARKERS)
