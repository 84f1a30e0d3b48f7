from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - server_error (500)
    - bad_gateway (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CacheUnavailable(ServerError):
    """External cache could not serve a request.

    Raised around live Redis commands and absorbed by RedisCache, which
    serves the call from its fallback; callers of get/set/delete never see it.
    """
    error_code = "cache_unavailable"


class IdentityProviderError(ServerError):
    """Identity provider unreachable or returned a non-success response (502)."""
    status_code = 502
    error_code = "bad_gateway"


class NotAuthenticated(AuthenticationError):
    """A protected service was requested without a usable access token."""
    error_code = "unauthorized"


class PKCEError(AuthenticationError):
    """PKCE protocol violation during the authorization callback."""
    error_code = "pkce_error"


class MissingVerifier(PKCEError):
    """No stored (or no unexpired) code verifier for this session."""
    error_code = "missing_verifier"


class StateMismatch(PKCEError):
    """Callback state does not match the state stored for this session."""
    error_code = "state_mismatch"


class InvalidIdToken(AuthenticationError):
    """ID token is missing, malformed, or carries no subject."""
    error_code = "invalid_id_token"


class RefreshFailure(SessionExpiredError):
    """Refresh grant rejected; the principal must authenticate again."""
    error_code = "refresh_failed"


class RevokedTokenReuse(RefreshFailure):
    """A blacklisted refresh token was presented for refresh."""
    error_code = "revoked_token"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "SessionExpiredError",
    "NotFoundError",
    "ServerError",
    "CacheUnavailable",
    "IdentityProviderError",
    "NotAuthenticated",
    "PKCEError",
    "MissingVerifier",
    "StateMismatch",
    "InvalidIdToken",
    "RefreshFailure",
    "RevokedTokenReuse",
]
