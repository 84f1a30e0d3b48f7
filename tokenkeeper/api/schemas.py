from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokenkeeper.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "server_error",
    "bad_gateway",
    "cache_unavailable",
    "access_denied",
    "pkce_error",
    "missing_verifier",
    "state_mismatch",
    "invalid_id_token",
    "refresh_failed",
    "revoked_token",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class TokenMetadata(BaseModel):
    """Token facts safe to show to the signed-in user; never the tokens themselves."""

    token_type: str
    scope: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[float] = None
    has_refresh_token: bool = False


class ProfileResponse(BaseModel):
    user: dict
    token: TokenMetadata


class HealthResponse(BaseModel):
    cache: str
    cache_fallback: bool
    identity_provider: str
