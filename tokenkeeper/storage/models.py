from __future__ import annotations

import time
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _now() -> float:
    return time.time()


class TokenBundle(BaseModel):
    """Token set issued by the identity provider for one principal.

    Immutable; a refresh produces a new bundle. ``issued_at`` anchors the
    relative ``expires_in`` so remaining lifetime survives a cache round trip.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    issued_at: float = Field(default_factory=_now)

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> Optional[int]:
        # Some providers send expires_in as a string
        if value is None or value == "":
            return None
        return int(value)

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> "TokenBundle":
        """Build a bundle from a token endpoint JSON response."""
        return cls.model_validate({k: v for k, v in payload.items() if k != "issued_at"})

    @property
    def expires_at(self) -> Optional[float]:
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    def expires_in_remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until expiry, or None when the provider gave no lifetime."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return expires_at - (now if now is not None else _now())

    def to_json(self) -> str:
        return self.model_dump_json()


class PKCEContext(BaseModel):
    """Verifier and state bound to a session while a login is in flight."""

    model_config = ConfigDict(frozen=True)

    code_verifier: str = Field(..., min_length=43, max_length=128)
    state: str = Field(..., min_length=1)
    created_at: float = Field(default_factory=_now)

    def is_expired(self, ttl_seconds: int, now: Optional[float] = None) -> bool:
        return (now if now is not None else _now()) - self.created_at > ttl_seconds


class UserInfo(BaseModel):
    """Userinfo claims; ``sub`` is required, everything else is passed through."""

    model_config = ConfigDict(extra="allow")

    sub: str = Field(..., min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None


class SessionData(BaseModel):
    """Server-side session persisted under ``sess:{id}``."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tokens: Optional[TokenBundle] = None
    user_info: Optional[UserInfo] = None
    pkce: Optional[PKCEContext] = None
    return_to: Optional[str] = None
    created_at: float = Field(default_factory=_now)

    @property
    def user_id(self) -> Optional[str]:
        return self.user_info.sub if self.user_info else None

    def clear_auth(self) -> None:
        self.tokens = None
        self.user_info = None
