"""Authorization Code + PKCE login flow.

A login moves through ``IDLE -> AWAITING_CALLBACK -> EXCHANGED -> DONE``.
The verifier and state live on the caller's session between the redirect to
the identity provider and the callback, and are consumed exactly once.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from urllib.parse import parse_qs, urlencode, urlsplit

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import (
    AuthenticationError,
    IdentityProviderError,
    InvalidIdToken,
    MissingVerifier,
    ServiceError,
    StateMismatch,
)
from tokenkeeper.service.oidc import IdentityProviderClient, subject_from_id_token
from tokenkeeper.storage.models import PKCEContext, SessionData, TokenBundle, UserInfo
from tokenkeeper.storage.session_store import SessionStore

logger = get_logger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGED = "exchanged"
    DONE = "done"


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    MISSING_VERIFIER = "missing_verifier"
    STATE_MISMATCH = "state_mismatch"
    INVALID_ID_TOKEN = "invalid_id_token"
    PROVIDER_ERROR = "provider_error"


@dataclass
class LoginResult:
    """Outcome of a callback, for route code to match on instead of catching."""

    outcome: LoginOutcome
    state: FlowState
    tokens: Optional[TokenBundle] = None
    user: Optional[UserInfo] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.outcome is LoginOutcome.SUCCESS


def generate_code_verifier(num_bytes: int = 32) -> str:
    """High-entropy verifier; 32 bytes encode to 43 base64url characters."""
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def compute_code_challenge(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def _query_param(url: str, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get(name)
    return values[0] if values else None


class PKCEFlow:
    """Builds authorization URLs and turns callbacks into token bundles."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        redirect_uri: str,
        *,
        default_scope: str = "openid offline_access profile email",
        audience: Optional[str] = None,
        pkce_ttl_seconds: int = 600,
        sessions: Optional[SessionStore] = None,
    ):
        self.provider = provider
        self.redirect_uri = redirect_uri
        self.default_scope = default_scope
        self.audience = audience
        self.pkce_ttl_seconds = pkce_ttl_seconds
        self.sessions = sessions

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: IdentityProviderClient,
        sessions: Optional[SessionStore] = None,
    ) -> "PKCEFlow":
        return cls(
            provider,
            settings.redirect_uri,
            default_scope=settings.oauth_scope,
            audience=settings.oauth_audience,
            pkce_ttl_seconds=settings.pkce_ttl_seconds,
            sessions=sessions,
        )

    def flow_state(self, session: SessionData) -> FlowState:
        if session.pkce is not None and not session.pkce.is_expired(self.pkce_ttl_seconds):
            return FlowState.AWAITING_CALLBACK
        return FlowState.IDLE

    async def _persist(self, session: SessionData) -> None:
        if self.sessions is not None:
            await self.sessions.save(session)

    async def build_authorization_url(
        self,
        session: SessionData,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> str:
        code_verifier = generate_code_verifier()
        context = PKCEContext(code_verifier=code_verifier, state=state or generate_state())
        session.pkce = context
        await self._persist(session)

        metadata = await self.provider.discover()
        params = {
            "client_id": self.provider.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": scope or self.default_scope,
            "state": context.state,
            "code_challenge": compute_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        audience = audience or self.audience
        if audience:
            params["audience"] = audience
        logger.debug("authorization_url_built", session_id=session.id, scope=params["scope"])
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

    async def _discard_context(self, session: SessionData) -> None:
        if session.pkce is not None:
            session.pkce = None
            await self._persist(session)

    async def handle_callback(self, current_url: Union[str, object], session: SessionData) -> TokenBundle:
        """Exchange the callback's authorization code for tokens.

        Raises MissingVerifier or StateMismatch on PKCE violations and
        IdentityProviderError when the exchange fails. The stored context is
        discarded in every terminal case, so a callback can succeed at most once.
        """
        url = str(current_url)
        context = session.pkce
        if context is None or context.is_expired(self.pkce_ttl_seconds):
            await self._discard_context(session)
            logger.warning("pkce_verifier_missing", session_id=session.id)
            raise MissingVerifier("Missing code_verifier for this session; start the login again")

        try:
            returned_state = _query_param(url, "state")
            if not returned_state or not secrets.compare_digest(
                returned_state.encode("utf-8"), context.state.encode("utf-8")
            ):
                logger.warning("pkce_state_mismatch", session_id=session.id)
                raise StateMismatch("OAuth state does not match this session")

            provider_error = _query_param(url, "error")
            if provider_error:
                logger.warning(
                    "authorization_denied",
                    session_id=session.id,
                    error=provider_error,
                    error_description=_query_param(url, "error_description"),
                )
                raise AuthenticationError(
                    "Authorization was not granted",
                    error_code="access_denied",
                    detail={"error": provider_error},
                )

            code = _query_param(url, "code")
            if not code:
                raise AuthenticationError("Callback is missing the authorization code")

            tokens = await self.provider.exchange_code(code, context.code_verifier, self.redirect_uri)
        finally:
            await self._discard_context(session)

        logger.info("authorization_code_exchanged", session_id=session.id)
        return tokens

    async def complete_login(self, current_url: Union[str, object], session: SessionData) -> LoginResult:
        """Run the callback through to an identified principal.

        Never raises for protocol failures; the returned LoginResult says
        what went wrong.
        """
        try:
            tokens = await self.handle_callback(current_url, session)
        except MissingVerifier as exc:
            return LoginResult(LoginOutcome.MISSING_VERIFIER, FlowState.IDLE, error=exc)
        except StateMismatch as exc:
            return LoginResult(LoginOutcome.STATE_MISMATCH, FlowState.IDLE, error=exc)
        except (AuthenticationError, IdentityProviderError) as exc:
            return LoginResult(LoginOutcome.PROVIDER_ERROR, FlowState.IDLE, error=exc)

        try:
            sub = subject_from_id_token(tokens.id_token)
            user = await self.provider.userinfo(tokens.access_token, expected_sub=sub)
        except InvalidIdToken as exc:
            logger.error("login_invalid_id_token", session_id=session.id, error=exc.message)
            return LoginResult(LoginOutcome.INVALID_ID_TOKEN, FlowState.EXCHANGED, error=exc)
        except IdentityProviderError as exc:
            return LoginResult(LoginOutcome.PROVIDER_ERROR, FlowState.EXCHANGED, error=exc)

        logger.info("login_completed", user_id=user.sub)
        return LoginResult(LoginOutcome.SUCCESS, FlowState.DONE, tokens=tokens, user=user)


__all__ = [
    "PKCEFlow",
    "FlowState",
    "LoginOutcome",
    "LoginResult",
    "generate_code_verifier",
    "compute_code_challenge",
    "generate_state",
]
