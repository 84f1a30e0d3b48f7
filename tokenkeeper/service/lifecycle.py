"""Per-request token lifecycle: load, refresh, rebind and logout.

A ``TokenLifecycleManager`` is built for each inbound request around that
request's session. Refreshes are coordinated process-wide so concurrent
requests for one user issue a single refresh grant.
"""

from __future__ import annotations

import asyncio
import functools
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Union

import httpx

from tokenkeeper.logging import get_logger
from tokenkeeper.service.api_clients import BlogService, UserService
from tokenkeeper.service.errors import (
    IdentityProviderError,
    NotAuthenticated,
    RefreshFailure,
    RevokedTokenReuse,
)
from tokenkeeper.service.oidc import IdentityProviderClient
from tokenkeeper.service.pkce import LoginResult, PKCEFlow
from tokenkeeper.service.vault import TokenVault, hash_token
from tokenkeeper.storage.models import SessionData, TokenBundle, UserInfo
from tokenkeeper.storage.session_store import SessionStore

logger = get_logger(__name__)


class RefreshCoordinator:
    """Single-flight execution keyed by principal.

    The first caller for a key starts the work; callers arriving while it is
    in flight await the same task and see the same result or exception.
    """

    def __init__(self) -> None:
        self._in_flight: Dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def run(self, key: str, work: Callable[[], Awaitable[TokenBundle]]) -> TokenBundle:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(work())
            self._in_flight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        else:
            logger.debug("token_refresh_joined", key=key)
        return await task


class TokenLifecycleManager:
    def __init__(
        self,
        session: SessionData,
        *,
        vault: TokenVault,
        sessions: SessionStore,
        provider: IdentityProviderClient,
        pkce: PKCEFlow,
        coordinator: RefreshCoordinator,
        api_url: str,
        refresh_threshold_seconds: int = 300,
        revoke_on_logout: bool = True,
        post_logout_redirect_uri: Optional[str] = None,
        api_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session
        self.vault = vault
        self.sessions = sessions
        self.provider = provider
        self.pkce = pkce
        self.coordinator = coordinator
        self.api_url = api_url
        self.refresh_threshold_seconds = refresh_threshold_seconds
        self.revoke_on_logout = revoke_on_logout
        self.post_logout_redirect_uri = post_logout_redirect_uri
        self._api_transport = api_transport
        self._tokens: Optional[TokenBundle] = None
        self._user: Optional[UserInfo] = None
        self._blog_service: Optional[BlogService] = None
        self._user_service: Optional[UserService] = None
        self.session_destroyed = False

    # -- state ------------------------------------------------------------------

    @property
    def tokens(self) -> Optional[TokenBundle]:
        return self._tokens

    @property
    def user(self) -> Optional[UserInfo]:
        return self._user

    @property
    def user_id(self) -> Optional[str]:
        return self._user.sub if self._user else None

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None and bool(self._tokens.access_token)

    async def load(self) -> bool:
        """Restore tokens from the session, falling back to the vault by user id."""
        self._user = self.session.user_info
        tokens = self.session.tokens
        if tokens is None and self._user is not None:
            tokens = await self.vault.get_token(self._user.sub)
            if tokens is not None:
                self.session.tokens = tokens
        self._tokens = tokens
        return self.is_authenticated

    def needs_refresh(self, tokens: Optional[TokenBundle] = None, now: Optional[float] = None) -> bool:
        tokens = tokens or self._tokens
        if tokens is None:
            return False
        remaining = tokens.expires_in_remaining(now)
        return remaining is not None and remaining < self.refresh_threshold_seconds

    async def ensure_valid_token(self) -> Optional[TokenBundle]:
        """Return a usable bundle, refreshing first when it is close to expiry.

        Raises RefreshFailure (or RevokedTokenReuse) after clearing all
        authentication state when the refresh cannot be completed.
        """
        tokens = self._tokens
        if tokens is None or not self.needs_refresh(tokens):
            return tokens
        if not tokens.refresh_token:
            remaining = tokens.expires_in_remaining()
            if remaining is not None and remaining <= 0:
                logger.info("access_token_expired", user_id=self.user_id)
                await self._clear_auth()
                return None
            return tokens
        logger.debug("access_token_near_expiry", user_id=self.user_id)
        return await self.refresh()

    # -- refresh ------------------------------------------------------------------

    async def refresh(self) -> TokenBundle:
        current = self._tokens
        if current is None or not current.refresh_token:
            raise NotAuthenticated("No refresh token available")
        user_id = self.user_id
        key = user_id or hash_token(current.refresh_token)
        try:
            bundle = await self.coordinator.run(
                key, functools.partial(self._refresh_grant, user_id, current)
            )
        except RefreshFailure as exc:
            logger.warning("token_refresh_failed", user_id=user_id, error_code=exc.error_code)
            await self._clear_auth()
            raise
        await self._apply_tokens(bundle)
        return bundle

    async def _refresh_grant(self, user_id: Optional[str], current: TokenBundle) -> TokenBundle:
        refresh_token = current.refresh_token

        if user_id is not None:
            stored = await self.vault.get_token(user_id)
            if (
                stored is not None
                and stored.refresh_token != refresh_token
                and stored.issued_at > current.issued_at
                and not self.needs_refresh(stored)
            ):
                # Another request already rotated this user's tokens
                logger.info("token_refresh_adopted", user_id=user_id)
                return stored

        if await self.vault.is_blacklisted(refresh_token):
            logger.warning("revoked_refresh_token_presented", user_id=user_id)
            raise RevokedTokenReuse("Refresh token has been revoked")

        try:
            bundle = await self.provider.refresh(refresh_token)
        except IdentityProviderError as exc:
            raise RefreshFailure("Token refresh was rejected", detail=exc.detail) from exc

        carried = {
            name: getattr(current, name)
            for name in ("refresh_token", "id_token")
            if getattr(bundle, name) is None
        }
        if carried:
            bundle = bundle.model_copy(update=carried)
        if user_id is not None:
            await self.vault.store_token(user_id, bundle)
        if bundle.refresh_token != refresh_token:
            await self.vault.blacklist_token(refresh_token)
        logger.info("token_refreshed", user_id=user_id, expires_in=bundle.expires_in)
        return bundle

    async def _apply_tokens(self, bundle: TokenBundle) -> None:
        self._tokens = bundle
        self.session.tokens = bundle
        for service in (self._blog_service, self._user_service):
            if service is not None:
                service.update_access_token(bundle.access_token)
        await self.sessions.save(self.session)

    # -- login ------------------------------------------------------------------

    async def authorization_url(self, return_to: Optional[str] = None) -> str:
        if return_to:
            self.session.return_to = return_to
        return await self.pkce.build_authorization_url(self.session)

    async def complete_login(self, current_url: Union[str, object]) -> LoginResult:
        result = await self.pkce.complete_login(current_url, self.session)
        if result.ok:
            await self.establish(result.tokens, result.user)
        else:
            logger.warning("login_failed", outcome=result.outcome.value, session_id=self.session.id)
        return result

    async def establish(self, tokens: TokenBundle, user: UserInfo) -> None:
        """Bind a freshly issued bundle to the principal under a new session id."""
        old_id = self.session.id
        self.session = SessionData(
            id=uuid.uuid4().hex,
            tokens=tokens,
            user_info=user,
            return_to=self.session.return_to,
        )
        await self.sessions.destroy(old_id)
        await self.vault.store_token(user.sub, tokens)
        await self.sessions.save(self.session)
        self._tokens = tokens
        self._user = user
        await self._reset_services()
        logger.info("session_established", user_id=user.sub)

    # -- dependent services -----------------------------------------------------------

    def _require_token(self) -> str:
        if not self.is_authenticated:
            raise NotAuthenticated("Sign in to access this resource")
        return self._tokens.access_token

    def get_blog_service(self) -> BlogService:
        access_token = self._require_token()
        if self._blog_service is None:
            self._blog_service = BlogService(
                self.api_url, access_token, transport=self._api_transport
            )
        return self._blog_service

    def get_user_service(self) -> UserService:
        access_token = self._require_token()
        if self._user_service is None:
            self._user_service = UserService(
                self.api_url, access_token, transport=self._api_transport
            )
        return self._user_service

    async def _reset_services(self) -> None:
        services = [s for s in (self._blog_service, self._user_service) if s is not None]
        self._blog_service = None
        self._user_service = None
        for service in services:
            await service.aclose()

    async def aclose(self) -> None:
        await self._reset_services()

    # -- teardown ------------------------------------------------------------------

    async def _clear_auth(self) -> None:
        user_id = self.user_id
        if user_id is not None:
            await self.vault.invalidate_token(user_id)
        await self.sessions.destroy(self.session.id)
        self.session = SessionData()
        self.session_destroyed = True
        self._tokens = None
        self._user = None
        await self._reset_services()

    async def logout(self) -> Optional[str]:
        """Revoke and forget the principal's tokens.

        Returns the provider's end-session URL when one can be built.
        """
        tokens = self._tokens
        user_id = self.user_id
        end_session_url: Optional[str] = None

        if tokens is not None and tokens.refresh_token:
            await self.vault.blacklist_token(tokens.refresh_token)
            if self.revoke_on_logout:
                try:
                    await self.provider.revoke(tokens.refresh_token, "refresh_token")
                except IdentityProviderError as exc:
                    logger.warning("token_revoke_failed", user_id=user_id, error=exc.message)

        if tokens is not None:
            try:
                end_session_url = await self.provider.end_session_url(
                    tokens.id_token, self.post_logout_redirect_uri
                )
            except IdentityProviderError as exc:
                logger.warning("end_session_url_unavailable", error=exc.message)

        await self._clear_auth()
        logger.info("logout_completed", user_id=user_id)
        return end_session_url


@dataclass
class RequestAuthContext:
    """What route handlers see as ``request.state.auth``."""

    services: TokenLifecycleManager

    @property
    def is_authenticated(self) -> bool:
        return self.services.is_authenticated

    @property
    def user(self) -> Optional[UserInfo]:
        return self.services.user

    @property
    def tokens(self) -> Optional[TokenBundle]:
        return self.services.tokens


__all__ = ["RefreshCoordinator", "TokenLifecycleManager", "RequestAuthContext"]
