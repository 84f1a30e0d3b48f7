from __future__ import annotations

from typing import Callable, Optional

import httpx

from tokenkeeper.config import Settings, get_settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.lifecycle import RefreshCoordinator, TokenLifecycleManager
from tokenkeeper.service.oidc import IdentityProviderClient
from tokenkeeper.service.pkce import PKCEFlow
from tokenkeeper.service.vault import TokenVault
from tokenkeeper.storage.models import SessionData
from tokenkeeper.storage.redis_cache import RedisCache, mask_url_password
from tokenkeeper.storage.session_store import SessionStore

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide collaborators for one app instance.

    Built explicitly by the app factory (or a test) and kept on
    ``app.state.runtime``; nothing here is a module global.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        redis_client_factory: Optional[Callable[[], object]] = None,
        idp_transport: Optional[httpx.AsyncBaseTransport] = None,
        api_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            redis_url=mask_url_password(self.settings.redis_url),
            issuer=self.settings.issuer_base_url,
            test_mode=self.settings.test_mode,
        )
        self.cache = RedisCache.from_settings(self.settings, client_factory=redis_client_factory)
        self.vault = TokenVault.from_settings(self.cache, self.settings)
        self.sessions = SessionStore(self.cache, ttl_seconds=self.settings.session_ttl_seconds)
        self.provider = IdentityProviderClient.from_settings(self.settings, transport=idp_transport)
        self.pkce = PKCEFlow.from_settings(self.settings, self.provider, sessions=self.sessions)
        self.refresh_coordinator = RefreshCoordinator()
        self.api_transport = api_transport
        logger.info(
            "runtime_initialized",
            blacklist_fail_closed=self.settings.blacklist_fail_closed,
            refresh_threshold_seconds=self.settings.refresh_threshold_seconds,
        )

    async def startup(self) -> None:
        connected = await self.cache.connect()
        if not connected:
            logger.warning(
                "runtime_cache_degraded",
                fallback_active=self.cache.fallback_active,
                reconnect_pending=self.cache.reconnect_pending,
            )

    async def close(self) -> None:
        await self.cache.close()
        await self.provider.aclose()
        logger.info("runtime_closed")

    def lifecycle_for(self, session: SessionData) -> TokenLifecycleManager:
        return TokenLifecycleManager(
            session,
            vault=self.vault,
            sessions=self.sessions,
            provider=self.provider,
            pkce=self.pkce,
            coordinator=self.refresh_coordinator,
            api_url=self.settings.api_url,
            refresh_threshold_seconds=self.settings.refresh_threshold_seconds,
            revoke_on_logout=self.settings.revoke_on_logout,
            post_logout_redirect_uri=self.settings.base_url,
            api_transport=self.api_transport,
        )


__all__ = ["Runtime"]
