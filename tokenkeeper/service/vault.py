from __future__ import annotations

import hashlib
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from tokenkeeper.config import THIRTY_DAYS_SECONDS, Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.storage.keys import blacklist_key, token_key
from tokenkeeper.storage.models import TokenBundle
from tokenkeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3600


def hash_token(token: str) -> str:
    """SHA-256 hex digest; raw refresh tokens are never written to the cache."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenVault:
    """Per-user token bundles plus a blacklist of revoked refresh tokens."""

    def __init__(
        self,
        cache: RedisCache,
        *,
        default_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
        blacklist_ttl_seconds: int = THIRTY_DAYS_SECONDS,
        fail_closed: bool = True,
    ):
        self.cache = cache
        self.default_ttl_seconds = default_ttl_seconds
        self.blacklist_ttl_seconds = blacklist_ttl_seconds
        self.fail_closed = fail_closed

    @classmethod
    def from_settings(cls, cache: RedisCache, settings: Settings) -> "TokenVault":
        return cls(
            cache,
            default_ttl_seconds=settings.default_token_ttl_seconds,
            blacklist_ttl_seconds=settings.blacklist_ttl_seconds,
            fail_closed=settings.blacklist_fail_closed,
        )

    async def store_token(self, user_id: str, bundle: TokenBundle) -> None:
        ttl = bundle.expires_in if bundle.expires_in and bundle.expires_in > 0 else self.default_ttl_seconds
        await self.cache.set(token_key(user_id), bundle.to_json(), ttl=ttl)
        logger.debug("token_stored", user_id=user_id, ttl_seconds=ttl)

    async def get_token(self, user_id: str) -> Optional[TokenBundle]:
        raw = await self.cache.get(token_key(user_id))
        if not raw:
            logger.debug("token_not_found", user_id=user_id)
            return None
        try:
            return TokenBundle.model_validate_json(raw)
        except PydanticValidationError as exc:
            # Corrupted entry - treat as a miss and drop it
            logger.warning("token_decode_failed", user_id=user_id, error=str(exc))
            await self.cache.delete(token_key(user_id))
            return None

    async def invalidate_token(self, user_id: str) -> None:
        await self.cache.delete(token_key(user_id))
        logger.debug("token_invalidated", user_id=user_id)

    async def blacklist_token(self, refresh_token: str, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.blacklist_ttl_seconds
        await self.cache.set(blacklist_key(hash_token(refresh_token)), "1", ttl=ttl)
        logger.info("refresh_token_blacklisted", ttl_seconds=ttl)

    async def is_blacklisted(self, refresh_token: str) -> bool:
        value, degraded = await self.cache.get_with_status(blacklist_key(hash_token(refresh_token)))
        if value:
            return True
        if degraded:
            logger.warning(
                "blacklist_check_degraded",
                fail_closed=self.fail_closed,
                message="Blacklist could not be read from the live cache.",
            )
            return self.fail_closed
        return False


__all__ = ["TokenVault", "hash_token", "DEFAULT_TOKEN_TTL_SECONDS"]
