from __future__ import annotations

from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from tokenkeeper.logging import get_logger
from tokenkeeper.storage.keys import session_key
from tokenkeeper.storage.models import SessionData
from tokenkeeper.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 24


class SessionStore:
    """Server-side sessions serialized as JSON under ``sess:{id}``.

    Reads of missing or corrupt entries yield None; writes never fail the request.
    """

    def __init__(self, cache: RedisCache, ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def load(self, session_id: Optional[str]) -> Optional[SessionData]:
        if not session_id:
            return None
        raw = await self.cache.get(session_key(session_id))
        if not raw:
            return None
        try:
            session = SessionData.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("session_decode_failed", session_id=session_id, error=str(exc))
            await self.cache.delete(session_key(session_id))
            return None
        if session.id != session_id:
            logger.warning("session_id_mismatch", session_id=session_id)
            return None
        return session

    async def load_or_create(self, session_id: Optional[str]) -> tuple[SessionData, bool]:
        """Return the stored session, or a fresh one and ``True`` when created."""
        session = await self.load(session_id)
        if session is not None:
            return session, False
        return SessionData(), True

    async def save(self, session: SessionData) -> None:
        await self.cache.set(
            session_key(session.id), session.model_dump_json(), ttl=self.ttl_seconds
        )

    async def destroy(self, session_id: str) -> None:
        await self.cache.delete(session_key(session_id))
        logger.debug("session_destroyed", session_id=session_id)
