"""Namespaced cache key construction.

Keys are built as ``service:entity[:subtype][:id]`` so that several services
can share one Redis database without collisions. Keys are opaque once built
and never parsed back.
"""

from __future__ import annotations

from typing import Optional, Union

KeyId = Union[str, int]

TOKEN_PREFIX = "token"
BLACKLIST_PREFIX = "blacklist"
SESSION_PREFIX = "sess"


def create_cache_key(
    service: str,
    entity: str,
    id: Optional[KeyId] = None,
    subtype: Optional[str] = None,
) -> str:
    key = f"{service}:{entity}"
    if subtype:
        key += f":{subtype}"
    if id is not None:
        key += f":{id}"
    return key


class _EntityKeys:
    """Key generators for one entity type."""

    def __init__(self, entity: str):
        self.entity = entity

    def collection(self, service: str, filter: Optional[str] = None) -> str:
        return create_cache_key(service, self.entity, None, filter or "all")

    def single(self, service: str, id: KeyId) -> str:
        return create_cache_key(service, self.entity, id)


class _UserKeys(_EntityKeys):
    def auth(self, service: str, user_id: KeyId) -> str:
        """Key for a user's authentication data."""
        return create_cache_key(service, self.entity, user_id, "auth")


blog_keys = _EntityKeys("blog")
user_keys = _UserKeys("user")


def token_key(user_id: str) -> str:
    return f"{TOKEN_PREFIX}:{user_id}"


def blacklist_key(token_hash: str) -> str:
    return f"{BLACKLIST_PREFIX}:{token_hash}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}:{session_id}"


__all__ = [
    "create_cache_key",
    "blog_keys",
    "user_keys",
    "token_key",
    "blacklist_key",
    "session_key",
]
