from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import CacheUnavailable
from tokenkeeper.storage.memory import MemoryCache

logger = get_logger(__name__)

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class RedisCache:
    """Redis key/value store that never raises to its callers.

    Connection failures schedule a reconnect with exponential backoff
    (base 50ms, doubling, capped at 2s). Once the initial attempt and
    ``max_retries`` reconnects have all failed, the store switches to an
    in-process ``MemoryCache`` for the rest of its life (or until
    ``reinit()``). While the live connection is unavailable, or when a
    single command fails, that same call is served by the fallback; commands
    are never retried synchronously.
    """

    def __init__(
        self,
        redis_url: Optional[str],
        *,
        max_retries: int = 3,
        retry_base_ms: int = 50,
        retry_cap_ms: int = 2000,
        socket_timeout: float = 5.0,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.redis_url = redis_url
        self.max_retries = max_retries
        self.retry_base_ms = retry_base_ms
        self.retry_cap_ms = retry_cap_ms
        self.socket_timeout = socket_timeout
        self._custom_factory = client_factory is not None
        self._client_factory = client_factory or self._default_client
        self.client: Any = None
        self.fallback = MemoryCache()
        self.connection_attempts = 0
        self._ready = False
        self._use_fallback = False
        self._reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, *, client_factory: Optional[Callable[[], Any]] = None
    ) -> "RedisCache":
        return cls(
            settings.redis_url,
            max_retries=settings.redis_max_retries,
            retry_base_ms=settings.redis_retry_base_ms,
            retry_cap_ms=settings.redis_retry_cap_ms,
            socket_timeout=settings.redis_socket_timeout,
            client_factory=client_factory,
        )

    def _default_client(self) -> Any:
        return aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    @property
    def fallback_active(self) -> bool:
        """True once the store has permanently switched to the in-memory fallback."""
        return self._use_fallback

    @property
    def is_connected(self) -> bool:
        return self._ready and not self._use_fallback and self.client is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before reconnect ``attempt`` (1-based)."""
        delay_ms = min(self.retry_base_ms * (2 ** max(attempt - 1, 0)), self.retry_cap_ms)
        return delay_ms / 1000.0

    # -- connection lifecycle -------------------------------------------------

    async def connect(self) -> bool:
        """Try to establish the live connection.

        Returns True when Redis answered PING. Failures are routed to the
        reconnect loop and never raised.
        """
        if self._use_fallback:
            return False
        if not self.redis_url and not self._custom_factory:
            self._enable_fallback("redis_url_missing")
            return False

        client = None
        try:
            client = self._client_factory()
            await client.ping()
        except Exception as exc:
            if client is not None:
                await self._close_client(client)
            self._handle_connection_error(exc)
            return False

        previous = self.client
        self.client = client
        self._ready = True
        self.connection_attempts = 0
        if previous is not None and previous is not client:
            await self._close_client(previous)
        logger.info("redis_connected", redis_url=mask_url_password(self.redis_url))
        return True

    def _handle_connection_error(self, exc: BaseException) -> None:
        self._ready = False
        self.connection_attempts += 1
        if self.connection_attempts <= self.max_retries:
            delay = self.backoff_delay(self.connection_attempts)
            logger.warning(
                "redis_reconnect_scheduled",
                attempt=self.connection_attempts,
                max_retries=self.max_retries,
                delay_ms=int(delay * 1000),
                error=str(exc),
            )
            self._schedule_reconnect(delay)
        elif not self._use_fallback:
            self._enable_fallback(str(exc))

    def _enable_fallback(self, reason: str) -> None:
        self._use_fallback = True
        self._ready = False
        logger.warning(
            "redis_fallback_enabled",
            redis_url=mask_url_password(self.redis_url),
            attempts=self.connection_attempts,
            error=reason,
            message="Redis unavailable; tokens and sessions are held in process memory only.",
        )

    def _schedule_reconnect(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.connect()

    async def wait_for_reconnect(self) -> None:
        """Wait until the reconnect chain has either connected or given up."""
        while self.reconnect_pending:
            await self._reconnect_task

    async def reinit(self) -> bool:
        """Forget previous failures and try the live connection again."""
        await self._cancel_reconnect()
        self.connection_attempts = 0
        self._use_fallback = False
        self._ready = False
        logger.info("redis_reinit", redis_url=mask_url_password(self.redis_url))
        return await self.connect()

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        await self._cancel_reconnect()
        if self.client is not None:
            await self._close_client(self.client)
        self.client = None
        self._ready = False

    @staticmethod
    async def _close_client(client: Any) -> None:
        closer = getattr(client, "aclose", None) or getattr(client, "close", None)
        if closer is None:
            return
        try:
            result = closer()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.debug("redis_close_failed", error=str(exc))

    async def _live(self, op: str, key: str, command: Any) -> Any:
        try:
            return await command
        except Exception as exc:
            raise CacheUnavailable(
                f"redis {op} failed", detail={"op": op, "key": key}
            ) from exc

    def _on_command_error(self, exc: CacheUnavailable) -> None:
        cause = exc.__cause__
        logger.debug(
            "redis_command_failed_using_fallback",
            op=exc.detail.get("op"),
            key=exc.detail.get("key"),
            error=str(cause),
        )
        if isinstance(cause, _CONNECTION_ERRORS) and self._ready:
            self._ready = False
            if not self.reconnect_pending:
                self._handle_connection_error(cause)

    def _log_fallback(self, op: str, key: str) -> None:
        logger.debug("redis_fallback_used", op=op, key=key, permanent=self._use_fallback)

    # -- key/value operations -------------------------------------------------

    async def get_with_status(self, key: str) -> Tuple[Optional[str], bool]:
        """Read a key and report whether the answer is degraded.

        ``degraded`` is True when the live cache should have answered but
        could not, so the value came from a non-authoritative fallback. In
        permanent fallback mode the memory store is authoritative.

        A live miss still consults the fallback, so writes absorbed during
        an outage stay visible after the connection comes back.
        """
        if not self.is_connected:
            self._log_fallback("get", key)
            return self.fallback.get(key), not self._use_fallback
        try:
            value = await self._live("get", key, self.client.get(key))
        except CacheUnavailable as exc:
            self._on_command_error(exc)
            return self.fallback.get(key), True
        if value is None:
            value = self.fallback.get(key)
        return value, False

    async def get(self, key: str) -> Optional[str]:
        value, _ = await self.get_with_status(key)
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ex = max(1, int(ttl)) if ttl is not None else None
        if not self.is_connected:
            self._log_fallback("set", key)
            self.fallback.set(key, value, ex)
            return
        try:
            await self._live("set", key, self.client.set(key, value, ex=ex))
        except CacheUnavailable as exc:
            self._on_command_error(exc)
            self.fallback.set(key, value, ex)
            return
        # A newer live value replaces any outage copy
        self.fallback.delete(key)

    async def delete(self, key: str) -> None:
        # Also drop any copy written to the fallback during an outage
        self.fallback.delete(key)
        if not self.is_connected:
            self._log_fallback("delete", key)
            return
        try:
            await self._live("delete", key, self.client.delete(key))
        except CacheUnavailable as exc:
            self._on_command_error(exc)

    async def is_available(self) -> bool:
        """Check whether the live Redis connection answers right now."""
        if not self.is_connected:
            return False
        try:
            return bool(await self._live("ping", "-", self.client.ping()))
        except CacheUnavailable as exc:
            self._on_command_error(exc)
            return False


__all__ = ["RedisCache", "mask_url_password"]
