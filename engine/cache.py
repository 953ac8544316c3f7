"""Cache-aside storage for resolved stream URLs.

``CacheGateway`` sits in front of a key/value backend and never lets a backend
problem reach the caller: a backend that fails its startup ping puts the
gateway in degraded mode (every lookup misses, every write is skipped), and a
backend that errors later on is treated as a miss for that call only.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
from typing import Protocol
from urllib.parse import urlparse

import redis

from engine.errors import CacheUnavailableError

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "yt-dlp:"


class CacheBackend(Protocol):
    def ping(self) -> None:
        """Raise ``CacheUnavailableError`` when the backend cannot be reached."""

    def get(self, key: str) -> str | None:
        """Return the stored value, or ``None`` when absent or expired."""

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""


def cache_key(normalized_url: str) -> str:
    digest = hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


class MemoryCacheBackend:
    """Thread-safe in-process TTL store."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, object]] = {}

    def ping(self) -> None:
        return None

    def get(self, key: str) -> str | None:
        now = self._clock()
        with self._lock:
            row = self._data.get(key)
            if row is None:
                return None
            if float(row["expires_at"]) <= now:
                self._data.pop(key, None)
                return None
            return str(row["value"])

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            self._data[key] = {
                "expires_at": now + max(1, int(ttl_seconds)),
                "value": value,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class RedisCacheBackend:
    """Redis-backed store; values are stored as UTF-8 strings with ``EX`` expiry."""

    def __init__(
        self,
        addr: str,
        *,
        password: str | None = None,
        db: int = 0,
        socket_timeout: float = 2.0,
        client: redis.Redis | None = None,
    ) -> None:
        self.addr = addr
        self._client: redis.Redis | None = client
        # A malformed address is reported by ping() so startup can degrade.
        self._address_error: ValueError | None = None
        if client is not None:
            return
        try:
            self._client = self._build_client(addr, password, db, socket_timeout)
        except ValueError as exc:
            self._address_error = exc

    @staticmethod
    def _build_client(addr: str, password: str | None, db: int, socket_timeout: float) -> redis.Redis:
        if "://" in addr:
            return redis.Redis.from_url(
                addr,
                password=password,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
                decode_responses=True,
            )
        url = urlparse(f"redis://{addr}")
        return redis.Redis(
            host=url.hostname or "localhost",
            port=url.port or 6379,
            db=db,
            password=password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )

    def ping(self) -> None:
        if self._client is None:
            raise CacheUnavailableError(f"invalid redis address {self.addr!r}: {self._address_error}")
        try:
            self._client.ping()
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"redis at {self.addr} unreachable: {exc}") from exc

    def get(self, key: str) -> str | None:
        value = self._client.get(key)
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=max(1, int(ttl_seconds)))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


class CacheGateway:
    def __init__(self, backend: CacheBackend | None, ttl_seconds: float) -> None:
        self._backend = backend
        self.ttl_seconds = max(1, int(math.ceil(ttl_seconds)))

    @classmethod
    def connect(cls, backend: CacheBackend | None, ttl_seconds: float) -> "CacheGateway":
        """Ping ``backend`` once and return a gateway, degraded if the ping fails."""
        if backend is None:
            logger.warning("No cache backend configured; caching will be disabled")
            return cls(None, ttl_seconds)
        try:
            backend.ping()
        except CacheUnavailableError as exc:
            logger.warning("Cache backend unavailable: %s", exc)
            logger.warning("Caching will be disabled")
            return cls(None, ttl_seconds)
        return cls(backend, ttl_seconds)

    @classmethod
    def disabled(cls, ttl_seconds: float = 1) -> "CacheGateway":
        return cls(None, ttl_seconds)

    @property
    def degraded(self) -> bool:
        return self._backend is None

    def get(self, normalized_url: str) -> str | None:
        """Return the cached stream URL for ``normalized_url`` or ``None``."""
        if self._backend is None:
            return None
        key = cache_key(normalized_url)
        try:
            value = self._backend.get(key)
        except Exception as exc:
            logger.warning("cache get failed key=%s url=%s: %s", key, normalized_url, exc)
            return None
        if value is None or not str(value).strip():
            logger.debug("cache miss key=%s", key)
            return None
        logger.debug("cache hit key=%s", key)
        return str(value).strip()

    def set(self, normalized_url: str, stream_url: str) -> None:
        if self._backend is None:
            logger.warning("cache disabled; not storing result for %s", normalized_url)
            return
        key = cache_key(normalized_url)
        try:
            self._backend.set(key, stream_url, self.ttl_seconds)
        except Exception as exc:
            logger.warning("failed to set cache for %s: %s", normalized_url, exc)

    def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if callable(close):
            close()
