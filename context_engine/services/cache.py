# =============================================================================
# Cache Layer — Redis with In-Process Fallback
# =============================================================================
#
# Key/value cache for the three value categories the engine reuses:
#
#   namespace   value                 TTL class   default TTL
#   embedding   query/content vector   long        24 hours
#   search      per-source evidence    short       5 minutes
#   rag         ContextBundle          medium      15 minutes
#
# ARCHITECTURE:
#   CacheLayer                 — what callers use: get / put / invalidate_all
#   └── CacheBackend (Protocol)
#       ├── RedisCacheBackend     — redis.asyncio client, native SETEX expiry
#       └── InMemoryCacheBackend  — dict of CacheEntry + periodic sweep
#
# Callers never see which backend is active. Values are JSON-encoded by the
# layer, so both backends store plain strings and are interchangeable.
#
# FAILURE MODEL:
# - Redis unreachable at startup  → create_cache() returns an in-process layer
# - Redis connection lost later   → the layer fails over to in-process
# - Redis timeout / other error   → treated as a miss (get) or no-op (put)
# None of these reach the caller; they are logged and counted.
#
# IN-PROCESS EVICTION:
# Every sweep interval (5 minutes) entries older than their TTL class are
# removed; if the map still holds more than cache_max_entries, the oldest
# entries by creation time are dropped first. Reads never reorder entries
# (strict recency of insertion, not LRU-by-access).
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from context_engine.config import Settings, get_settings
from context_engine.services.diagnostics import Diagnostics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TtlClass(str, Enum):
    """Named expiration policies."""

    LONG = "long"      # embeddings
    MEDIUM = "medium"  # context bundles
    SHORT = "short"    # retrieval results


def ttl_seconds_for(ttl_class: TtlClass, settings: Settings) -> int:
    """Resolve a TTL class to seconds using the configured values."""
    return {
        TtlClass.LONG: settings.embedding_ttl_seconds,
        TtlClass.MEDIUM: settings.context_ttl_seconds,
        TtlClass.SHORT: settings.retrieval_ttl_seconds,
    }[ttl_class]


def content_hash(text: str) -> str:
    """Full SHA-256 of a text, used for embedding keys."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def stable_hash(payload: Any, length: int = 16) -> str:
    """
    Short, order-independent hash of a JSON-compatible payload.

    Dict keys are sorted so {"a": 1, "b": 2} and {"b": 2, "a": 1} hash
    the same. Dates and enums fall back to str().
    """
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:length]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A cached value with its creation time and TTL class."""

    value: str
    created_at: float
    ttl_class: TtlClass
    ttl_seconds: int

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_seconds


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class CacheBackend(Protocol):
    """Storage used by CacheLayer. Values are already JSON strings."""

    name: str
    distributed: bool

    async def get(self, key: str) -> str | None:
        ...

    async def set(
        self, key: str, value: str, ttl_class: TtlClass, ttl_seconds: int,
    ) -> None:
        ...

    async def clear(self, prefix: str) -> None:
        ...

    async def aclose(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Redis
# ---------------------------------------------------------------------------


class RedisCacheBackend:
    """Redis-backed storage. Expiry is delegated to Redis (SET ... EX)."""

    name = "redis"
    distributed = True

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    async def get(self, key: str) -> str | None:
        value = await self._client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(
        self, key: str, value: str, ttl_class: TtlClass, ttl_seconds: int,
    ) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def clear(self, prefix: str) -> None:
        """Delete this engine's keys only; other Redis users are untouched."""
        keys = [key async for key in self._client.scan_iter(match=f"{prefix}*")]
        if keys:
            await self._client.delete(*keys)
        logger.info("Cleared %d Redis cache keys (prefix=%s)", len(keys), prefix)

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Implementation 2: In-Process
# ---------------------------------------------------------------------------


class InMemoryCacheBackend:
    """
    In-process storage with TTL-class expiry and a size cap.

    Access is guarded by a threading.Lock: the map may be shared by
    concurrent assemble() calls and by worker threads. Every critical
    section is short and never awaits.
    """

    name = "memory"
    distributed = False

    def __init__(
        self,
        max_entries: int = 10_000,
        sweep_interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._sweeper: asyncio.Task | None = None

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry.value

    async def set(
        self, key: str, value: str, ttl_class: TtlClass, ttl_seconds: int,
    ) -> None:
        with self._lock:
            # Re-inserting moves the key to the newest position
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(
                value=value,
                created_at=self._clock(),
                ttl_class=ttl_class,
                ttl_seconds=ttl_seconds,
            )

    async def clear(self, prefix: str) -> None:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        logger.info("Cleared %d in-process cache entries", len(doomed))

    def sweep(self) -> int:
        """
        Evict expired entries, then the oldest entries over the size cap.

        Returns the number of entries evicted.
        """
        with self._lock:
            now = self._clock()
            expired = [
                key for key, entry in self._entries.items()
                if entry.is_expired(now)
            ]
            for key in expired:
                del self._entries[key]

            overflow = max(0, len(self._entries) - self._max_entries)
            for _ in range(overflow):
                self._entries.popitem(last=False)

        evicted = len(expired) + overflow
        if evicted:
            logger.debug(
                "Cache sweep evicted %d entries (%d expired, %d over cap)",
                evicted, len(expired), overflow,
            )
        return evicted

    def start_sweeper(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; cache sweeper not started")
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None


# ---------------------------------------------------------------------------
# Cache Layer
# ---------------------------------------------------------------------------


class CacheLayer:
    """
    The cache interface every component depends on.

    get() returns None for absent or expired keys. put() never raises.
    Keys are built with key(namespace, payload) so every component shares
    one naming scheme: "<prefix>:<namespace>:<hash>".
    """

    def __init__(
        self,
        backend: CacheBackend,
        settings: Settings | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or get_settings()
        self._diagnostics = diagnostics or Diagnostics()

    @property
    def backend_name(self) -> str:
        return self._backend.name

    @property
    def local_size(self) -> int | None:
        """Entry count of the in-process backend, None for Redis."""
        if isinstance(self._backend, InMemoryCacheBackend):
            return self._backend.size
        return None

    def key(self, namespace: str, payload: Any) -> str:
        digest = payload if isinstance(payload, str) else stable_hash(payload)
        return f"{self._settings.cache_key_prefix}:{namespace}:{digest}"

    async def get(self, key: str) -> Any | None:
        namespace = self._namespace(key)
        raw = await self._call(lambda backend: backend.get(key), default=None)
        if raw is None:
            self._diagnostics.record_cache_miss(namespace)
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache value for %s", key)
            self._diagnostics.record_cache_miss(namespace)
            return None
        self._diagnostics.record_cache_hit(namespace)
        return value

    async def put(self, key: str, value: Any, ttl_class: TtlClass) -> None:
        ttl = ttl_seconds_for(ttl_class, self._settings)
        encoded = json.dumps(value, default=str)
        await self._call(
            lambda backend: backend.set(key, encoded, ttl_class, ttl),
            default=None,
            retry_on_fallback=True,
        )

    async def invalidate_all(self) -> None:
        prefix = f"{self._settings.cache_key_prefix}:"
        await self._call(lambda backend: backend.clear(prefix), default=None)

    async def aclose(self) -> None:
        await self._backend.aclose()

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _call(
        self,
        operation: Callable[[CacheBackend], Awaitable[T]],
        default: T,
        retry_on_fallback: bool = False,
    ) -> T:
        backend = self._backend
        if not backend.distributed:
            return await operation(backend)

        try:
            return await asyncio.wait_for(
                operation(backend),
                timeout=self._settings.cache_timeout_seconds,
            )
        except TimeoutError:
            # Checked first: TimeoutError is an OSError subclass
            self._diagnostics.record_cache_error()
            logger.warning(
                "Cache backend %s timed out after %.2fs; treating as miss",
                backend.name, self._settings.cache_timeout_seconds,
            )
            return default
        except (RedisConnectionError, OSError) as exc:
            self._diagnostics.record_cache_error()
            await self._fail_over(exc)
            if retry_on_fallback:
                return await operation(self._backend)
            return default
        except RedisError as exc:
            self._diagnostics.record_cache_error()
            logger.warning(
                "Cache backend %s error (%s: %s); treating as miss",
                backend.name, type(exc).__name__, exc,
            )
            return default

    async def _fail_over(self, exc: BaseException) -> None:
        abandoned = self._backend
        if not abandoned.distributed:
            return
        logger.warning(
            "Cache backend %s unavailable (%s); switching to in-process cache",
            abandoned.name, exc,
        )
        fallback = InMemoryCacheBackend(
            max_entries=self._settings.cache_max_entries,
            sweep_interval_seconds=self._settings.cache_sweep_interval_seconds,
        )
        fallback.start_sweeper()
        self._backend = fallback

        # Release the dead client's connection pool
        try:
            await asyncio.wait_for(
                abandoned.aclose(), timeout=self._settings.cache_timeout_seconds,
            )
        except (RedisError, OSError) as close_exc:
            logger.debug("Closing abandoned cache backend failed: %s", close_exc)

    @staticmethod
    def _namespace(key: str) -> str:
        parts = key.split(":", 2)
        return parts[1] if len(parts) > 1 else "default"


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


async def create_cache(
    settings: Settings | None = None,
    diagnostics: Diagnostics | None = None,
) -> CacheLayer:
    """
    Build the process-wide cache, preferring Redis.

    Pings Redis once; when it is unreachable the layer is backed by the
    in-process map and its sweeper is started on the running loop.
    """
    settings = settings or get_settings()
    client: aioredis.Redis | None = None

    try:
        # from_url raises ValueError on a malformed URL
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        await asyncio.wait_for(
            client.ping(), timeout=settings.cache_timeout_seconds,
        )
    except (RedisError, OSError, ValueError) as exc:
        logger.warning(
            "Redis not available at %s (%s); using in-process cache",
            settings.redis_url, exc,
        )
        if client is not None:
            await client.aclose()
        backend = InMemoryCacheBackend(
            max_entries=settings.cache_max_entries,
            sweep_interval_seconds=settings.cache_sweep_interval_seconds,
        )
        backend.start_sweeper()
        return CacheLayer(backend, settings=settings, diagnostics=diagnostics)

    logger.info("Connected to Redis cache at %s", settings.redis_url)
    return CacheLayer(
        RedisCacheBackend(client), settings=settings, diagnostics=diagnostics,
    )
