"""
Read-through cache for task-list queries.

Two tiers keyed identically:
- primary: Redis, shared by every process
- local: an in-process TTL map, used only while the primary is unreachable

Every primary failure (timeout, connection error) is absorbed: the primary is
marked unhealthy, traffic moves to the local tier and a background probe
reconnects. The local tier is per-process, so during a primary outage two
server processes may serve different cached values; entries are advisory and
the database stays authoritative.

Invalidations that cannot reach the primary are queued and replayed by the
probe before the primary is trusted again, so a key written before an outage
is never served after the user changed their data.

Each invalidation also bumps a per-user generation (an in-process counter and
a shared redis counter). Readers capture generation() before loading from the
database and write back with set_if_current(), so a load that raced a
completion never repopulates the cache with pre-completion data.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

import redis
from redis.exceptions import RedisError

from streakline.core.metrics import cache_primary_healthy, cache_requests_total

logger = logging.getLogger("streakline.cache")

_GLOB_SPECIAL = set("*?[]\\")

# Must outlive any in-flight load that captured the previous value
GENERATION_TTL_SECONDS = 24 * 3600


def _escape_glob(value: str) -> str:
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIAL else ch for ch in value)


class LocalTier:
    """Thread-safe in-process map with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return payload

    def set(self, key: str, payload: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (payload, self._clock() + ttl_seconds)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ReadThroughCache:
    """Dual-tier advisory cache with graceful degradation.

    Lifecycle is owned by the application: call connect() on startup and
    disconnect() on shutdown.
    """

    def __init__(
        self,
        client_factory: Optional[Callable[[], Any]],
        *,
        prefix: str = "streakline",
        default_ttl: int = 60,
        reconnect_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client_factory = client_factory
        self._client = None
        self.prefix = prefix
        self.default_ttl = default_ttl
        self.reconnect_interval = reconnect_interval
        self.local = LocalTier(clock=clock)

        self._lock = threading.Lock()
        self._healthy = False
        self._pending_users: Set[str] = set()
        self._pending_flush = False
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._stop = threading.Event()
        self._probe: Optional[threading.Thread] = None

    @classmethod
    def from_settings(cls, cfg) -> "ReadThroughCache":
        factory = None
        if cfg.CACHE_ENABLED:
            def factory():
                return redis.from_url(
                    cfg.REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=cfg.CACHE_SOCKET_TIMEOUT_SECONDS,
                    socket_timeout=cfg.CACHE_SOCKET_TIMEOUT_SECONDS,
                    health_check_interval=30,
                )
        return cls(
            factory,
            prefix=cfg.CACHE_PREFIX,
            default_ttl=cfg.CACHE_TTL_SECONDS,
            reconnect_interval=cfg.CACHE_RECONNECT_INTERVAL_SECONDS,
        )

    # Lifecycle ---------------------------------------------------------
    def connect(self) -> bool:
        """Open the primary tier. Returns True if it answered a ping."""
        self._stop.clear()
        if self._client_factory is None:
            logger.info("Cache primary disabled; serving from local tier only")
            cache_primary_healthy.set(0)
            return False
        try:
            self._client = self._client_factory()
            self._client.ping()
        except RedisError as e:
            self._mark_unhealthy("connect", e)
            return False
        with self._lock:
            self._healthy = True
        cache_primary_healthy.set(1)
        logger.info("Cache primary connected")
        return True

    def disconnect(self) -> None:
        self._stop.set()
        probe = self._probe
        if probe is not None and probe.is_alive() and probe is not threading.current_thread():
            probe.join(timeout=self.reconnect_interval + 1)
        self._probe = None
        with self._lock:
            self._healthy = False
        if self._client is not None:
            try:
                self._client.close()
            except RedisError as e:
                logger.debug("Cache primary close failed", extra={"error": str(e)})
        self._client = None
        cache_primary_healthy.set(0)

    @property
    def is_healthy(self) -> bool:
        with self._lock:
            return self._healthy

    def status(self) -> dict:
        with self._lock:
            healthy = self._healthy
            pending = len(self._pending_users) + (1 if self._pending_flush else 0)
        if self._client_factory is None:
            primary = "disabled"
        else:
            primary = "healthy" if healthy else "unavailable"
        return {
            "primary": primary,
            "local_entries": len(self.local),
            "pending_invalidations": pending,
        }

    # Keys --------------------------------------------------------------
    def user_prefix(self, user_id: str) -> str:
        return f"{self.prefix}:u:{user_id}:"

    def user_key(self, user_id: str, *parts: object) -> str:
        return self.user_prefix(user_id) + ":".join("" if p is None else str(p) for p in parts)

    def task_list_key(self, user_id: str, day: str, limit: int, offset: int, task_type: Optional[str] = None) -> str:
        return self.user_key(user_id, "tasks", day, limit, offset, task_type or "all")

    def generation_key(self, user_id: str) -> str:
        # Outside the user prefix so invalidate_user never deletes it
        return f"{self.prefix}:gen:{user_id}"

    # Generations -------------------------------------------------------
    def generation(self, user_id: str) -> Tuple[int, int, Optional[str]]:
        """Opaque token that changes whenever the user's entries are invalidated."""
        with self._lock:
            epoch, local = self._epoch, self._generations.get(user_id, 0)
        shared = None
        if self.is_healthy:
            try:
                shared = self._client.get(self.generation_key(user_id))
            except RedisError as e:
                self._mark_unhealthy("generation", e)
        return epoch, local, shared

    def set_if_current(self, user_id: str, token: Tuple[int, int, Optional[str]], key: str, value: Any,
                       ttl_seconds: Optional[int] = None) -> bool:
        """set() unless the user was invalidated after ``token`` was captured."""
        if self.generation(user_id) != token:
            logger.debug("Dropped cache write for invalidated user", extra={"user_id": user_id})
            return False
        self.set(key, value, ttl_seconds)
        return True

    def _bump_shared_generation(self, user_id: str) -> None:
        key = self.generation_key(user_id)
        self._client.incr(key)
        self._client.expire(key, GENERATION_TTL_SECONDS)

    # Contract ----------------------------------------------------------
    def get(self, key: str) -> Optional[Any]:
        payload = None
        if self.is_healthy:
            try:
                payload = self._client.get(key)
            except RedisError as e:
                self._mark_unhealthy("get", e)
                cache_requests_total.inc(labels={"tier": "primary", "result": "error"})
            else:
                cache_requests_total.inc(labels={"tier": "primary", "result": "hit" if payload else "miss"})
                return self._decode(key, payload)

        payload = self.local.get(key)
        cache_requests_total.inc(labels={"tier": "local", "result": "hit" if payload else "miss"})
        return self._decode(key, payload)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = int(ttl_seconds or self.default_ttl)
        payload = json.dumps(value, default=str)
        if self.is_healthy:
            try:
                self._client.setex(key, ttl, payload)
                return
            except RedisError as e:
                self._mark_unhealthy("set", e)
        self.local.set(key, payload, ttl)

    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached entry for a user from both tiers.

        The local tier is cleared unconditionally. If the primary cannot be
        reached the user is queued and the primary stays out of service until
        the queue has been replayed against it.
        """
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        removed = self.local.delete_prefix(self.user_prefix(user_id))
        if self._client_factory is None:
            return removed

        while True:
            if self.is_healthy:
                try:
                    removed += self._delete_matching(_escape_glob(self.user_prefix(user_id)) + "*")
                    self._bump_shared_generation(user_id)
                    logger.debug("Invalidated user cache", extra={"user_id": user_id, "deleted": removed})
                    return removed
                except RedisError as e:
                    self._mark_unhealthy("invalidate", e)

            # Health is re-read under the lock try_recover() flips it with, so
            # the user is either replayed by recovery or deleted directly.
            with self._lock:
                if not self._healthy:
                    self._pending_users.add(user_id)
                    break
        logger.info("Queued primary invalidation", extra={"user_id": user_id})
        return removed

    def flush_all(self) -> int:
        with self._lock:
            self._epoch += 1
        removed = self.local.clear()
        if self._client_factory is None:
            return removed
        while True:
            if self.is_healthy:
                try:
                    return removed + self._delete_matching(_escape_glob(f"{self.prefix}:") + "*")
                except RedisError as e:
                    self._mark_unhealthy("flush", e)
            with self._lock:
                if not self._healthy:
                    self._pending_flush = True
                    return removed

    # Internals ---------------------------------------------------------
    def _decode(self, key: str, payload: Optional[str]) -> Optional[Any]:
        if not payload:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            logger.warning("Discarding undecodable cache entry", extra={"key": key})
            return None

    def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        batch = []
        for key in self._client.scan_iter(match=pattern, count=100):
            batch.append(key)
            if len(batch) >= 100:
                deleted += self._client.delete(*batch) or 0
                batch = []
        if batch:
            deleted += self._client.delete(*batch) or 0
        return deleted

    def _mark_unhealthy(self, operation: str, error: Exception) -> None:
        with self._lock:
            was_healthy = self._healthy
            self._healthy = False
            start_probe = (
                not self._stop.is_set()
                and self._client_factory is not None
                and (self._probe is None or not self._probe.is_alive())
            )
            if start_probe:
                self._probe = threading.Thread(target=self._reconnect_loop, name="cache-reconnect", daemon=True)
        cache_primary_healthy.set(0)
        if was_healthy or operation == "connect":
            logger.warning(
                "Cache primary unavailable; falling back to local tier",
                extra={"operation": operation, "error": str(error)},
            )
        if start_probe:
            self._probe.start()

    def _reconnect_loop(self) -> None:
        while not self._stop.wait(self.reconnect_interval):
            if self.try_recover():
                return

    def try_recover(self) -> bool:
        """One reconnect attempt: ping, replay queued invalidations, resume.

        Returns True once the primary is back in service.
        """
        try:
            if self._client is None:
                self._client = self._client_factory()
            self._client.ping()
            while True:
                with self._lock:
                    users = set(self._pending_users)
                    flush = self._pending_flush
                    if not users and not flush:
                        # Local entries were written while the primary was
                        # authoritative elsewhere; drop them on handover.
                        self.local.clear()
                        self._healthy = True
                        break
                if flush:
                    self._delete_matching(_escape_glob(f"{self.prefix}:") + "*")
                for user_id in users:
                    self._delete_matching(_escape_glob(self.user_prefix(user_id)) + "*")
                    self._bump_shared_generation(user_id)
                with self._lock:
                    self._pending_users -= users
                    if flush:
                        self._pending_flush = False
        except RedisError as e:
            logger.debug("Cache primary still unavailable", extra={"error": str(e)})
            return False
        cache_primary_healthy.set(1)
        logger.info("Cache primary recovered")
        return True
