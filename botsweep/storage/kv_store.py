"""
kv_store.py — Storage driver for the shared sweep state
=======================================================
Every orchestrator process, the session_command script and the dashboard
talk to the same key-value store. This module is the only place that knows
which store that is.

  KeyValueStore   abstract interface. Scanning is a first-class operation,
                  callers never reach into a driver's raw client.
  RedisStore      redis-py backed, used in production.
  MemoryStore     in-process twin with the same semantics (TTL expiry, glob
                  scans, sets, sorted sets). Tests and --memory runs.

Every driver failure surfaces as StorageError. The registry and session
layers catch it and degrade, the driver never decides that for them.

Usage:
    from botsweep.storage.kv_store import RedisStore

    store = RedisStore.from_url("redis://localhost:6379/0")
    if store.set_if_absent("bot_run:…", payload, ttl_seconds=86400):
        ...  # claim won
"""
from __future__ import annotations

import fnmatch
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Set, Tuple

import redis

from .. import sweep_config as cfg

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A read or write against the shared store failed."""


class KeyValueStore(ABC):
    """Operations the sweep needs from a store. Values are str (JSON)."""

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Overwrite. ttl_seconds=None makes the key durable (any old TTL is cleared)."""

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """Atomic claim. True only for the caller that created the key."""

    @abstractmethod
    def delete(self, *keys: str) -> int: ...

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Seconds left; -1 durable; -2 missing (redis TTL semantics)."""

    @abstractmethod
    def scan_keys(self, pattern: str, count: Optional[int] = None) -> Iterator[str]:
        """Every key matching a glob pattern. Drains the full cursor."""

    @abstractmethod
    def sadd(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def srem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def smembers(self, key: str) -> Set[str]: ...

    @abstractmethod
    def zadd(self, key: str, mapping: Dict[str, float]) -> int: ...

    @abstractmethod
    def zrem(self, key: str, *members: str) -> int: ...

    @abstractmethod
    def zrevrange_with_scores(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        """Highest score first; stop is inclusive, -1 means the end."""


# ── Redis ────────────────────────────────────────────────────────────────────

class RedisStore(KeyValueStore):
    """KeyValueStore over a redis-py client created with decode_responses=True."""

    def __init__(self, client: "redis.Redis"):
        self._r = client

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "RedisStore":
        url = url or cfg.REDIS_URL
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=cfg.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=cfg.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        logger.info(f"🗄  redis store → {url}")
        return cls(client)

    def ping(self) -> bool:
        try:
            return bool(self._r.ping())
        except redis.RedisError as e:
            logger.warning(f"redis ping failed: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            return self._r.get(key)
        except redis.RedisError as e:
            raise StorageError(f"GET {key}: {e}") from e

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            # Plain SET drops any TTL on the key, which is what makes a
            # completion record durable.
            self._r.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise StorageError(f"SET {key}: {e}") from e

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        try:
            return bool(self._r.set(key, value, ex=ttl_seconds, nx=True))
        except redis.RedisError as e:
            raise StorageError(f"SET NX {key}: {e}") from e

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._r.delete(*keys))
        except redis.RedisError as e:
            raise StorageError(f"DEL {keys}: {e}") from e

    def ttl(self, key: str) -> int:
        try:
            return int(self._r.ttl(key))
        except redis.RedisError as e:
            raise StorageError(f"TTL {key}: {e}") from e

    def scan_keys(self, pattern: str, count: Optional[int] = None) -> Iterator[str]:
        # Collected eagerly so a connection drop mid-scan raises here,
        # not halfway through the caller's loop.
        try:
            keys = list(self._r.scan_iter(match=pattern, count=count or cfg.SCAN_BATCH_SIZE))
        except redis.RedisError as e:
            raise StorageError(f"SCAN {pattern}: {e}") from e
        return iter(keys)

    def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            return int(self._r.sadd(key, *members))
        except redis.RedisError as e:
            raise StorageError(f"SADD {key}: {e}") from e

    def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            return int(self._r.srem(key, *members))
        except redis.RedisError as e:
            raise StorageError(f"SREM {key}: {e}") from e

    def smembers(self, key: str) -> Set[str]:
        try:
            return set(self._r.smembers(key))
        except redis.RedisError as e:
            raise StorageError(f"SMEMBERS {key}: {e}") from e

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        try:
            return int(self._r.zadd(key, mapping))
        except redis.RedisError as e:
            raise StorageError(f"ZADD {key}: {e}") from e

    def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        try:
            return int(self._r.zrem(key, *members))
        except redis.RedisError as e:
            raise StorageError(f"ZREM {key}: {e}") from e

    def zrevrange_with_scores(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        try:
            rows = self._r.zrevrange(key, start, stop, withscores=True)
        except redis.RedisError as e:
            raise StorageError(f"ZREVRANGE {key}: {e}") from e
        return [(member, float(score)) for member, score in rows]


# ── In-memory ────────────────────────────────────────────────────────────────

class MemoryStore(KeyValueStore):
    """
    Single-process stand-in for Redis. Thread-safe; TTLs use a monotonic
    clock that tests can replace via the clock argument.
    """

    def __init__(self, clock=time.monotonic):
        self._clock   = clock
        self._lock    = threading.RLock()
        self._strings: Dict[str, str]              = {}
        self._sets:    Dict[str, Set[str]]         = {}
        self._zsets:   Dict[str, Dict[str, float]] = {}
        self._expiry:  Dict[str, float]            = {}

    def _expire_due(self) -> None:
        now = self._clock()
        for key in [k for k, deadline in self._expiry.items() if deadline <= now]:
            self._drop(key)

    def _drop(self, key: str) -> bool:
        self._expiry.pop(key, None)
        found = False
        for space in (self._strings, self._sets, self._zsets):
            if key in space:
                del space[key]
                found = True
        return found

    def _exists(self, key: str) -> bool:
        return key in self._strings or key in self._sets or key in self._zsets

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._expire_due()
            return self._strings.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._expire_due()
            self._strings[key] = value
            self._expiry.pop(key, None)
            if ttl_seconds:
                self._expiry[key] = self._clock() + ttl_seconds

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        with self._lock:
            self._expire_due()
            if self._exists(key):
                return False
            self.set(key, value, ttl_seconds)
            return True

    def delete(self, *keys: str) -> int:
        with self._lock:
            self._expire_due()
            return sum(1 for k in keys if self._drop(k))

    def ttl(self, key: str) -> int:
        with self._lock:
            self._expire_due()
            if not self._exists(key):
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(0, int(round(deadline - self._clock())))

    def scan_keys(self, pattern: str, count: Optional[int] = None) -> Iterator[str]:
        with self._lock:
            self._expire_due()
            every = list(self._strings) + list(self._sets) + list(self._zsets)
        return iter(sorted(k for k in every if fnmatch.fnmatchcase(k, pattern)))

    def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            self._expire_due()
            bucket = self._sets.setdefault(key, set())
            added = len(set(members) - bucket)
            bucket.update(members)
            return added

    def srem(self, key: str, *members: str) -> int:
        with self._lock:
            self._expire_due()
            bucket = self._sets.get(key)
            if not bucket:
                return 0
            removed = len(bucket & set(members))
            bucket.difference_update(members)
            if not bucket:
                del self._sets[key]
            return removed

    def smembers(self, key: str) -> Set[str]:
        with self._lock:
            self._expire_due()
            return set(self._sets.get(key, set()))

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        with self._lock:
            self._expire_due()
            zset = self._zsets.setdefault(key, {})
            added = sum(1 for m in mapping if m not in zset)
            zset.update({m: float(s) for m, s in mapping.items()})
            return added

    def zrem(self, key: str, *members: str) -> int:
        with self._lock:
            self._expire_due()
            zset = self._zsets.get(key)
            if not zset:
                return 0
            removed = sum(1 for m in members if zset.pop(m, None) is not None)
            if not zset:
                del self._zsets[key]
            return removed

    def zrevrange_with_scores(self, key: str, start: int, stop: int) -> List[Tuple[str, float]]:
        with self._lock:
            self._expire_due()
            zset = self._zsets.get(key, {})
            # Redis orders equal scores by member, descending for ZREVRANGE.
            ranked = sorted(zset.items(), key=lambda kv: (kv[1], kv[0]), reverse=True)
        end = None if stop == -1 else stop + 1
        return ranked[start:end]
