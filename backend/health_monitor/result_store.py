"""
Short-lived key/value storage for canary results.

The queue worker writes a record under ``queue_health_check:<test_id>`` and the
probe polls for it. Any shared store with expiring keys works; Redis is the
production choice and the in-memory store covers tests and single-process use.

Usage:
    store = RedisResultStore.from_config(cfg.redis)
    store.set("queue_health_check:abc", {"status": "processed"}, ttl_seconds=60)
    store.exists("queue_health_check:abc")
"""

from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol

import redis

from .config import RedisConfig

logger = logging.getLogger("health_agent")

RESULT_KEY_PREFIX = "queue_health_check"


def result_key(test_id: str) -> str:
    return f"{RESULT_KEY_PREFIX}:{test_id}"


class ResultStore(Protocol):
    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None: ...

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...


def get_redis_client(cfg: RedisConfig):
    if cfg.url:
        return redis.from_url(cfg.url, decode_responses=True, socket_timeout=2)
    return redis.Redis(
        host=cfg.host,
        port=cfg.port,
        db=cfg.db,
        password=cfg.password,
        decode_responses=True,
        socket_timeout=2,
    )


class RedisResultStore:
    def __init__(self, client) -> None:
        self._redis = client

    @classmethod
    def from_config(cls, cfg: RedisConfig) -> "RedisResultStore":
        return cls(get_redis_client(cfg))

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self._redis.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[result_store] Dropping unreadable record at {key}")
            return None

    def exists(self, key: str) -> bool:
        return bool(self._redis.exists(key))

    def delete(self, key: str) -> None:
        self._redis.delete(key)


class InMemoryResultStore:
    """
    TTL dict guarded by a lock.

    Expired entries are evicted when read and swept on every write, so records
    nobody reads again (a canary that finished after its probe gave up) do not
    pile up.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry["expires_at"]:
            del self._entries[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now > entry["expires_at"]]
        for key in expired:
            del self._entries[key]

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[key] = {
                "value": dict(value),
                "expires_at": self._clock() + ttl_seconds,
            }

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live_entry(key)
            return dict(entry["value"]) if entry else None

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
