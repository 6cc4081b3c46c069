"""
Per-key mutual exclusion.

LocalKeyLocks serializes threads of one process; RedisKeyLocks extends the
same contract across processes sharing a Redis instance.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List
import logging

import redis

from common.settings import settings

logger = logging.getLogger(__name__)

class LocalKeyLocks:
    """One reference-counted threading.Lock per key"""

    def __init__(self, namespace: str):
        self.namespace = namespace
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}
        self._guard = threading.Lock()

    def _acquire_entry(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _release_entry(self, key: str):
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        # Sorted, de-duplicated acquisition order rules out lock-order deadlocks
        ordered: List[str] = sorted(set(keys))
        with _nested(self, ordered):
            yield

    def active_keys(self) -> List[str]:
        with self._guard:
            return list(self._locks)

class RedisKeyLocks:
    """Redis-backed locks, one per `{namespace}:{key}`"""

    def __init__(self, namespace: str, client: "redis.Redis" = None, timeout: float = None):
        self.namespace = namespace
        self.client = client or redis.Redis.from_url(settings.redis_url)
        self.timeout = timeout or settings.lock_timeout_seconds

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        name = f"lock:{self.namespace}:{key}"
        lock = self.client.lock(name, timeout=self.timeout, blocking_timeout=self.timeout)
        if not lock.acquire():
            raise TimeoutError(f"Could not acquire {name} within {self.timeout}s")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning(f"Lock {name} expired before release")

    @contextmanager
    def hold_many(self, keys: Iterable[str]) -> Iterator[None]:
        ordered: List[str] = sorted(set(keys))
        with _nested(self, ordered):
            yield

@contextmanager
def _nested(locks, keys: List[str]) -> Iterator[None]:
    if not keys:
        yield
        return
    with locks.hold(keys[0]):
        with _nested(locks, keys[1:]):
            yield

def build_key_locks(namespace: str):
    """Lock registry for `namespace` using the configured backend"""
    if settings.lock_backend == "redis":
        logger.info(f"Using Redis locks for {namespace}")
        return RedisKeyLocks(namespace)
    return LocalKeyLocks(namespace)
