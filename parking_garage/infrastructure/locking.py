# File: parking_garage/infrastructure/locking.py
"""
Serializing locks for the occupancy workflow

Check-in, check-out and status changes take named locks before they read
anything: "spot:<id>", "plate:<PLATE>" and "car:<id>". Keys are always
acquired in sorted order, so two operations needing overlapping keys can
never wait on each other in a cycle.

Implementations:
1. InProcessLockManager - one threading.Lock per key; for a single process
2. RedisLockManager - redis locks with expiry; for several workers sharing
   one database
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import redis
from redis.exceptions import LockError, RedisError

from ..domain.exceptions import ConflictError, CONCURRENT_MODIFICATION


def spot_key(spot_id: str) -> str:
    return f"spot:{spot_id}"


def plate_key(license_plate) -> str:
    return f"plate:{license_plate}"


def car_key(car_id: str) -> str:
    return f"car:{car_id}"


class LockManager(ABC):
    """Acquires a set of named locks for the duration of a with-block"""

    @abstractmethod
    @contextmanager
    def acquire(self, *keys: str) -> Iterator[None]:
        pass

    @staticmethod
    def ordered(keys) -> List[str]:
        return sorted(set(keys))


class _KeyLock:
    """A key's lock plus the number of callers holding or waiting on it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class InProcessLockManager(LockManager):
    """
    Per-key threading locks

    A key's lock lives in the registry only while some caller holds or waits
    on it, so the registry stays as small as the set of keys in use.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[str, _KeyLock] = {}
        self._registry_lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def acquire(self, *keys: str) -> Iterator[None]:
        referenced: List[str] = []
        held: List[threading.Lock] = []
        try:
            for key in self.ordered(keys):
                lock = self._checkout(key)
                referenced.append(key)
                if self.timeout is not None:
                    acquired = lock.acquire(timeout=self.timeout)
                else:
                    acquired = lock.acquire()
                if not acquired:
                    self._logger.warning(f"Timed out waiting for lock {key}")
                    raise ConflictError(
                        "Resource is busy, please retry",
                        code=CONCURRENT_MODIFICATION,
                        details={"lock": key},
                    )
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for key in reversed(referenced):
                self._checkin(key)


class RedisLockManager(LockManager):
    """
    Distributed locks on redis

    timeout bounds how long a crashed holder keeps a key; blocking_timeout
    bounds how long a caller waits before giving up with ConflictError.
    """

    def __init__(
        self,
        client: redis.Redis,
        timeout: float = 10.0,
        blocking_timeout: float = 5.0,
        prefix: str = "parking_garage:lock:",
    ):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix
        self._logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "RedisLockManager":
        return cls(redis.Redis.from_url(redis_url), **kwargs)

    @contextmanager
    def acquire(self, *keys: str) -> Iterator[None]:
        held = []
        try:
            for key in self.ordered(keys):
                lock = self.client.lock(
                    f"{self.prefix}{key}",
                    timeout=self.timeout,
                    blocking_timeout=self.blocking_timeout,
                )
                try:
                    acquired = lock.acquire()
                except RedisError as e:
                    self._logger.error(f"Redis error acquiring lock {key}: {e}")
                    raise ConflictError(
                        "Lock service unavailable, please retry",
                        code=CONCURRENT_MODIFICATION,
                        details={"lock": key},
                    ) from e
                if not acquired:
                    self._logger.warning(f"Timed out waiting for lock {key}")
                    raise ConflictError(
                        "Resource is busy, please retry",
                        code=CONCURRENT_MODIFICATION,
                        details={"lock": key},
                    )
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                try:
                    lock.release()
                except LockError as e:
                    # Expired before release; the compare-and-swap writes still guarded the data
                    self._logger.error(f"Lock {key} expired before release: {e}")
