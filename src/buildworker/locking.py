"""Reader/writer locks keyed by package cache identity.

Builds only read the shared cache, so any number of them may hold a read
lock at once. A deploy's update step is the only writer and must hold the
lock alone. Readers are preferred: deploys are rare relative to builds.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager


class ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers == 0:
                raise RuntimeError("release_read() called on a lock without readers")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write() called on a lock without a writer")
            self._writer = False
            self._cond.notify_all()

    def downgrade(self) -> None:
        """Turn the held write lock into a read lock without letting a writer in."""
        with self._cond:
            if not self._writer:
                raise RuntimeError("downgrade() requires the write lock")
            self._writer = False
            self._readers += 1
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class LockRegistry:
    """Process-wide table of cache locks, owned by the service instance.

    Entries are created on first access and never removed.
    """

    def __init__(self, lock_factory: Callable[[], ReadWriteLock] = ReadWriteLock) -> None:
        self._lock_factory = lock_factory
        self._mutex = threading.Lock()
        self._locks: dict[str, ReadWriteLock] = {}
        self._transactions: dict[str, threading.Lock] = {}

    def lock_for(self, identity: str) -> ReadWriteLock:
        with self._mutex:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._lock_factory()
                self._locks[identity] = lock
            return lock

    def acquire_read(self, identity: str) -> None:
        self.lock_for(identity).acquire_read()

    def release_read(self, identity: str) -> None:
        self.lock_for(identity).release_read()

    def acquire_write(self, identity: str) -> None:
        self.lock_for(identity).acquire_write()

    def release_write(self, identity: str) -> None:
        self.lock_for(identity).release_write()

    def read(self, identity: str) -> AbstractContextManager[None]:
        return self.lock_for(identity).read()

    def write(self, identity: str) -> AbstractContextManager[None]:
        return self.lock_for(identity).write()

    @contextmanager
    def transaction(self, identity: str) -> Iterator[None]:
        """Serialize deploy transactions against one cache."""
        with self._mutex:
            guard = self._transactions.setdefault(identity, threading.Lock())
        with guard:
            yield
