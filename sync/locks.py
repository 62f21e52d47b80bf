"""Process-wide, non-blocking locks keyed by ``(user, platform)``."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class SyncInProgressError(RuntimeError):
    """Raised when a sync for the same user and platform is already running."""

    def __init__(self, user_id: str, platform: str):
        self.user_id = user_id
        self.platform = platform
        super().__init__(f"a {platform} sync is already running for this user")


class KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: Hashable) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._held

    @contextmanager
    def hold(self, user_id: str, platform: str) -> Iterator[None]:
        """Hold the lock for ``(user_id, platform)`` or raise :class:`SyncInProgressError`."""

        key = (user_id, platform)
        if not self.try_acquire(key):
            raise SyncInProgressError(user_id, platform)
        try:
            yield
        finally:
            self.release(key)


__all__ = ["KeyedLocks", "SyncInProgressError"]
