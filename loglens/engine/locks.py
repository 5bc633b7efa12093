"""
Keyed mutual exclusion.

One lock per correlation key, created on first use and discarded once no
thread holds or waits on it. Work on different keys never contends.
"""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Optional


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    Registry of per-key locks.

    Example:
        >>> locks = KeyedLock()
        >>> with locks.hold(("payment-service", "PAYMENT_TIMEOUT")) as acquired:
        ...     if acquired:
        ...         ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(
        self,
        key: Hashable,
        blocking: bool = True,
        timeout: Optional[float] = None,
    ) -> Iterator[bool]:
        """
        Acquire the lock for ``key`` for the duration of the block.

        Yields whether the lock was acquired; with ``blocking=False`` or a
        ``timeout`` the block runs either way and must check the flag.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1

        if not blocking:
            acquired = entry.lock.acquire(blocking=False)
        elif timeout is not None:
            acquired = entry.lock.acquire(timeout=timeout)
        else:
            acquired = entry.lock.acquire()

        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
