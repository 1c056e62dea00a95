"""Per-organization mutual exclusion for ledger writes within one process."""

from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class _OrganizationLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.Lock()


class OrganizationLockRegistry:
    """Hands out one lock per organization id.

    The registry guard is held only while looking a lock up, never while a
    ledger write runs, so different organizations do not contend. Entries
    disappear once no caller holds a reference.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[int, _OrganizationLock]" = weakref.WeakValueDictionary()

    def _lock_for(self, organization_id: int) -> _OrganizationLock:
        with self._guard:
            entry = self._locks.get(organization_id)
            if entry is None:
                entry = _OrganizationLock()
                self._locks[organization_id] = entry
            return entry

    @contextmanager
    def hold(self, organization_id: int, timeout: float | None = None) -> Iterator[bool]:
        """Acquire the organization's lock; yields False if ``timeout`` elapsed first."""
        entry = self._lock_for(int(organization_id))
        acquired = entry.lock.acquire(timeout=timeout if timeout and timeout > 0 else -1)
        try:
            yield acquired
        finally:
            if acquired:
                entry.lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


organization_locks = OrganizationLockRegistry()
