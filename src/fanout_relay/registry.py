# registry.py -- Live set of connection handles
# Membership only. Snapshots are taken under the lock and iterated without it,
# so slow sends never hold up add/remove.

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable

log = logging.getLogger(__name__)


class ConnectionRegistry:
    """Thread-safe set of active connections (identity semantics)."""

    def __init__(self) -> None:
        self._connections: set[Hashable] = set()
        self._lock = threading.Lock()

    def add(self, handle: Hashable) -> int:
        with self._lock:
            self._connections.add(handle)
            count = len(self._connections)
        log.debug("Registered %r (%d total)", handle, count)
        return count

    def remove(self, handle: Hashable) -> int:
        """Remove handle if present. Removing an absent handle is a no-op."""
        with self._lock:
            self._connections.discard(handle)
            count = len(self._connections)
        log.debug("Unregistered %r (%d total)", handle, count)
        return count

    def snapshot(self) -> frozenset:
        with self._lock:
            return frozenset(self._connections)

    def size(self) -> int:
        with self._lock:
            return len(self._connections)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._connections
