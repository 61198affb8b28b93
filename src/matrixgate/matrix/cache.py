"""Short-lived cache for the device's routing table."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from matrixgate.domain.models import RoutingSnapshot

DEFAULT_TTL = 5.0


class StatusCache:
    """Holds the last routing snapshot for ``ttl`` seconds.

    A ttl of 0 disables caching.
    """

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._snapshot: RoutingSnapshot | None = None
        self._stored_at = 0.0
        self._lock = Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self) -> RoutingSnapshot | None:
        """Return the cached snapshot if still fresh, else None."""
        with self._lock:
            if self._snapshot is None:
                return None
            if self._clock() - self._stored_at >= self._ttl:
                return None
            return self._snapshot

    def put(self, snapshot: RoutingSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot
            self._stored_at = self._clock()

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
