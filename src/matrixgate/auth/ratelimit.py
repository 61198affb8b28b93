"""Per-client request rate limiting.

Each client address gets a fixed window of ``window_seconds`` that
starts with its first request. Up to ``max_requests`` requests are
allowed inside the window; further requests are refused until it
ends. Finished windows are swept at most once per window length.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float


@dataclass(slots=True)
class _Window:
    started_at: float
    count: int = 0


class RequestRateLimiter:
    """Thread-safe, in-memory fixed-window request counter."""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max(1, max_requests)
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def hit(self, client: str) -> RateLimitDecision:
        """Count one request from *client* and say whether it may proceed."""
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(now)

            window = self._windows.get(client)
            if window is None or now - window.started_at >= self._window_seconds:
                window = self._windows[client] = _Window(started_at=now)

            reset_after = self._window_seconds - (now - window.started_at)
            if window.count >= self._max_requests:
                return RateLimitDecision(False, self._max_requests, 0, reset_after)
            window.count += 1
            return RateLimitDecision(
                True, self._max_requests, self._max_requests - window.count, reset_after
            )

    def _sweep(self, now: float) -> None:
        self._last_sweep = now
        finished = [
            client for client, window in self._windows.items()
            if now - window.started_at >= self._window_seconds
        ]
        for client in finished:
            del self._windows[client]
