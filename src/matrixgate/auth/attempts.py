"""Failed-login tracking and time-boxed lockouts.

Failures are counted per (client address, username) pair, so one
pairing reaching the threshold never locks out another. Once the count
reaches ``max_attempts`` the pair is locked for ``lockout_seconds``.
A failure older than ``lockout_seconds`` no longer counts. Expired
lockouts and stale records are dropped lazily on the next check, and
swept from the whole table at most once per ``SWEEP_INTERVAL``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

logger = logging.getLogger(__name__)

AttemptKey = tuple[str, str]

SWEEP_INTERVAL = 60.0


@dataclass(slots=True)
class LoginAttemptRecord:
    """Consecutive failures for one (address, username) pair."""

    failure_count: int = 0
    last_failure_at: float = 0.0


@dataclass(slots=True)
class Lockout:
    locked_at: float


class AttemptTracker:
    """Thread-safe, in-memory login attempt tracker."""

    def __init__(
        self,
        max_attempts: int = 5,
        lockout_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._lockout_seconds = lockout_seconds
        self._clock = clock
        self._records: dict[AttemptKey, LoginAttemptRecord] = {}
        self._lockouts: dict[AttemptKey, Lockout] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def is_locked(self, key: AttemptKey) -> bool:
        """Return True while *key* is inside an active lockout.

        An expired lockout is removed together with its attempt record.
        """
        with self._lock:
            now = self._clock()
            if self._lockout_active(key, now):
                return True
            self._expire(key, now)
            return False

    def lockout_remaining(self, key: AttemptKey) -> float:
        """Seconds left in the lockout for *key*, or 0 if not locked."""
        with self._lock:
            lockout = self._lockouts.get(key)
            if lockout is None:
                return 0.0
            remaining = self._lockout_seconds - (self._clock() - lockout.locked_at)
            return max(0.0, remaining)

    def record_failure(self, key: AttemptKey) -> bool:
        """Count a failed attempt for *key*.

        Returns True if this failure triggered a lockout.
        """
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= SWEEP_INTERVAL:
                self._sweep(now)
            self._expire(key, now)
            record = self._records.setdefault(key, LoginAttemptRecord())
            record.failure_count += 1
            record.last_failure_at = now
            if record.failure_count >= self._max_attempts and key not in self._lockouts:
                self._lockouts[key] = Lockout(locked_at=now)
                logger.warning(
                    "Login locked for %s@%s after %d failures",
                    key[1], key[0], record.failure_count,
                )
                return True
            return False

    def failure_count(self, key: AttemptKey) -> int:
        with self._lock:
            self._expire(key, self._clock())
            record = self._records.get(key)
            return record.failure_count if record else 0

    def clear(self, key: AttemptKey) -> None:
        """Forget failures and any lockout for *key* after a successful login."""
        with self._lock:
            self._records.pop(key, None)
            self._lockouts.pop(key, None)

    def purge_expired(self) -> int:
        """Drop expired lockouts and stale records. Returns the number of pairs removed."""
        with self._lock:
            return self._sweep(self._clock())

    # Callers hold self._lock for everything below.

    def _lockout_active(self, key: AttemptKey, now: float) -> bool:
        lockout = self._lockouts.get(key)
        return lockout is not None and now - lockout.locked_at < self._lockout_seconds

    def _stale(self, key: AttemptKey, now: float) -> bool:
        if self._lockout_active(key, now):
            return False
        record = self._records.get(key)
        if record is not None and now - record.last_failure_at < self._lockout_seconds:
            return key in self._lockouts
        return True

    def _expire(self, key: AttemptKey, now: float) -> bool:
        if key not in self._records and key not in self._lockouts:
            return False
        if not self._stale(key, now):
            return False
        if self._lockouts.pop(key, None) is not None:
            logger.info("Lockout expired for %s@%s", key[1], key[0])
        self._records.pop(key, None)
        return True

    def _sweep(self, now: float) -> int:
        self._last_sweep = now
        keys = set(self._records) | set(self._lockouts)
        removed = sum(1 for key in keys if self._expire(key, now))
        if removed:
            logger.debug("Purged %d stale login attempt records", removed)
        return removed
