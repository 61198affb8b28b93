"""In-memory session store.

Maps opaque tokens to :class:`Session` records. Sessions optionally
expire after ``ttl`` seconds; an expired entry is dropped when it is
looked up, and the whole table is swept for expired entries at most
once per ``SWEEP_INTERVAL`` when new sessions are issued.
"""

from __future__ import annotations

import logging
import secrets
import time
from threading import Lock
from typing import Callable

from matrixgate.domain.models import Account, Session

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
SWEEP_INTERVAL = 60.0


class SessionStore:
    def __init__(
        self,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl if ttl else None
        self._clock = clock
        self._sessions: dict[str, tuple[Session, float]] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(self, account: Account) -> Session:
        """Mint a new session for *account*."""
        session = Session(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            username=account.username,
            role=account.role,
            permissions=account.permissions,
        )
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= SWEEP_INTERVAL:
                self._sweep(now)
            self._sessions[session.token] = (session, now)
        logger.debug("Issued session for %s", account.username)
        return session

    def get(self, token: str) -> Session | None:
        """Look up a live session, dropping it if it has expired."""
        with self._lock:
            entry = self._sessions.get(token)
            if entry is None:
                return None
            session, issued = entry
            if self._expired(issued, self._clock()):
                del self._sessions[token]
                logger.info("Session for %s expired", session.username)
                return None
            return session

    def destroy(self, token: str) -> bool:
        """Remove a session. Returns False if it did not exist."""
        with self._lock:
            return self._sessions.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def purge_expired(self) -> int:
        """Drop every expired session. Returns the number removed."""
        with self._lock:
            return self._sweep(self._clock())

    def _expired(self, issued: float, now: float) -> bool:
        return self._ttl is not None and now - issued >= self._ttl

    def _sweep(self, now: float) -> int:
        self._last_sweep = now
        expired = [
            token for token, (_, issued) in self._sessions.items()
            if self._expired(issued, now)
        ]
        for token in expired:
            del self._sessions[token]
        if expired:
            logger.info("Purged %d expired sessions", len(expired))
        return len(expired)
