"""Access control: authentication, sessions and permission checks.

:class:`AccessControl` combines the credential store, the attempt
tracker and the session store. It performs no network I/O; the only
blocking work, the bcrypt comparison, runs in the event loop's default
executor so concurrent requests are not stalled by it.

Authentication order::

    IP allow-list -> credential shape -> lockout -> account lookup
        -> password check -> clear attempts + issue session

Unknown users and wrong passwords produce the same
:class:`InvalidCredentialsError` and both count towards the lockout.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from typing import Iterable

from matrixgate.auth.attempts import AttemptTracker
from matrixgate.auth.credentials import CredentialStore
from matrixgate.auth.sessions import SessionStore
from matrixgate.config.settings import Settings
from matrixgate.domain.models import Permission, Session
from matrixgate.errors import (
    ForbiddenError,
    InvalidCredentialsError,
    InvalidFormatError,
    IpNotAllowedError,
    LockedError,
    NotAuthenticatedError,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9]+")
MAX_USERNAME_LENGTH = 50
MAX_PASSWORD_LENGTH = 100

IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_allow_list(entries: Iterable[str]) -> list[IpNetwork]:
    """Parse addresses and CIDR blocks; a bare address becomes a /32 or /128."""
    return [ipaddress.ip_network(entry.strip(), strict=False) for entry in entries]


def ip_allowed(client_address: str, networks: list[IpNetwork]) -> bool:
    """Return True if *client_address* lies inside any of *networks*.

    An empty list allows everything. Unparseable addresses are refused.
    IPv4-mapped IPv6 addresses (``::ffff:10.0.0.5``) match IPv4 networks.
    """
    if not networks:
        return True
    try:
        address = ipaddress.ip_address(client_address)
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(address.version == net.version and address in net for net in networks)


class AccessControl:
    """Answers "who is this caller" and "may they do X"."""

    def __init__(
        self,
        credentials: CredentialStore,
        attempts: AttemptTracker,
        sessions: SessionStore,
        allowed_ips: Iterable[str] = (),
        enabled: bool = True,
    ) -> None:
        self._credentials = credentials
        self._attempts = attempts
        self._sessions = sessions
        self._networks = parse_allow_list(allowed_ips)
        self._enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> AccessControl:
        sec = settings.security
        return cls(
            credentials=CredentialStore.from_config(settings.users),
            attempts=AttemptTracker(
                max_attempts=sec.max_login_attempts,
                lockout_seconds=sec.lockout_time,
            ),
            sessions=SessionStore(ttl=sec.session_timeout or None),
            allowed_ips=sec.allowed_ips,
            enabled=sec.enable_auth,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def attempts(self) -> AttemptTracker:
        return self._attempts

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # -------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------

    async def authenticate(self, client_address: str, username: str, password: str) -> Session:
        """Verify credentials and issue a session.

        Raises:
            IpNotAllowedError: The client address is outside the allow-list.
            InvalidFormatError: Username or password has the wrong shape.
            LockedError: Too many recent failures for this address/username.
            InvalidCredentialsError: Unknown user or wrong password.
        """
        if not ip_allowed(client_address, self._networks):
            logger.warning("Login refused for address %s (not in allow-list)", client_address)
            raise IpNotAllowedError("Access denied from this IP")

        if not _valid_shape(username, password):
            raise InvalidFormatError("Invalid credentials format")

        key = (client_address, username)
        if self._attempts.is_locked(key):
            logger.warning("Login attempt for %s from %s while locked", username, client_address)
            raise LockedError("Account temporarily locked")

        account = self._credentials.get(username)
        loop = asyncio.get_running_loop()
        valid = await loop.run_in_executor(
            None, lambda: self._credentials.verify(account, password)
        )
        if not valid:
            self._attempts.record_failure(key)
            logger.warning("Failed login for %s from %s", username, client_address)
            raise InvalidCredentialsError("Invalid credentials")

        self._attempts.clear(key)
        session = self._sessions.create(account)
        logger.info("User %s logged in from %s", username, client_address)
        return session

    def logout(self, session: Session | str | None) -> None:
        """Destroy a session. Unknown or already-destroyed sessions are ignored."""
        if session is None:
            return
        token = session if isinstance(session, str) else session.token
        if self._sessions.destroy(token):
            logger.info("Session closed")

    # -------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------

    def resolve(self, token: str | None) -> Session:
        """Return the live session for *token*.

        A session whose account no longer exists is destroyed.

        Raises:
            NotAuthenticatedError: No token, or the session is unknown,
                expired or orphaned.
        """
        if not token:
            raise NotAuthenticatedError("Authentication required")
        session = self._sessions.get(token)
        if session is None:
            raise NotAuthenticatedError("Authentication required")
        if session.username not in self._credentials:
            self._sessions.destroy(token)
            logger.warning("Dropped session for removed account %s", session.username)
            raise NotAuthenticatedError("Invalid user session")
        return session

    def require(self, session: Session | None, permission: Permission | None = None) -> None:
        """Raise unless *session* is live and holds *permission*.

        With authentication disabled this always passes.

        Raises:
            NotAuthenticatedError: The session is missing or no longer valid.
            ForbiddenError: The session lacks *permission*.
        """
        if not self._enabled:
            return
        live = self.resolve(session.token if session is not None else None)
        if permission is not None and not live.has_permission(permission):
            logger.warning("User %s denied %s permission", live.username, permission.value)
            raise ForbiddenError("Insufficient permissions")

    def authorize(self, session: Session | None, permission: Permission) -> bool:
        """Boolean form of :meth:`require`."""
        try:
            self.require(session, permission)
        except (NotAuthenticatedError, ForbiddenError):
            return False
        return True


def _valid_shape(username: object, password: object) -> bool:
    if not isinstance(username, str) or not isinstance(password, str):
        return False
    if not username or not password:
        return False
    if len(username) > MAX_USERNAME_LENGTH or len(password) > MAX_PASSWORD_LENGTH:
        return False
    return USERNAME_PATTERN.fullmatch(username) is not None
