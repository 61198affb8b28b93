"""Shared test fixtures for the matrixgate test suite.

Provides a controllable clock, a scripted fake matrix device, bcrypt
hashed accounts and ready-made access-control components.
"""

from __future__ import annotations

import asyncio

import bcrypt
import pytest

from matrixgate.auth.access import AccessControl
from matrixgate.auth.attempts import AttemptTracker
from matrixgate.auth.credentials import CredentialStore
from matrixgate.auth.sessions import SessionStore
from matrixgate.domain.models import Account, Permission, Role

ADMIN_PASSWORD = "adminpass"
VIEWER_PASSWORD = "viewerpass"


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Fake matrix device
# ---------------------------------------------------------------------------


class FakeWriter:
    def __init__(self, device: FakeDevice, reader: asyncio.StreamReader) -> None:
        self._device = device
        self._reader = reader
        self.closed = False

    def write(self, data: bytes) -> None:
        self._device.written.append(data)
        if self._device.fail_sends > 0:
            self._device.fail_sends -= 1
            raise ConnectionResetError("Connection reset by peer")
        if self._device.responses:
            self._reader.feed_data(self._device.responses.pop(0))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeDevice:
    """Scripted matrix device.

    Each written command is answered with the next queued response.
    ``fail_connect`` refuses connections; ``fail_sends`` makes that many
    writes raise a connection reset.
    """

    def __init__(self) -> None:
        self.responses: list[bytes] = []
        self.written: list[bytes] = []
        self.writers: list[FakeWriter] = []
        self.connects = 0
        self.fail_connect = False
        self.fail_sends = 0

    async def open(self, host: str, port: int) -> tuple[asyncio.StreamReader, FakeWriter]:
        self.connects += 1
        if self.fail_connect:
            raise ConnectionRefusedError(f"Connection refused by {host}:{port}")
        reader = asyncio.StreamReader()
        writer = FakeWriter(self, reader)
        self.writers.append(writer)
        return reader, writer


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


# ---------------------------------------------------------------------------
# Accounts / access control
# ---------------------------------------------------------------------------


def _hash(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture(scope="session")
def admin_hash() -> str:
    return _hash(ADMIN_PASSWORD)


@pytest.fixture(scope="session")
def viewer_hash() -> str:
    return _hash(VIEWER_PASSWORD)


@pytest.fixture
def admin_account(admin_hash: str) -> Account:
    return Account(
        username="admin",
        password_hash=admin_hash,
        role=Role.ADMIN,
        permissions=frozenset({Permission.SWITCH, Permission.QUERY, Permission.CONFIG}),
    )


@pytest.fixture
def viewer_account(viewer_hash: str) -> Account:
    return Account(
        username="viewer",
        password_hash=viewer_hash,
        role=Role.OPERATOR,
        permissions=frozenset({Permission.QUERY}),
    )


@pytest.fixture
def credentials(admin_account: Account, viewer_account: Account) -> CredentialStore:
    return CredentialStore({"admin": admin_account, "viewer": viewer_account})


@pytest.fixture
def access(credentials: CredentialStore, clock: FakeClock) -> AccessControl:
    """AccessControl with 3-attempt lockout of 60 s and 1 h sessions."""
    return AccessControl(
        credentials=credentials,
        attempts=AttemptTracker(max_attempts=3, lockout_seconds=60.0, clock=clock),
        sessions=SessionStore(ttl=3600.0, clock=clock),
    )
