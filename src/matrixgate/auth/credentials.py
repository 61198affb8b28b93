"""Read-only credential store backed by the configured user table.

Passwords are verified with bcrypt. Hashes produced by bcryptjs
(``$2a$``) and by Python's bcrypt (``$2b$``) are both accepted.
"""

from __future__ import annotations

import logging
from typing import Mapping

import bcrypt

from matrixgate.config.settings import UserConfig
from matrixgate.domain.models import Account, Permission, Role

logger = logging.getLogger(__name__)

# bcrypt only consumes the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password with a fresh salt."""
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_encode(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a bcrypt hash.

    A malformed hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError as e:
        logger.error("Unusable password hash: %s", e)
        return False


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


class CredentialStore:
    """Immutable username -> :class:`Account` lookup.

    Usage::

        store = CredentialStore.from_config(settings.users)
        account = store.get("alice")
        ok = store.verify(account, "secret")
    """

    def __init__(self, accounts: Mapping[str, Account]) -> None:
        self._accounts = dict(accounts)
        # Compared against when the username is unknown so a miss costs
        # the same as a wrong password. Built lazily with the cost factor
        # of the configured hashes.
        self._dummy_hash: str | None = None

    @classmethod
    def from_config(cls, users: Mapping[str, UserConfig]) -> CredentialStore:
        accounts = {
            name: Account(
                username=name,
                password_hash=user.password_hash,
                role=Role(user.role),
                permissions=frozenset(Permission(p) for p in user.permissions),
            )
            for name, user in users.items()
        }
        logger.info("Loaded %d account(s)", len(accounts))
        return cls(accounts)

    def __contains__(self, username: object) -> bool:
        return username in self._accounts

    def __len__(self) -> int:
        return len(self._accounts)

    def get(self, username: str) -> Account | None:
        return self._accounts.get(username)

    def verify(self, account: Account | None, password: str) -> bool:
        """Verify *password* for *account*; always runs one bcrypt check."""
        if account is None:
            verify_password(password, self._get_dummy_hash())
            return False
        return verify_password(password, account.password_hash)

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = hash_password("matrixgate-dummy", rounds=self._cost_factor())
        return self._dummy_hash

    def _cost_factor(self) -> int:
        """Cost of the first configured hash ($2b$<cost>$...), default 12."""
        for account in self._accounts.values():
            parts = account.password_hash.split("$")
            if len(parts) > 2 and parts[2].isdigit():
                return int(parts[2])
        return 12
