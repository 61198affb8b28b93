"""Core domain models for the matrixgate system.

These models represent the records flowing between the access-control
layer and the matrix link: provisioned accounts, issued sessions, and
routing snapshots read back from the device.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    ADMIN = "admin"
    OPERATOR = "operator"


class Permission(str, enum.Enum):
    """Capabilities an account may be granted."""

    SWITCH = "switch"  # Change routes, open the device link
    QUERY = "query"  # Read the routing table
    CONFIG = "config"


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """A provisioned user, loaded from configuration.

    Accounts are immutable for the lifetime of the process.
    """

    model_config = ConfigDict(frozen=True)

    username: str = Field(description="Unique account name")
    password_hash: str = Field(repr=False, description="bcrypt hash of the password")
    role: Role = Field(default=Role.OPERATOR)
    permissions: frozenset[Permission] = Field(default_factory=frozenset)


class Session(BaseModel):
    """An authenticated caller, identified by an opaque token."""

    model_config = ConfigDict(frozen=True)

    token: str = Field(repr=False, description="Opaque, unguessable session token")
    username: str
    role: Role
    permissions: frozenset[Permission] = Field(
        description="Permissions copied from the account at login"
    )
    issued_at: datetime = Field(default_factory=datetime.now)

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions


# ---------------------------------------------------------------------------
# Matrix routing
# ---------------------------------------------------------------------------


class RoutingSnapshot(BaseModel):
    """The full output -> input routing table at one point in time.

    Input 0 means the output is switched off.
    """

    model_config = ConfigDict(frozen=True)

    routes: dict[int, int] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=datetime.now)

    def input_for(self, output: int) -> int | None:
        return self.routes.get(output)
