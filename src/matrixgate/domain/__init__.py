"""Domain models shared across matrixgate modules."""

from matrixgate.domain.models import Account, Permission, Role, RoutingSnapshot, Session

__all__ = ["Account", "Permission", "Role", "RoutingSnapshot", "Session"]
