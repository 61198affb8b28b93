"""Access control for matrixgate.

Public API:
    AccessControl -- Authentication, sessions and permission checks
    AttemptTracker -- Per (address, username) failure counting and lockout
    CredentialStore -- Read-only bcrypt account table
    SessionStore -- Opaque token -> Session mapping
    RequestRateLimiter -- Per-client request counting
"""

from matrixgate.auth.access import AccessControl
from matrixgate.auth.attempts import AttemptTracker
from matrixgate.auth.credentials import CredentialStore, hash_password, verify_password
from matrixgate.auth.ratelimit import RequestRateLimiter
from matrixgate.auth.sessions import SessionStore

__all__ = [
    "AccessControl",
    "AttemptTracker",
    "CredentialStore",
    "RequestRateLimiter",
    "SessionStore",
    "hash_password",
    "verify_password",
]
