"""Error taxonomy for matrixgate.

Every failure the gateway can report is a subclass of
:class:`MatrixGateError`. Each class carries the HTTP status code the
server answers with, so the route handlers translate errors without a
lookup table:

    MatrixGateError (500)
    ├── AuthError
    │   ├── IpNotAllowedError       403
    │   ├── InvalidFormatError      400
    │   ├── InvalidCredentialsError 401
    │   ├── LockedError             429
    │   ├── NotAuthenticatedError   401
    │   └── ForbiddenError          403
    ├── InvalidParameterError       400
    └── LinkError                   500
        ├── InvalidCommandError
        ├── NotConnectedError
        ├── RetriesExhaustedError
        └── EmptyResponseError

Local validation and authorization errors never reach the wire and are
never retried. Link errors are raised only after the link manager has
exhausted its own retry policy.
"""

from __future__ import annotations


class MatrixGateError(Exception):
    """Base class for all matrixgate errors."""

    status_code: int = 500


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


class AuthError(MatrixGateError):
    """Raised by the access-control layer."""

    status_code = 401


class IpNotAllowedError(AuthError):
    status_code = 403


class InvalidFormatError(AuthError):
    status_code = 400


class InvalidCredentialsError(AuthError):
    """Unknown user or wrong password; the caller cannot tell them apart."""

    status_code = 401


class LockedError(AuthError):
    status_code = 429


class NotAuthenticatedError(AuthError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


class InvalidParameterError(MatrixGateError):
    status_code = 400


# ---------------------------------------------------------------------------
# Device link
# ---------------------------------------------------------------------------


class LinkError(MatrixGateError):
    """Raised when a command cannot be completed on the device link."""

    def __init__(self, message: str, command: str = "") -> None:
        super().__init__(message)
        self.command = command


class InvalidCommandError(LinkError):
    pass


class NotConnectedError(LinkError):
    pass


class RetriesExhaustedError(LinkError):
    def __init__(self, message: str, command: str = "", attempts: int = 0) -> None:
        super().__init__(message, command=command)
        self.attempts = attempts


class EmptyResponseError(LinkError):
    pass
