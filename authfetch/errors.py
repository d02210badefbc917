"""Failure kinds raised by the authenticated request layer.

Authentication failures share a single exception type, ``AuthError``, tagged
with an ``AuthErrorKind``. Callers branch on ``err.kind`` rather than on the
message text or on subclasses.

Transport-level failures of the progress variant are reported separately
through ``TransportError`` and ``RequestFailed``.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorKind(Enum):
    """Closed set of authentication failures, valued by their message."""

    TOKEN_REFRESH = "Token refresh failed"
    LOGIN = "Login failed"
    LOGOUT = "Logout failed"
    BASIC = "Requires Basic Authentication"

    @property
    def message(self) -> str:
        return self.value


class AuthError(Exception):
    """Authentication error.

    Attributes:
        kind: Which failure occurred
    """

    def __init__(self, kind: AuthErrorKind):
        self.kind = kind
        super().__init__(kind.message)

    def __repr__(self) -> str:
        return f"AuthError({self.kind.name})"


class TransportError(Exception):
    """No response was received for a request."""


class TransferAborted(TransportError):
    """The caller aborted an in-flight transfer."""

    def __init__(self, message: str = "Transfer aborted"):
        super().__init__(message)


class RequestFailed(Exception):
    """A transfer completed with a non-success HTTP status.

    Attributes:
        status_code: HTTP status of the final response
        reason: Reason phrase sent by the server
    """

    def __init__(self, status_code: int, reason: str = ""):
        self.status_code = status_code
        self.reason = reason or ""
        super().__init__(f"Request failed with status: {status_code} {self.reason}".rstrip())
