"""Error types for LXD client and daemon interactions."""

from __future__ import annotations


class LxdError(Exception):
    """Base error for the LXD protocol core."""


class LxdClientError(LxdError):
    """Base error for LXD client failures."""


class LxdTimeout(LxdClientError):
    """Timeout while communicating with the daemon."""


class LxdConnectionError(LxdClientError):
    """Network connection to the daemon failed."""


class LxdResponseError(LxdClientError):
    """HTTP response error from the daemon."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class MalformedEnvelope(LxdClientError):
    """Response body is not a well-formed envelope."""


class UnexpectedResponseType(LxdClientError):
    """Envelope kind does not match what the action returns."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Expected {expected} response, got {actual}")
        self.expected = expected
        self.actual = actual


class LxdApiError(LxdClientError):
    """Error envelope returned by the daemon."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class OperationFailed(LxdClientError):
    """Background operation finished with a failure result."""


class InvalidTransition(LxdError):
    """Operation state change not allowed by the lifecycle."""


class NotFoundError(LxdError):
    """Requested resource does not exist."""


class LxdTrustError(LxdError):
    """Base error for certificate and password trust failures."""


class TrustRejected(LxdTrustError):
    """Operator declined the certificate presented on first contact."""


class ServerCertificateChanged(LxdTrustError):
    """Daemon presented a certificate other than the pinned one."""


class PasswordRejected(LxdTrustError):
    """Daemon refused the trust password."""
