"""Client/daemon protocol core for LXD container management."""

__version__ = "0.1.0"

from .client import LxdClient
from .config import ClientConfig, DaemonConfig, RemoteConfig, parse_target
from .errors import (
    InvalidTransition,
    LxdApiError,
    LxdClientError,
    LxdConnectionError,
    LxdError,
    LxdResponseError,
    LxdTimeout,
    LxdTrustError,
    MalformedEnvelope,
    NotFoundError,
    OperationFailed,
    PasswordRejected,
    ServerCertificateChanged,
    TrustRejected,
    UnexpectedResponseType,
)
from .files import PulledFile
from .http import LxdHttpClient
from .operation import Operation, OperationResult, OperationStatus, operation_url
from .protocol import (
    API_COMPAT,
    API_VERSION,
    AsyncResponse,
    ContainerAction,
    Envelope,
    ErrorResponse,
    SyncResponse,
    parse_envelope,
    parse_error,
)

__all__ = [
    "API_COMPAT",
    "API_VERSION",
    "AsyncResponse",
    "ClientConfig",
    "ContainerAction",
    "DaemonConfig",
    "Envelope",
    "ErrorResponse",
    "InvalidTransition",
    "LxdApiError",
    "LxdClient",
    "LxdClientError",
    "LxdConnectionError",
    "LxdError",
    "LxdHttpClient",
    "LxdResponseError",
    "LxdTimeout",
    "LxdTrustError",
    "MalformedEnvelope",
    "NotFoundError",
    "Operation",
    "OperationFailed",
    "OperationResult",
    "OperationStatus",
    "PasswordRejected",
    "PulledFile",
    "RemoteConfig",
    "ServerCertificateChanged",
    "SyncResponse",
    "TrustRejected",
    "UnexpectedResponseType",
    "__version__",
    "operation_url",
    "parse_envelope",
    "parse_error",
    "parse_target",
]
