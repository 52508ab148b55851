"""Wire protocol envelopes for LXD daemon responses.

Every request yields exactly one envelope. The ``type`` field selects the
kind, and the kind decides which other fields may be populated:

- sync: ``result`` plus an action-specific ``metadata`` body
- async: ``operation`` locator, ``metadata`` holds the operation descriptor
- error: ``error_code`` and ``error``

Metadata is kept as decoded JSON and only turned into typed values when a
caller asks for it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, assert_never

from .errors import LxdApiError, MalformedEnvelope, UnexpectedResponseType

if TYPE_CHECKING:
    from .operation import Operation

API_VERSION = "1.0"
API_COMPAT = 1

_ERROR_FIELDS = ("error", "error_code")


class ResponseType(Enum):
    """Envelope kinds."""

    SYNC = "sync"
    ASYNC = "async"
    ERROR = "error"


class ContainerAction(Enum):
    """State changes accepted by ``PUT /containers/{name}/state``."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"


class _MetadataMixin:
    metadata: Any

    def metadata_as_map(self) -> dict[str, Any]:
        """Decode metadata as a JSON object."""
        if not isinstance(self.metadata, dict):
            raise MalformedEnvelope("Response metadata is not an object")
        return self.metadata

    def metadata_as_list(self) -> list[Any]:
        """Decode metadata as a JSON array."""
        if not isinstance(self.metadata, list):
            raise MalformedEnvelope("Response metadata is not a list")
        return self.metadata

    def metadata_as_operation(self) -> Operation:
        """Decode metadata as an operation descriptor."""
        from .operation import Operation

        try:
            return Operation.from_dict(self.metadata_as_map())
        except (KeyError, TypeError, ValueError) as err:
            raise MalformedEnvelope("Response metadata is not an operation") from err


@dataclass(frozen=True, slots=True)
class SyncResponse(_MetadataMixin):
    """Immediate result."""

    result: str
    metadata: Any = None

    type = ResponseType.SYNC


@dataclass(frozen=True, slots=True)
class AsyncResponse(_MetadataMixin):
    """Background work accepted; ``operation`` locates it."""

    operation: str
    metadata: Any = None

    type = ResponseType.ASYNC


@dataclass(frozen=True, slots=True)
class ErrorResponse(_MetadataMixin):
    """Failure reported by the daemon."""

    error_code: int
    error: str
    metadata: Any = None

    type = ResponseType.ERROR

    def as_exception(self) -> LxdApiError:
        return LxdApiError(self.error_code, self.error)


Envelope = SyncResponse | AsyncResponse | ErrorResponse


def _present(data: dict[str, Any], key: str) -> bool:
    return data.get(key) not in (None, "", 0)


def parse_envelope(body: bytes | str | dict[str, Any]) -> Envelope:
    """Decode a response body into an envelope.

    Raises:
        MalformedEnvelope: Body is not JSON, not an object, has an unknown
            kind, or populates fields that belong to another kind.
    """
    if isinstance(body, dict):
        data = body
    else:
        try:
            data = json.loads(body)
        except (UnicodeDecodeError, ValueError) as err:
            raise MalformedEnvelope("Response body is not valid JSON") from err
    if not isinstance(data, dict):
        raise MalformedEnvelope("Response body is not a JSON object")

    try:
        kind = ResponseType(data.get("type"))
    except ValueError as err:
        raise MalformedEnvelope(f"Unknown response type: {data.get('type')!r}") from err

    metadata = data.get("metadata")

    if kind is ResponseType.SYNC:
        if _present(data, "operation") or any(_present(data, k) for k in _ERROR_FIELDS):
            raise MalformedEnvelope("Sync response carries async or error fields")
        result = data.get("result")
        if result not in ("success", "failure"):
            raise MalformedEnvelope(f"Sync response has invalid result: {result!r}")
        return SyncResponse(result=result, metadata=metadata)

    if kind is ResponseType.ASYNC:
        if _present(data, "result") or any(_present(data, k) for k in _ERROR_FIELDS):
            raise MalformedEnvelope("Async response carries sync or error fields")
        operation = data.get("operation")
        if not isinstance(operation, str) or not operation:
            raise MalformedEnvelope("Async response has no operation")
        return AsyncResponse(operation=operation, metadata=metadata)

    if _present(data, "operation") or _present(data, "result"):
        raise MalformedEnvelope("Error response carries sync or async fields")
    code = data.get("error_code")
    message = data.get("error")
    if isinstance(code, bool) or not isinstance(code, int) or not isinstance(message, str):
        raise MalformedEnvelope("Error response needs an integer code and a message")
    return ErrorResponse(error_code=code, error=message, metadata=metadata)


def parse_error(envelope: Envelope) -> LxdApiError | None:
    """Return the daemon error carried by an envelope, or None."""
    if isinstance(envelope, ErrorResponse):
        return envelope.as_exception()
    return None


def expect_sync(envelope: Envelope) -> SyncResponse:
    """Return a sync envelope, raising for error or async kinds."""
    if isinstance(envelope, SyncResponse):
        return envelope
    if isinstance(envelope, ErrorResponse):
        raise envelope.as_exception()
    if isinstance(envelope, AsyncResponse):
        raise UnexpectedResponseType(ResponseType.SYNC.value, envelope.type.value)
    assert_never(envelope)


def expect_async(envelope: Envelope) -> AsyncResponse:
    """Return an async envelope, raising for error or sync kinds."""
    if isinstance(envelope, AsyncResponse):
        return envelope
    if isinstance(envelope, ErrorResponse):
        raise envelope.as_exception()
    if isinstance(envelope, SyncResponse):
        raise UnexpectedResponseType(ResponseType.ASYNC.value, envelope.type.value)
    assert_never(envelope)


def build_sync_response(metadata: Any = None, *, success: bool = True) -> dict[str, Any]:
    """Build a sync envelope body."""
    return {
        "type": ResponseType.SYNC.value,
        "result": "success" if success else "failure",
        "metadata": metadata,
    }


def build_async_response(operation: str, metadata: Any = None) -> dict[str, Any]:
    """Build an async envelope body pointing at an operation."""
    return {
        "type": ResponseType.ASYNC.value,
        "operation": operation,
        "metadata": metadata,
    }


def build_error_response(code: int, message: str, metadata: Any = None) -> dict[str, Any]:
    """Build an error envelope body."""
    return {
        "type": ResponseType.ERROR.value,
        "error": message,
        "error_code": code,
        "metadata": metadata,
    }
