"""Background operation lifecycle shared by daemon and client.

The daemon creates an ``Operation`` for every accepted request that needs
background work, drives it with ``execute()`` and ``request_cancel()``, and
long-polls it with ``wait()``. Clients only see the wire form produced by
``to_dict()`` and decoded again by ``from_dict()``.

Lifecycle:
    pending -> running -> done
    pending|running -> cancelling -> cancelled
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .errors import InvalidTransition, OperationFailed
from .protocol import API_VERSION

_LOGGER = logging.getLogger(__name__)


class OperationStatus(Enum):
    """Operation status with its compact wire code."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def code(self) -> int:
        return _STATUS_CODES[self]

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.DONE, OperationStatus.CANCELLED)


class OperationResult(Enum):
    """Outcome of a finished operation with its wire code."""

    FAILURE = "failure"
    SUCCESS = "success"

    @property
    def code(self) -> int:
        return _RESULT_CODES[self]


_STATUS_CODES = {
    OperationStatus.PENDING: 0,
    OperationStatus.RUNNING: 1,
    OperationStatus.DONE: 2,
    OperationStatus.CANCELLING: 3,
    OperationStatus.CANCELLED: 4,
}

_RESULT_CODES = {
    OperationResult.FAILURE: 0,
    OperationResult.SUCCESS: 1,
}

_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset(
        {OperationStatus.RUNNING, OperationStatus.CANCELLING}
    ),
    OperationStatus.RUNNING: frozenset(
        {OperationStatus.DONE, OperationStatus.CANCELLING}
    ),
    OperationStatus.CANCELLING: frozenset({OperationStatus.CANCELLED}),
    OperationStatus.DONE: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}

_NOT_CANCELLABLE = (
    OperationStatus.DONE,
    OperationStatus.CANCELLING,
    OperationStatus.CANCELLED,
)


def operation_url(operation_id: str) -> str:
    """Return the locator of an operation resource."""
    return f"/{API_VERSION}/operations/{operation_id}"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(eq=False)
class Operation:
    """One in-flight daemon action.

    ``run`` is invoked exactly once by ``execute()``. ``cancel`` is only
    present when the underlying action can be interrupted; it requests
    cancellation and the unit of work decides when to honor it.
    """

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    status: OperationStatus = OperationStatus.PENDING
    result: OperationResult | None = None
    resource_url: str = ""
    metadata: Any = None
    may_cancel: bool = False
    run: Callable[[], Awaitable[Any]] | None = field(default=None, repr=False)
    cancel: Callable[[], Awaitable[None] | None] | None = field(
        default=None, repr=False
    )

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _done: asyncio.Future[OperationStatus] | None = field(
        default=None, init=False, repr=False
    )
    _started: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(
        cls,
        run: Callable[[], Awaitable[Any]],
        *,
        resource_url: str = "",
        metadata: Any = None,
        cancel: Callable[[], Awaitable[None] | None] | None = None,
    ) -> Operation:
        """Create a pending operation for a unit of work."""
        return cls(
            resource_url=resource_url,
            metadata=metadata,
            may_cancel=cancel is not None,
            run=run,
            cancel=cancel,
        )

    @property
    def status_code(self) -> int:
        return self.status.code

    @property
    def result_code(self) -> int:
        return self.result.code if self.result is not None else 0

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _touch(self) -> None:
        now = _now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def set_status(self, status: OperationStatus) -> None:
        """Move to ``status``, releasing waiters on terminal states.

        Raises:
            InvalidTransition: The lifecycle does not allow the move.
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move operation from {self.status.value} to {status.value}"
            )
        self.status = status
        self._touch()
        if status in _NOT_CANCELLABLE:
            self.may_cancel = False
        if status.is_terminal and self._done is not None:
            self._done.set_result(status)

    def set_result(self, err: BaseException | None) -> None:
        """Record the outcome of the unit of work and finish the operation."""
        if self.result is not None:
            raise InvalidTransition("Operation result is already set")
        if OperationStatus.DONE not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot finish operation from {self.status.value}"
            )
        if err is None:
            self.result = OperationResult.SUCCESS
        else:
            self.result = OperationResult.FAILURE
            message = str(err)
            try:
                json.dumps(message)
            except (TypeError, ValueError) as encode_err:
                # Still report failure, just with a less useful message
                _LOGGER.debug("Error converting %r to JSON: %s", err, encode_err)
                message = repr(err)
            self.metadata = message
        self.set_status(OperationStatus.DONE)

    def get_error(self) -> OperationFailed | None:
        """Return the failure of a finished operation, or None."""
        if self.result is not OperationResult.FAILURE:
            return None
        if isinstance(self.metadata, str):
            return OperationFailed(self.metadata)
        return OperationFailed(f"Operation failed: {json.dumps(self.metadata)}")

    # -------------------------------------------------------------------------
    # Daemon-side execution
    # -------------------------------------------------------------------------

    async def execute(self) -> None:
        """Run the unit of work and record its outcome."""
        async with self._lock:
            if self._started:
                raise InvalidTransition("Operation was already started")
            self._started = True
            if self.status is not OperationStatus.PENDING:
                _LOGGER.debug("Operation %s before start, skipping run", self.status.value)
                return
            if self.run is None:
                raise InvalidTransition("Operation has nothing to run")
            self.set_status(OperationStatus.RUNNING)

        error: Exception | None = None
        try:
            await self.run()
        except Exception as err:
            _LOGGER.debug("Operation for %s failed: %s", self.resource_url, err)
            error = err

        async with self._lock:
            if self.status is not OperationStatus.RUNNING:
                _LOGGER.debug(
                    "Operation for %s finished after cancellation", self.resource_url
                )
                return
            self.set_result(error)

    async def request_cancel(self) -> bool:
        """Cancel the operation if it still allows it.

        Returns:
            True if the cancellation was honored, False if the operation had
            already completed or cannot be cancelled.
        """
        async with self._lock:
            if not self.may_cancel or self.cancel is None:
                return False
            self.set_status(OperationStatus.CANCELLING)
            try:
                outcome = self.cancel()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as err:
                _LOGGER.warning("Cancel hook for %s failed: %s", self.resource_url, err)
                self.metadata = str(err)
            self.set_status(OperationStatus.CANCELLED)
            return True

    async def wait(self, timeout: float | None = None) -> Operation:
        """Block until the operation is terminal or ``timeout`` elapses.

        Any number of waiters may share the completion signal; all of them
        wake when it is released.
        """
        if self.status.is_terminal:
            return self
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
        try:
            await asyncio.wait_for(asyncio.shield(self._done), timeout)
        except TimeoutError:
            pass
        return self

    # -------------------------------------------------------------------------
    # Wire form
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "status": self.status.value,
            "status_code": self.status_code,
            "result": self.result.value if self.result is not None else "",
            "result_code": self.result_code,
            "resource_url": self.resource_url,
            "metadata": self.metadata,
            "may_cancel": self.may_cancel,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Operation:
        result = data.get("result") or None
        return cls(
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            status=OperationStatus(data["status"]),
            result=OperationResult(result) if result is not None else None,
            resource_url=data.get("resource_url") or "",
            metadata=data.get("metadata"),
            may_cancel=bool(data.get("may_cancel", False)),
        )
