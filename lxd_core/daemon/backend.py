"""Container runtime interface used by the daemon.

The daemon only carries action names, parameters and results; the runtime
doing the work is supplied by the embedding application. Implementations
raise ``NotFoundError`` for unknown containers or paths and ``ValueError``
for invalid arguments; any other exception is reported as an internal error
or, inside a background operation, as the operation's failure.
"""

from __future__ import annotations

from typing import Any, Protocol

from ..protocol import ContainerAction


class ContainerBackend(Protocol):
    """Container operations the daemon dispatches to."""

    async def list_containers(self) -> list[str]: ...

    async def get_container(self, name: str) -> dict[str, Any]: ...

    async def create_container(self, name: str, source: dict[str, Any]) -> None: ...

    async def change_state(
        self, name: str, action: ContainerAction, timeout: int, force: bool
    ) -> None: ...

    async def delete_container(self, name: str) -> None: ...

    async def snapshot_container(self, name: str, snapshot: str, stateful: bool) -> None: ...

    async def push_file(
        self, name: str, path: str, uid: int, gid: int, mode: int, content: bytes
    ) -> None: ...

    async def pull_file(self, name: str, path: str) -> tuple[int, int, int, bytes]: ...
