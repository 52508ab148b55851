"""File push/pull against container filesystems.

Ownership and permissions travel in ``X-LXD-*`` headers next to the raw
file content, on both the request (push) and the response (pull).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING

import aiohttp

from .errors import LxdResponseError
from .protocol import parse_error

if TYPE_CHECKING:
    from .http import LxdHttpClient

MODE_HEADER = "X-LXD-mode"
UID_HEADER = "X-LXD-uid"
GID_HEADER = "X-LXD-gid"

DEFAULT_MODE = 0o644


def build_file_headers(uid: int, gid: int, mode: int) -> dict[str, str]:
    """Encode ownership as decimal strings and mode as a 4-digit octal string."""
    return {
        MODE_HEADER: f"{mode:04o}",
        UID_HEADER: str(uid),
        GID_HEADER: str(gid),
    }


def parse_file_headers(headers: Mapping[str, str]) -> tuple[int, int, int]:
    """Decode ``(uid, gid, mode)``; absent headers mean root and 0644.

    Raises:
        ValueError: A header is present but not a valid number.
    """
    uid = int(headers.get(UID_HEADER) or "0", 10)
    gid = int(headers.get(GID_HEADER) or "0", 10)
    raw_mode = headers.get(MODE_HEADER)
    mode = int(raw_mode, 8) if raw_mode else DEFAULT_MODE
    if uid < 0 or gid < 0 or not 0 <= mode <= 0o7777:
        raise ValueError(f"Invalid file ownership or mode: {uid}:{gid} {mode:o}")
    return uid, gid, mode


def _files_path(container: str) -> str:
    return f"containers/{container}/files"


@dataclass(slots=True)
class PulledFile:
    """File metadata plus the still-open response body.

    Use as an async context manager, or call ``release()`` once the body has
    been consumed.
    """

    uid: int
    gid: int
    mode: int
    response: aiohttp.ClientResponse

    @property
    def content(self) -> aiohttp.StreamReader:
        return self.response.content

    async def read(self) -> bytes:
        return await self.response.read()

    def release(self) -> None:
        self.response.release()

    async def __aenter__(self) -> PulledFile:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()


async def push_file(
    http: LxdHttpClient,
    container: str,
    path: str,
    source: bytes | IO[bytes],
    *,
    uid: int = 0,
    gid: int = 0,
    mode: int = DEFAULT_MODE,
) -> None:
    """Write ``source`` to ``path`` inside ``container``."""
    resp = await http.open(
        "PUT",
        _files_path(container),
        params={"path": path},
        data=source,
        headers=build_file_headers(uid, gid, mode),
    )
    envelope = await http.read_envelope(resp)
    error = parse_error(envelope)
    if error is not None:
        raise error


async def pull_file(http: LxdHttpClient, container: str, path: str) -> PulledFile:
    """Open ``path`` inside ``container`` for reading."""
    resp = await http.open("GET", _files_path(container), params={"path": path})
    if resp.status != 200:
        envelope = await http.read_envelope(resp)
        error = parse_error(envelope)
        if error is not None:
            raise error
        raise LxdResponseError(resp.status, f"Pulling {path} failed")

    try:
        uid, gid, mode = parse_file_headers(resp.headers)
    except ValueError as err:
        resp.release()
        raise LxdResponseError(resp.status, "Malformed file headers") from err
    return PulledFile(uid=uid, gid=gid, mode=mode, response=resp)
