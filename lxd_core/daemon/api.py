"""REST handlers for the daemon.

All routes live under ``/1.0``. Requests arriving on the unix socket are
trusted; TLS requests are trusted when they present a pinned client
certificate. Untrusted callers may only finger the daemon and ask to be
trusted.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import socket
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

from aiohttp import web

from ..certs import decode_b64_certificate, encode_b64_certificate, fingerprint
from ..errors import InvalidTransition, NotFoundError
from ..files import build_file_headers, parse_file_headers
from ..operation import operation_url
from ..protocol import (
    API_COMPAT,
    API_VERSION,
    ContainerAction,
    build_async_response,
    build_error_response,
    build_sync_response,
)
from ..trust import validate_host
from .context import DaemonContext

_LOGGER = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey("lxd_context", DaemonContext)
TRUSTED_KEY = web.RequestKey("lxd_trusted", bool)
PEER_CERTIFICATE_KEY = web.RequestKey("lxd_peer_certificate", bytes | None)

PREFIX = f"/{API_VERSION}"

_CONTAINER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,62}$")

# Route names reachable without a trusted certificate
_UNTRUSTED_ROUTES = frozenset({"finger", "trust-add"})

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

routes = web.RouteTableDef()


def sync_response(metadata: Any = None) -> web.Response:
    return web.json_response(build_sync_response(metadata))


def error_response(code: int, message: str) -> web.Response:
    return web.json_response(build_error_response(code, message), status=code)


def _context(request: web.Request) -> DaemonContext:
    return request.app[CONTEXT_KEY]


def async_response(
    request: web.Request,
    run: Callable[[], Awaitable[Any]],
    *,
    resource_url: str,
    cancellable: bool = False,
) -> web.Response:
    """Start background work and answer with its operation locator."""
    operation_id, operation = _context(request).operations.launch(
        run, resource_url=resource_url, cancellable=cancellable
    )
    body = build_async_response(operation_url(operation_id), operation.to_dict())
    return web.json_response(body, status=202)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    body = await request.json()
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _container_name(request: web.Request) -> str:
    name = request.match_info["name"]
    if not _CONTAINER_NAME_RE.match(name):
        raise ValueError(f"Invalid container name: {name!r}")
    return name


def _container_url(name: str) -> str:
    return f"{PREFIX}/containers/{name}"


def _peer_certificate(request: web.Request) -> bytes | None:
    transport = request.transport
    if transport is None:
        return None
    sslobj = transport.get_extra_info("ssl_object")
    if sslobj is None:
        return None
    return sslobj.getpeercert(binary_form=True)


def _is_local(request: web.Request) -> bool:
    transport = request.transport
    if transport is None or transport.get_extra_info("ssl_object") is not None:
        return False
    sock = transport.get_extra_info("socket")
    return sock is not None and sock.family == socket.AF_UNIX


# -----------------------------------------------------------------------------
# Middlewares
# -----------------------------------------------------------------------------


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn failures into error envelopes."""
    try:
        return await handler(request)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        return error_response(exc.status, exc.reason)
    except NotFoundError as err:
        return error_response(404, str(err))
    except InvalidTransition as err:
        return error_response(409, str(err))
    except (KeyError, TypeError, ValueError) as err:
        return error_response(400, f"Bad request: {err}")
    except Exception as err:
        _LOGGER.exception("Error handling %s %s", request.method, request.path)
        return error_response(500, f"Internal error: {err}")


@web.middleware
async def trust_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Attribute the request to a trusted principal or refuse it."""
    ctx = _context(request)
    peer = _peer_certificate(request)
    trusted = _is_local(request) or (peer is not None and ctx.client_certs.is_trusted(peer))
    request[TRUSTED_KEY] = trusted
    request[PEER_CERTIFICATE_KEY] = peer
    if not trusted and request.match_info.route.name not in _UNTRUSTED_ROUTES:
        _LOGGER.debug("Refusing untrusted %s %s", request.method, request.path)
        return error_response(403, "not authorized")
    return await handler(request)


# -----------------------------------------------------------------------------
# Handshake and configuration
# -----------------------------------------------------------------------------


@routes.get(f"{PREFIX}/finger", name="finger")
async def finger(request: web.Request) -> web.Response:
    auth = "trusted" if request[TRUSTED_KEY] else "untrusted"
    return sync_response({"auth": auth, "api_compat": API_COMPAT})


@routes.put(PREFIX)
async def update_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    ctx = _context(request)
    loop = asyncio.get_running_loop()
    for entry in body.get("config", []):
        key = entry["key"]
        if key != "trust-password":
            raise ValueError(f"Unknown config key: {key!r}")
        await loop.run_in_executor(None, ctx.password.set_password, str(entry["value"]))
    return sync_response()


# -----------------------------------------------------------------------------
# Containers
# -----------------------------------------------------------------------------


@routes.get(f"{PREFIX}/list")
async def list_containers(request: web.Request) -> web.Response:
    return sync_response(await _context(request).backend.list_containers())


@routes.post(f"{PREFIX}/containers")
async def create_container(request: web.Request) -> web.Response:
    body = await _json_body(request)
    name = body.get("name") or f"lxd-{uuid4().hex[:8]}"
    if not _CONTAINER_NAME_RE.match(name):
        raise ValueError(f"Invalid container name: {name!r}")
    source = body.get("source") or {}
    if not isinstance(source, dict):
        raise ValueError("Container source must be an object")
    backend = _context(request).backend

    async def run() -> None:
        await backend.create_container(name, source)

    return async_response(
        request, run, resource_url=_container_url(name), cancellable=True
    )


@routes.get(f"{PREFIX}/containers/{{name}}")
async def get_container(request: web.Request) -> web.Response:
    name = _container_name(request)
    return sync_response(await _context(request).backend.get_container(name))


@routes.delete(f"{PREFIX}/containers/{{name}}")
async def delete_container(request: web.Request) -> web.Response:
    name = _container_name(request)
    backend = _context(request).backend

    async def run() -> None:
        await backend.delete_container(name)

    return async_response(request, run, resource_url=_container_url(name))


@routes.put(f"{PREFIX}/containers/{{name}}/state")
async def change_state(request: web.Request) -> web.Response:
    name = _container_name(request)
    body = await _json_body(request)
    action = ContainerAction(body["action"])
    timeout = int(body.get("timeout", -1))
    force = bool(body.get("force", False))
    backend = _context(request).backend

    async def run() -> None:
        await backend.change_state(name, action, timeout, force)

    return async_response(
        request, run, resource_url=_container_url(name), cancellable=True
    )


@routes.post(f"{PREFIX}/containers/{{name}}/snapshots")
async def create_snapshot(request: web.Request) -> web.Response:
    name = _container_name(request)
    body = await _json_body(request)
    snapshot = body["name"]
    if not isinstance(snapshot, str) or not _CONTAINER_NAME_RE.match(snapshot):
        raise ValueError(f"Invalid snapshot name: {snapshot!r}")
    stateful = bool(body.get("stateful", False))
    backend = _context(request).backend

    async def run() -> None:
        await backend.snapshot_container(name, snapshot, stateful)

    resource_url = f"{_container_url(name)}/snapshots/{snapshot}"
    return async_response(request, run, resource_url=resource_url)


@routes.put(f"{PREFIX}/containers/{{name}}/files")
async def push_file(request: web.Request) -> web.Response:
    name = _container_name(request)
    path = request.query["path"]
    uid, gid, mode = parse_file_headers(request.headers)
    content = await request.read()
    await _context(request).backend.push_file(name, path, uid, gid, mode, content)
    return sync_response()


@routes.get(f"{PREFIX}/containers/{{name}}/files")
async def pull_file(request: web.Request) -> web.Response:
    name = _container_name(request)
    path = request.query["path"]
    uid, gid, mode, content = await _context(request).backend.pull_file(name, path)
    return web.Response(
        body=content,
        headers=build_file_headers(uid, gid, mode),
        content_type="application/octet-stream",
    )


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------


@routes.get(f"{PREFIX}/operations")
async def list_operations(request: web.Request) -> web.Response:
    ids = _context(request).operations.ids()
    return sync_response([operation_url(operation_id) for operation_id in ids])


@routes.get(f"{PREFIX}/operations/{{id}}")
async def get_operation(request: web.Request) -> web.Response:
    operation = _context(request).operations.get(request.match_info["id"])
    return sync_response(operation.to_dict())


@routes.delete(f"{PREFIX}/operations/{{id}}")
async def cancel_operation(request: web.Request) -> web.Response:
    operation = _context(request).operations.get(request.match_info["id"])
    if not await operation.request_cancel():
        if operation.status.is_terminal:
            return error_response(409, "operation already completed")
        return error_response(409, "operation cannot be cancelled")
    return sync_response()


@routes.post(f"{PREFIX}/operations/{{id}}/wait")
async def wait_operation(request: web.Request) -> web.Response:
    ctx = _context(request)
    operation = ctx.operations.get(request.match_info["id"])
    limit = ctx.config.wait_timeout
    timeout = float(request.query.get("timeout", limit))
    if math.isnan(timeout):
        raise ValueError("Wait timeout is not a number")
    if timeout < 0 or timeout > limit:
        timeout = limit
    await operation.wait(timeout)
    return sync_response(operation.to_dict())


# -----------------------------------------------------------------------------
# Trust
# -----------------------------------------------------------------------------


@routes.get(f"{PREFIX}/trust")
async def list_trust(request: web.Request) -> web.Response:
    entries = _context(request).client_certs.entries()
    return sync_response(
        [{"host": entry.host, "fingerprint": entry.fingerprint} for entry in entries]
    )


@routes.post(f"{PREFIX}/trust", name="trust-add")
async def add_trust(request: web.Request) -> web.Response:
    ctx = _context(request)
    body = await _json_body(request)
    if body.get("type", "client") != "client":
        raise ValueError(f"Unknown certificate type: {body['type']!r}")

    if not request[TRUSTED_KEY]:
        password = body.get("password")
        if not isinstance(password, str) or not password:
            return error_response(403, "trust password required")
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, ctx.password.verify, password):
            _LOGGER.info("Rejected trust request with a bad password")
            return error_response(403, "bad trust password")

    if body.get("certificate"):
        der = decode_b64_certificate(body["certificate"])
    elif request[PEER_CERTIFICATE_KEY] is not None:
        der = request[PEER_CERTIFICATE_KEY]
    else:
        raise ValueError("No client certificate supplied")

    host = validate_host(body.get("name") or fingerprint(der)[:12])
    await ctx.trust_client(host, der)
    return sync_response()


@routes.get(f"{PREFIX}/trust/{{fingerprint}}")
async def get_trust(request: web.Request) -> web.Response:
    wanted = request.match_info["fingerprint"]
    entry = _context(request).client_certs.find(wanted)
    if entry is None:
        raise NotFoundError(f"No trusted certificate with fingerprint {wanted}")
    return sync_response(
        {"type": "client", "certificate": encode_b64_certificate(entry.der)}
    )


def create_app(context: DaemonContext) -> web.Application:
    """Build the web application serving ``context``."""
    app = web.Application(middlewares=[error_middleware, trust_middleware])
    app[CONTEXT_KEY] = context
    app.add_routes(routes)
    return app
