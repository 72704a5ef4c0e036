from __future__ import annotations

import http
from typing import Any, Iterable

from .util import log_event


SUBPROTOCOL = "apl-protocol"


class OriginRejected(Exception):
    def __init__(self, origin: str | None, reason: str) -> None:
        super().__init__(reason)
        self.origin = origin
        self.reason = reason


def _normalize_origin(origin: str) -> str:
    return origin.strip().rstrip("/")


def _header_tokens(headers: Any, name: str) -> list[str]:
    out: list[str] = []
    for value in headers.get_all(name):
        out += [t.strip() for t in value.split(",") if t.strip()]
    return out


def is_upgrade(headers: Any) -> bool:
    upgrade = [t.lower() for t in _header_tokens(headers, "Upgrade")]
    connection = [t.lower() for t in _header_tokens(headers, "Connection")]
    return "websocket" in upgrade and "upgrade" in connection


def check_upgrade(headers: Any, *, allowed_origins: Iterable[str], subprotocol: str = SUBPROTOCOL) -> str:
    """Return the request origin when it may open a session, else raise OriginRejected."""
    origins = headers.get_all("Origin")
    if len(origins) > 1:
        raise OriginRejected(", ".join(origins), "multiple origins")
    origin = origins[0] if origins else None
    if not origin:
        raise OriginRejected(None, "missing origin")
    allowed = {_normalize_origin(o) for o in allowed_origins}
    if _normalize_origin(origin) not in allowed:
        raise OriginRejected(origin, "origin not allowed")
    if subprotocol not in _header_tokens(headers, "Sec-WebSocket-Protocol"):
        raise OriginRejected(origin, f"sub-protocol {subprotocol} not requested")
    return origin


def peer_name(connection: Any) -> str:
    addr = getattr(connection, "remote_address", None)
    if isinstance(addr, tuple) and len(addr) >= 2:
        return f"{addr[0]}:{addr[1]}"
    return str(addr) if addr else "unknown"


class Gatekeeper:
    """``process_request`` hook for the websockets server.

    Plain HTTP requests get an empty 404, refused upgrades a 403; both stop
    before any session exists. Every decision is logged exactly once.
    """

    def __init__(self, allowed_origins: Iterable[str], *, subprotocol: str = SUBPROTOCOL) -> None:
        self.allowed_origins = [o for o in allowed_origins if o]
        self.subprotocol = subprotocol
        self.accepted = 0
        self.rejected = 0

    def process_request(self, connection: Any, request: Any) -> Any:
        headers = request.headers
        if not is_upgrade(headers):
            log_event(f"Received request for {request.path} from {peer_name(connection)}")
            return connection.respond(http.HTTPStatus.NOT_FOUND, "")
        try:
            origin = check_upgrade(headers, allowed_origins=self.allowed_origins, subprotocol=self.subprotocol)
        except OriginRejected as e:
            self.rejected += 1
            log_event(f"Connection from {e.origin or '(no origin)'} ({peer_name(connection)}) rejected: {e.reason}")
            return connection.respond(http.HTTPStatus.FORBIDDEN, "")
        self.accepted += 1
        log_event(f"Connection from {origin} ({peer_name(connection)}) accepted")
        return None
