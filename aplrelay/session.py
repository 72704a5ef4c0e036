from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from .gate import peer_name
from .relay import PASSTHROUGH, Relay
from .util import dprint, log_event, log_exception, now
from .worker import OFF_DIRECTIVE, SpawnError, Worker


CONNECTING = "connecting"
ACTIVE = "active"
CLOSING = "closing"
TERMINATED = "terminated"

# Builds an unlaunched worker wired to the given callbacks; may raise SpawnError.
WorkerFactory = Callable[..., Worker]


@dataclass
class Connection:
    remote: str
    origin: str | None
    subprotocol: str | None
    state: str = CONNECTING
    closed: threading.Event = field(default_factory=threading.Event)
    opened_ts: float = field(default_factory=now)
    close_reason: str | None = None
    exit_code: int | None = None


class Session:
    """Lifecycle of one client connection and the worker process backing it.

    States move connecting -> active -> closing -> terminated. ``close`` is
    the only way into closing and may be called from any thread, any number
    of times; the first call tears down, later calls return at once.
    """

    def __init__(
        self,
        ws: Any,
        *,
        spawn: WorkerFactory,
        output_policy: str = PASSTHROUGH,
        grace_s: float = 1.0,
        directive: bytes | None = OFF_DIRECTIVE,
    ) -> None:
        self.ws = ws
        request = getattr(ws, "request", None)
        headers = request.headers if request is not None else {}
        self.conn = Connection(
            remote=peer_name(ws),
            origin=headers.get("Origin"),
            subprotocol=getattr(ws, "subprotocol", None),
        )
        self._spawn = spawn
        self.grace_s = float(grace_s)
        self.directive = directive
        self._lock = threading.Lock()
        self._terminated = threading.Event()
        self.relay = Relay(send=ws.send, closed=self.conn.closed, policy=output_policy)
        self.worker: Worker | None = None

    @property
    def state(self) -> str:
        return self.conn.state

    def _on_output(self, stream: str, data: bytes) -> None:
        self.relay.from_worker(stream, data)

    def _on_exit(self, code: int) -> None:
        self.conn.exit_code = code
        self.close(f"worker exited with code {code}")

    def _on_stream_end(self, stream: str, why: str) -> None:
        self.close(f"worker {stream} {why}")

    def _start_worker(self) -> bool:
        try:
            with self._lock:
                # Closed before the worker existed: nothing to launch.
                if self.conn.state != CONNECTING:
                    return False
                worker = self._spawn(
                    on_output=self._on_output,
                    on_exit=self._on_exit,
                    on_stream_end=self._on_stream_end,
                )
                self.worker = worker
                worker.launch()
                self.conn.state = ACTIVE
        except SpawnError as e:
            log_event(f"error: cannot start worker for {self.conn.remote}: {e}")
            with self._lock:
                self.conn.closed.set()
                self.conn.state = TERMINATED
                self.conn.close_reason = "spawn error"
            self.ws.close(1011, "worker unavailable")
            self._terminated.set()
            return False
        log_event(f"Peer {self.conn.remote} connected, worker pid {worker.pid}")
        return True

    def run(self) -> None:
        """Relay frames until either side goes away, then wait for teardown to finish."""
        worker = self.worker if self._start_worker() else None
        if worker is None:
            return
        reason = "peer closed"
        try:
            for message in self.ws:
                if self.relay.to_worker(message, worker) or not isinstance(message, str):
                    continue
                # A text frame that could not be written: stdin broke under a live worker.
                if worker.running and not self.conn.closed.is_set():
                    reason = "worker stdin error"
                    log_event(f"Error on connection {self.conn.remote}: worker stdin is not writable")
                    break
        except ConnectionClosedOK:
            pass
        except ConnectionClosedError as e:
            reason = f"protocol error: {e}"
            log_event(f"Error on connection {self.conn.remote}: {e}")
        except Exception as e:
            reason = f"relay error: {type(e).__name__}"
            log_exception(f"relay for {self.conn.remote}", e)
        self.close(reason)
        self._terminated.wait()

    def close(self, reason: str = "closed") -> None:
        with self._lock:
            if self.conn.state in (CLOSING, TERMINATED):
                return
            # Set before anything else so in-flight output stops reaching the socket.
            self.conn.closed.set()
            self.conn.state = CLOSING
            self.conn.close_reason = reason
        dprint(f"session: {self.conn.remote} closing: {reason}")
        try:
            if self.worker is not None:
                code = self.worker.terminate(directive=self.directive, grace_s=self.grace_s)
                if code is not None:
                    self.conn.exit_code = code
            self.ws.close()
        finally:
            with self._lock:
                self.conn.state = TERMINATED
            self._terminated.set()
        elapsed = now() - self.conn.opened_ts
        log_event(
            f"Peer {self.conn.remote} disconnected ({reason}); "
            f"worker exit={self.conn.exit_code} in={self.relay.bytes_in}B out={self.relay.bytes_out}B "
            f"dropped={self.relay.dropped_frames} after {elapsed:.1f}s"
        )

    def wait(self, timeout: float | None = None) -> bool:
        return self._terminated.wait(timeout)


class SessionManager:
    def __init__(
        self,
        *,
        spawn: WorkerFactory,
        output_policy: str = PASSTHROUGH,
        grace_s: float = 1.0,
    ) -> None:
        self._spawn = spawn
        self.output_policy = output_policy
        self.grace_s = grace_s
        self._lock = threading.Lock()
        self._sessions: set[Session] = set()
        self._stopping = False

    def handle(self, ws: Any) -> None:
        """websockets handler: one call per accepted connection, on its own thread."""
        session = Session(ws, spawn=self._spawn, output_policy=self.output_policy, grace_s=self.grace_s)
        with self._lock:
            if self._stopping:
                ws.close(1001, "server shutting down")
                return
            self._sessions.add(session)
        try:
            session.run()
        finally:
            with self._lock:
                self._sessions.discard(session)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stop(self) -> None:
        with self._lock:
            self._stopping = True
            sessions = list(self._sessions)
        threads = [threading.Thread(target=s.close, args=("server shutdown",), daemon=True) for s in sessions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
