from __future__ import annotations

import codecs
import threading
from typing import Callable, Protocol

from websockets.exceptions import ConnectionClosed

from .util import dprint
from .worker import STREAMS


PASSTHROUGH = "passthrough"
LINE = "line"
OUTPUT_POLICIES = (PASSTHROUGH, LINE)


class StdinSink(Protocol):
    def write_stdin(self, data: bytes, *, timeout: float | None = None) -> bool: ...


class OutputBuffer:
    """Pending partial-line text of one output stream."""

    def __init__(self) -> None:
        self.pending = ""

    def feed(self, text: str) -> str:
        """Return every complete line seen so far; keep the unterminated tail."""
        self.pending += text
        cut = self.pending.rfind("\n")
        if cut < 0:
            return ""
        out = self.pending[: cut + 1]
        self.pending = self.pending[cut + 1 :]
        return out

    def drain(self) -> str:
        out = self.pending
        self.pending = ""
        return out


class Relay:
    """Pumps one connection's frames to a worker's stdin and its output back as text frames.

    ``send`` is the connection's text-frame sender and ``closed`` the
    connection's closed flag; it is checked right before every send, so output
    that arrives after the connection was closed is dropped instead of written.
    Sends are serialized, so frames from stdout and stderr never interleave
    inside a frame, but their relative order follows arrival only.
    """

    def __init__(
        self,
        *,
        send: Callable[[str], None],
        closed: threading.Event,
        policy: str = PASSTHROUGH,
    ) -> None:
        if policy not in OUTPUT_POLICIES:
            raise ValueError(f"unknown output policy: {policy!r}")
        self._send = send
        self._closed = closed
        self.policy = policy
        self._send_lock = threading.Lock()
        self._decoders = {name: codecs.getincrementaldecoder("utf-8")(errors="replace") for name in STREAMS}
        self._buffers = {name: OutputBuffer() for name in STREAMS}
        self.bytes_in = 0
        self.bytes_out = 0
        self.frames_out = 0
        self.dropped_frames = 0

    def to_worker(self, message: str | bytes, worker: StdinSink) -> bool:
        if isinstance(message, bytes):
            # Only text frames carry input; anything else is ignored rather than fatal.
            dprint(f"relay: ignored binary frame ({len(message)} bytes)")
            return False
        if self._closed.is_set():
            dprint("relay: dropped inbound frame after close")
            return False
        data = message.encode("utf-8")
        if not worker.write_stdin(data):
            return False
        self.bytes_in += len(data)
        return True

    def from_worker(self, stream: str, data: bytes) -> None:
        """Handle one output chunk of ``stream``; ``b""`` means the stream ended."""
        dec = self._decoders[stream]
        buf = self._buffers[stream]
        if data:
            text = dec.decode(data)
            if self.policy == LINE:
                text = buf.feed(text)
        else:
            text = dec.decode(b"", final=True)
            if self.policy == LINE:
                text = buf.feed(text) + buf.drain()
        if text:
            self._emit(text)

    def _emit(self, text: str) -> None:
        with self._send_lock:
            if self._closed.is_set():
                self.dropped_frames += 1
                dprint(f"relay: dropped {len(text)} chars of output after close")
                return
            try:
                self._send(text)
            except ConnectionClosed as e:
                self.dropped_frames += 1
                dprint(f"relay: send failed, peer gone: {e}")
                return
            self.frames_out += 1
            self.bytes_out += len(text.encode("utf-8"))
