from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import Callable

from .util import dprint


# Session-termination command understood by the interpreter.
OFF_DIRECTIVE = b")OFF\n"

READ_CHUNK = 4096
# How long a stream that ended may wait for the process exit before it counts as a stream failure.
STREAM_END_GRACE_S = 0.5
STREAMS = ("stdout", "stderr")

OutputCallback = Callable[[str, bytes], None]
ExitCallback = Callable[[int], None]
StreamEndCallback = Callable[[str, str], None]


class SpawnError(Exception):
    pass


@dataclass
class WorkerArgs:
    binary: str = "/usr/local/bin/apl"
    sandbox_root: str | None = "/home/www-data/apl-chroot"
    uid: int | None = 33
    cpu_limit_secs: int = 5
    print_precision: int = 2
    print_width: int = 300
    safe: bool = True

    def argv(self) -> list[str]:
        out = [self.binary]
        if self.sandbox_root:
            out += ["-C", str(self.sandbox_root)]
        if self.uid is not None:
            out += ["-u", str(int(self.uid))]
        if self.safe:
            out.append("--safe")
        out += [
            "--noSV",
            "--noCONT",
            "--noCIN",
            "--OFF",
            "--rawCIN",
            "--CPU_limit_secs",
            str(int(self.cpu_limit_secs)),
            "-p",
            str(int(self.print_precision)),
            "-w",
            str(int(self.print_width)),
        ]
        return out

    def preflight(self) -> None:
        """Fail early on launch problems that would otherwise only show up as worker stderr."""
        exe = which(self.binary)
        if exe is None:
            raise SpawnError(f"worker binary not found or not executable: {self.binary}")
        if self.sandbox_root:
            if not Path(self.sandbox_root).is_dir():
                raise SpawnError(f"sandbox root is not a directory: {self.sandbox_root}")
            if os.geteuid() != 0:
                raise SpawnError(f"chroot to {self.sandbox_root} requires root privilege")
        if self.uid is not None and int(self.uid) != os.geteuid() and os.geteuid() != 0:
            raise SpawnError(f"cannot drop to uid {self.uid} without root privilege")


class Worker:
    """One spawned interpreter process with piped standard streams.

    Output chunks are reported through ``on_output(stream, data)`` from one
    reader thread per stream; an empty ``data`` marks end of that stream.
    ``on_exit(returncode)`` fires once, from the watcher thread, after the
    process was reaped and the readers drained. ``on_stream_end(stream, why)``
    fires when an output stream fails or closes while the process lives on.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
        on_stream_end: StreamEndCallback | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.cwd = cwd
        self.env = env
        self._on_output = on_output
        self._on_exit = on_exit
        self._on_stream_end = on_stream_end
        self.proc: subprocess.Popen[bytes] | None = None
        self._stdin_lock = threading.Lock()
        self._stdin_closed = False
        self._readers: list[threading.Thread] = []
        self._reaped = threading.Event()
        self.returncode: int | None = None

    @property
    def pid(self) -> int | None:
        return self.proc.pid if self.proc else None

    @property
    def running(self) -> bool:
        return self.proc is not None and not self._reaped.is_set() and self.proc.poll() is None

    def launch(self) -> None:
        if self.proc is not None:
            raise RuntimeError("worker already launched")
        try:
            self.proc = subprocess.Popen(
                self.argv,
                cwd=self.cwd,
                env=self.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"cannot start {self.argv[0]}: {e}") from e

        dprint(f"worker: pid={self.proc.pid} argv={self.argv!r}")
        for name in STREAMS:
            t = threading.Thread(target=self._reader, args=(name,), daemon=True)
            self._readers.append(t)
            t.start()
        threading.Thread(target=self._watch_exit, daemon=True).start()

    def _reader(self, name: str) -> None:
        proc = self.proc
        if proc is None:
            return
        f = proc.stdout if name == "stdout" else proc.stderr
        if f is None:
            return
        fd = f.fileno()
        why = "closed"
        try:
            while True:
                try:
                    b = os.read(fd, READ_CHUNK)
                except OSError as e:
                    dprint(f"worker: {name} read failed: {e}")
                    why = f"read error: {e}"
                    break
                if not b:
                    break
                self._on_output(name, b)
        finally:
            try:
                f.close()
            except OSError:
                pass
            self._on_output(name, b"")
        # EOF is normal right before exit; only a stream that dies under a live process is a failure.
        if self._on_stream_end is not None and not self._reaped.wait(STREAM_END_GRACE_S):
            dprint(f"worker: pid={proc.pid} {name} {why} while running")
            self._on_stream_end(name, why)

    def _watch_exit(self) -> None:
        proc = self.proc
        if proc is None:
            return
        code = proc.wait()
        self.returncode = code
        self._reaped.set()
        # The pipes may outlive the process when it left children behind; bound the drain.
        for t in self._readers:
            t.join(timeout=1.0)
        with self._stdin_lock:
            self._close_stdin_locked()
        dprint(f"worker: pid={proc.pid} exited code={code}")
        self._on_exit(code)

    def write_stdin(self, data: bytes, *, timeout: float | None = None, last: bool = False) -> bool:
        """Write all of ``data`` to stdin; False (never raising) once stdin is unusable.

        ``timeout`` bounds the wait for a concurrent writer stuck on a full pipe.
        With ``last`` stdin is closed in the same critical section, so nothing
        can follow ``data``.
        """
        if not self._stdin_lock.acquire(timeout=-1 if timeout is None else timeout):
            dprint(f"worker: dropped {len(data)} stdin bytes (stdin busy)")
            return False
        try:
            if self.proc is None or self._stdin_closed or self.proc.stdin is None:
                dprint(f"worker: dropped {len(data)} stdin bytes (stdin closed)")
                return False
            if not self.running:
                dprint(f"worker: dropped {len(data)} stdin bytes (process exited)")
                self._close_stdin_locked()
                return False
            view = memoryview(data)
            try:
                while view:
                    n = self.proc.stdin.write(view)
                    view = view[n or 0 :]
            except (BrokenPipeError, ValueError, OSError) as e:
                dprint(f"worker: stdin write failed: {type(e).__name__}: {e}")
                self._close_stdin_locked()
                return False
            if last:
                self._close_stdin_locked()
            return True
        finally:
            self._stdin_lock.release()

    def close_stdin(self, *, timeout: float | None = None) -> bool:
        if not self._stdin_lock.acquire(timeout=-1 if timeout is None else timeout):
            return False
        try:
            self._close_stdin_locked()
            return True
        finally:
            self._stdin_lock.release()

    def _close_stdin_locked(self) -> None:
        if self._stdin_closed:
            return
        self._stdin_closed = True
        if self.proc is not None and self.proc.stdin is not None:
            try:
                self.proc.stdin.close()
            except OSError:
                pass

    def _signal(self, sig: int) -> bool:
        proc = self.proc
        if proc is None or not self.running:
            return False
        try:
            os.killpg(proc.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except OSError:
            try:
                os.kill(proc.pid, sig)
                return True
            except OSError:
                return False

    def signal_hangup(self) -> bool:
        return self._signal(signal.SIGHUP)

    def signal_kill(self) -> bool:
        return self._signal(signal.SIGKILL)

    def kill_group(self) -> bool:
        """SIGKILL whatever is left of the worker's process group, leader reaped or not."""
        if self.proc is None:
            return False
        try:
            os.killpg(self.proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return False
        except OSError as e:
            dprint(f"worker: killpg {self.proc.pid} failed: {e}")
            return False
        dprint(f"worker: killed leftover process group {self.proc.pid}")
        return True

    def wait(self, timeout: float | None = None) -> bool:
        if self.proc is None:
            return True
        return self._reaped.wait(timeout)

    def terminate(self, *, directive: bytes | None = OFF_DIRECTIVE, grace_s: float = 1.0) -> int | None:
        """Directive on stdin, then SIGHUP, then SIGKILL; each step waits up to ``grace_s``.

        Descendants left in the worker's process group are killed at the end,
        also when the interpreter itself already exited.
        """
        if self.proc is None:
            return None
        if directive and self.running:
            self.write_stdin(directive, timeout=grace_s, last=True)
        self.close_stdin(timeout=grace_s)
        if not self.wait(grace_s):
            if not (self.signal_hangup() and self.wait(grace_s)):
                self.signal_kill()
                self.wait(grace_s)
        self.kill_group()
        return self.returncode


def build_worker(
    args: WorkerArgs,
    *,
    on_output: OutputCallback,
    on_exit: ExitCallback,
    on_stream_end: StreamEndCallback | None = None,
) -> Worker:
    args.preflight()
    return Worker(args.argv(), on_output=on_output, on_exit=on_exit, on_stream_end=on_stream_end, cwd="/")
