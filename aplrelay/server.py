#!/usr/bin/env python3
from __future__ import annotations

import argparse
import functools
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from websockets.sync.server import Server, serve

from .gate import SUBPROTOCOL, Gatekeeper
from .relay import OUTPUT_POLICIES, PASSTHROUGH
from .session import SessionManager
from .util import load_env_file, log_event, split_csv
from .worker import WorkerArgs, build_worker


_DOTENV = (Path.cwd() / ".env").resolve()

DEFAULT_PORT = 42424
DEFAULT_ORIGINS = "http://localhost,http://127.0.0.1"
DEFAULT_MAX_FRAME = 64 * 1024


@dataclass
class Config:
    host: str | None = None
    port: int = DEFAULT_PORT
    origins: list[str] = field(default_factory=lambda: split_csv(DEFAULT_ORIGINS))
    output: str = PASSTHROUGH
    grace_s: float = 1.0
    max_frame: int = DEFAULT_MAX_FRAME
    worker: WorkerArgs = field(default_factory=WorkerArgs)


def _env_int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = env.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _required(value: int | None, name: str) -> int:
    if value is None:
        raise ValueError(f"{name} must not be empty")
    return value


def config_from_env(env: Mapping[str, str]) -> Config:
    worker = WorkerArgs(
        binary=env.get("APL_BIN") or WorkerArgs.binary,
        sandbox_root=env.get("APL_CHROOT", WorkerArgs.sandbox_root) or None,
        uid=_env_int(env, "APL_UID", WorkerArgs.uid),
        cpu_limit_secs=_required(_env_int(env, "APL_CPU_LIMIT_SECS", WorkerArgs.cpu_limit_secs), "APL_CPU_LIMIT_SECS"),
        print_precision=_required(_env_int(env, "APL_PP", WorkerArgs.print_precision), "APL_PP"),
        print_width=_required(_env_int(env, "APL_PW", WorkerArgs.print_width), "APL_PW"),
    )
    cfg = Config(
        host=(env.get("APL_RELAY_HOST") or "").strip() or None,
        port=_required(_env_int(env, "APL_RELAY_PORT", DEFAULT_PORT), "APL_RELAY_PORT"),
        origins=split_csv(env.get("APL_RELAY_ORIGINS", DEFAULT_ORIGINS)),
        output=(env.get("APL_RELAY_OUTPUT") or PASSTHROUGH).strip().lower(),
        grace_s=_env_float(env, "APL_RELAY_GRACE_SECONDS", 1.0),
        max_frame=_required(_env_int(env, "APL_RELAY_MAX_FRAME", DEFAULT_MAX_FRAME), "APL_RELAY_MAX_FRAME"),
        worker=worker,
    )
    _validate(cfg)
    return cfg


def _validate(cfg: Config) -> None:
    if cfg.output not in OUTPUT_POLICIES:
        raise ValueError(f"output policy must be one of {', '.join(OUTPUT_POLICIES)}, got {cfg.output!r}")
    if not (0 <= cfg.port <= 65535):
        raise ValueError(f"port out of range: {cfg.port}")
    if cfg.grace_s <= 0:
        raise ValueError("grace period must be positive")
    if cfg.max_frame <= 0:
        raise ValueError("max frame size must be positive")


def parse_args(argv: list[str] | None = None, env: Mapping[str, str] | None = None) -> Config:
    cfg = config_from_env(os.environ if env is None else env)
    ap = argparse.ArgumentParser(
        description="Relay WebSocket clients to sandboxed GNU APL worker processes, one worker per connection."
    )
    ap.add_argument("--host", default=None, help="Listen address (default: all interfaces)")
    ap.add_argument("--port", type=int, default=None, help=f"Listen port (default: {DEFAULT_PORT})")
    ap.add_argument(
        "--origin",
        action="append",
        default=None,
        help="Allowed Origin header value; repeat for several (replaces APL_RELAY_ORIGINS)",
    )
    ap.add_argument("--output", choices=OUTPUT_POLICIES, default=None, help="Worker output framing policy")
    ap.add_argument("--grace", type=float, default=None, help="Seconds to wait between shutdown steps")
    ap.add_argument("--apl", default=None, help="Path of the apl binary")
    ap.add_argument("--chroot", default=None, help="Sandbox root for the worker; empty string disables chroot")
    ap.add_argument("--uid", default=None, help="Uid the worker drops to; empty string keeps the current uid")
    ns = ap.parse_args(argv)

    if ns.host is not None:
        cfg.host = ns.host or None
    if ns.port is not None:
        cfg.port = ns.port
    if ns.origin:
        cfg.origins = [o for raw in ns.origin for o in split_csv(raw)]
    if ns.output is not None:
        cfg.output = ns.output
    if ns.grace is not None:
        cfg.grace_s = ns.grace
    if ns.apl is not None:
        cfg.worker.binary = ns.apl
    if ns.chroot is not None:
        cfg.worker.sandbox_root = ns.chroot or None
    if ns.uid is not None:
        try:
            cfg.worker.uid = int(ns.uid) if ns.uid.strip() else None
        except ValueError:
            ap.error(f"--uid must be an integer, got {ns.uid!r}")
    _validate(cfg)
    return cfg


def build_server(cfg: Config, manager: SessionManager) -> Server:
    gate = Gatekeeper(cfg.origins, subprotocol=SUBPROTOCOL)
    return serve(
        manager.handle,
        cfg.host,
        cfg.port,
        subprotocols=[SUBPROTOCOL],
        process_request=gate.process_request,
        max_size=cfg.max_frame,
        compression=None,
    )


def build_manager(cfg: Config) -> SessionManager:
    spawn = functools.partial(build_worker, cfg.worker)
    return SessionManager(spawn=spawn, output_policy=cfg.output, grace_s=cfg.grace_s)


def main(argv: list[str] | None = None) -> None:
    if _DOTENV.exists():
        for _k, _v in load_env_file(_DOTENV).items():
            os.environ.setdefault(_k, _v)
    try:
        cfg = parse_args(argv)
    except ValueError as e:
        sys.stderr.write(f"error: {e}\n")
        raise SystemExit(2)

    if not cfg.origins:
        log_event("warning: origin allow-list is empty; every upgrade will be rejected")

    manager = build_manager(cfg)
    try:
        server = build_server(cfg, manager)
    except OSError as e:
        sys.stderr.write(f"error: cannot listen on port {cfg.port}: {e}\n")
        raise SystemExit(2)

    def _sigterm(_signo: int, _frame: Any) -> None:
        # Server.shutdown() must not run in the serve_forever thread.
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sigterm)
    signal.signal(signal.SIGINT, _sigterm)

    log_event(f"Server is listening on port {server.socket.getsockname()[1]}")
    try:
        server.serve_forever()
    finally:
        manager.stop()
        log_event("Server stopped")


if __name__ == "__main__":
    main()
