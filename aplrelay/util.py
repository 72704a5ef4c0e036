from __future__ import annotations

import datetime
import os
import sys
import time
import traceback
from pathlib import Path


def _ts() -> str:
    return datetime.datetime.now().replace(microsecond=0).strftime("%Y-%m-%d %H:%M:%S")


def _log_line(msg: str) -> None:
    sys.stderr.write(msg.rstrip("\n") + "\n")
    sys.stderr.flush()


def log_event(msg: str) -> None:
    _log_line(f"{_ts()} {msg}")


def log_exception(context: str, exc: BaseException) -> None:
    """One error line for ``context``, then the traceback indented beneath it."""
    log_event(f"error: {context}: {type(exc).__name__}: {exc}")
    for line in traceback.format_exception(type(exc), exc, exc.__traceback__):
        for part in line.rstrip("\n").splitlines():
            _log_line(f"    {part}")


def dprint(msg: str) -> None:
    if os.environ.get("APL_RELAY_DEBUG", "0") != "1":
        return
    try:
        _log_line(f"{_ts()} debug: {msg}")
    except OSError:
        pass


def now() -> float:
    return time.time()


# APL_RELAY_* and the worker's APL_* settings.
ENV_PREFIXES = ("APL_",)


def load_env_file(path: Path, *, prefixes: tuple[str, ...] = ENV_PREFIXES) -> dict[str, str]:
    """``KEY=value`` pairs of a dotenv file, limited to the relay's own variables.

    Comments, blank lines, ``export`` prefixes and one level of matching
    quotes are handled; an unreadable file yields nothing.
    """
    try:
        lines = path.read_text("utf-8").splitlines()
    except OSError:
        return {}

    out: dict[str, str] = {}
    for n, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        line = line.removeprefix("export ").lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            dprint(f"env: {path}:{n}: ignored malformed line")
            continue
        if not key.startswith(prefixes):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        out[key] = value
    return out


def split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [p.strip() for p in raw.split(",") if p.strip()]
