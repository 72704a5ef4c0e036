import sys
import tempfile
import threading
import time
import unittest
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any
from unittest.mock import patch

from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.sync.client import connect

from aplrelay.gate import SUBPROTOCOL
from aplrelay.relay import LINE, PASSTHROUGH
from aplrelay.server import Config, build_server, config_from_env, parse_args
from aplrelay.session import SessionManager
from aplrelay.util import load_env_file
from aplrelay.worker import Worker

from test_worker import EVAL_SCRIPT


class TestConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = config_from_env({})
        self.assertIsNone(cfg.host)
        self.assertEqual(cfg.port, 42424)
        self.assertEqual(cfg.output, PASSTHROUGH)
        self.assertEqual(cfg.worker.binary, "/usr/local/bin/apl")
        self.assertEqual(cfg.worker.sandbox_root, "/home/www-data/apl-chroot")
        self.assertEqual(cfg.worker.uid, 33)
        self.assertIn("http://localhost", cfg.origins)

    def test_env_overrides(self) -> None:
        cfg = config_from_env(
            {
                "APL_RELAY_PORT": "9000",
                "APL_RELAY_ORIGINS": "http://a.example, http://b.example",
                "APL_RELAY_OUTPUT": "LINE",
                "APL_CHROOT": "",
                "APL_UID": "",
                "APL_CPU_LIMIT_SECS": "30",
                "APL_PW": "120",
            }
        )
        self.assertEqual(cfg.port, 9000)
        self.assertEqual(cfg.origins, ["http://a.example", "http://b.example"])
        self.assertEqual(cfg.output, LINE)
        self.assertIsNone(cfg.worker.sandbox_root)
        self.assertIsNone(cfg.worker.uid)
        self.assertEqual(cfg.worker.cpu_limit_secs, 30)
        self.assertEqual(cfg.worker.print_width, 120)

    def test_invalid_env_values(self) -> None:
        for env in (
            {"APL_RELAY_PORT": "http"},
            {"APL_RELAY_PORT": "70000"},
            {"APL_RELAY_OUTPUT": "chunky"},
            {"APL_RELAY_GRACE_SECONDS": "-1"},
            {"APL_UID": "www-data"},
            {"APL_PW": ""},
        ):
            with self.assertRaises(ValueError, msg=str(env)):
                config_from_env(env)

    def test_flags_override_env(self) -> None:
        cfg = parse_args(
            ["--port", "0", "--origin", "http://x.example", "--origin", "http://y.example", "--output", "line", "--chroot", "", "--uid", "1000"],
            env={"APL_RELAY_PORT": "9000", "APL_RELAY_ORIGINS": "http://z.example"},
        )
        self.assertEqual(cfg.port, 0)
        self.assertEqual(cfg.origins, ["http://x.example", "http://y.example"])
        self.assertEqual(cfg.output, LINE)
        self.assertIsNone(cfg.worker.sandbox_root)
        self.assertEqual(cfg.worker.uid, 1000)

    def test_env_file_keeps_relay_settings_only(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".env"
            path.write_text(
                "# relay\n"
                "export APL_RELAY_PORT=9001\n"
                "APL_RELAY_ORIGINS='http://a.example'\n"
                'APL_BIN="/opt/apl/bin/apl"\n'
                "HOME=/tmp\n"
                "not a setting\n",
                "utf-8",
            )
            env = load_env_file(path)
            self.assertEqual(load_env_file(Path(td) / "missing"), {})
        self.assertEqual(
            env,
            {"APL_RELAY_PORT": "9001", "APL_RELAY_ORIGINS": "http://a.example", "APL_BIN": "/opt/apl/bin/apl"},
        )
        cfg = config_from_env(env)
        self.assertEqual(cfg.port, 9001)
        self.assertEqual(cfg.worker.binary, "/opt/apl/bin/apl")

    def test_bad_uid_flag_exits(self) -> None:
        with patch("sys.stderr"):
            with self.assertRaises(SystemExit):
                parse_args(["--uid", "nobody"], env={})


class TestServerEndToEnd(unittest.TestCase):
    def setUp(self) -> None:
        for target in ("aplrelay.gate.log_event", "aplrelay.session.log_event"):
            p = patch(target)
            p.start()
            self.addCleanup(p.stop)

        self.spawned = 0
        self._spawn_lock = threading.Lock()

        def spawn(**callbacks: Any) -> Worker:
            with self._spawn_lock:
                self.spawned += 1
            return Worker(list(self.worker_argv), **callbacks)

        self.worker_argv = [sys.executable, "-c", EVAL_SCRIPT]
        self.manager = SessionManager(spawn=spawn, grace_s=2.0)
        cfg = Config(host="127.0.0.1", port=0, origins=["http://localhost"])
        self.server = build_server(cfg, self.manager)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.port = self.server.socket.getsockname()[1]
        self.addCleanup(self._shutdown)

    def _shutdown(self) -> None:
        self.server.shutdown()
        self.thread.join(5.0)
        self.manager.stop()

    def _wait_idle(self, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.manager.count() == 0:
                return True
            time.sleep(0.05)
        return False

    def test_plain_request_is_404(self) -> None:
        with self.assertRaises(urllib.error.HTTPError) as cm:
            urllib.request.urlopen(f"http://127.0.0.1:{self.port}/", timeout=5)
        self.assertEqual(cm.exception.code, 404)
        self.assertEqual(cm.exception.read(), b"")
        self.assertEqual(self.spawned, 0)

    def test_rejected_origin_spawns_nothing(self) -> None:
        with self.assertRaises(InvalidHandshake):
            connect(
                f"ws://127.0.0.1:{self.port}/",
                origin="http://evil.example",
                subprotocols=[SUBPROTOCOL],
                open_timeout=5,
            )
        self.assertEqual(self.spawned, 0)
        self.assertEqual(self.manager.count(), 0)

    def test_missing_subprotocol_rejected(self) -> None:
        with self.assertRaises(InvalidHandshake):
            connect(f"ws://127.0.0.1:{self.port}/", origin="http://localhost", open_timeout=5)
        self.assertEqual(self.spawned, 0)

    def test_echo_roundtrip(self) -> None:
        with connect(
            f"ws://127.0.0.1:{self.port}/",
            origin="http://localhost",
            subprotocols=[SUBPROTOCOL],
            open_timeout=5,
        ) as ws:
            self.assertEqual(ws.subprotocol, SUBPROTOCOL)
            ws.send("1+1\n")
            self.assertEqual(ws.recv(timeout=5).rstrip(), "2")
        self.assertTrue(self._wait_idle())
        self.assertEqual(self.spawned, 1)

    def test_worker_exit_closes_client(self) -> None:
        with connect(
            f"ws://127.0.0.1:{self.port}/",
            origin="http://localhost",
            subprotocols=[SUBPROTOCOL],
            open_timeout=5,
        ) as ws:
            ws.send(")OFF\n")
            deadline = time.monotonic() + 10.0
            closed = False
            while time.monotonic() < deadline:
                try:
                    ws.recv(timeout=1)
                except TimeoutError:
                    continue
                except ConnectionClosed:
                    closed = True
                    break
            self.assertTrue(closed)
        self.assertTrue(self._wait_idle())


if __name__ == "__main__":
    unittest.main()
