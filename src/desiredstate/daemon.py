"""
Agent daemon: the always-on reconciliation process.

Wraps the control loop with the process concerns: a PID file, file
logging, SIGINT/SIGTERM handling, and a small read-only HTTP API on
localhost so operators can ask what the last pass did.

API routes (GET, JSON):
    /status      pass counters, per-component outcomes, recent errors
    /components  outcome of each component in the last pass
    /ping        liveness
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Callable, Optional

from . import AGENT_HOME
from .config import DEFAULT_STATUS_PORT, AgentConfig
from .loop import ControlLoop
from .models import ReconcileReport
from .reconciler import Reconciler

logger = logging.getLogger("desiredstate.daemon")

PID_FILE = "agent.pid"
MAX_ERRORS = 50
RECENT_ERRORS = 10


def _iso(moment: Optional[datetime]) -> Optional[str]:
    return moment.isoformat() if moment else None


class DaemonState:
    """Thread-safe record of the passes the agent has run.

    Written by the control loop thread, read by the status API.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_pass: Optional[datetime] = None
        self.passes_completed: int = 0
        self.passes_failed: int = 0
        self.last_report: Optional[ReconcileReport] = None
        self.errors: list[str] = []
        self.running: bool = False

    def components(self) -> dict[str, dict]:
        """Outcome of each component in the last completed pass, by name."""
        with self._lock:
            report = self.last_report
        if report is None:
            return {}
        return {
            outcome.name: outcome.model_dump(mode="json", exclude={"name"}, exclude_none=True)
            for outcome in report.outcomes
        }

    def snapshot(self) -> dict:
        """Return a JSON-serializable view of the agent and its last pass."""
        components = self.components()
        with self._lock:
            report = self.last_report
            return {
                "pid": os.getpid(),
                "running": self.running,
                "started_at": _iso(self.started_at),
                "passes": {
                    "completed": self.passes_completed,
                    "failed": self.passes_failed,
                    "last_at": _iso(self.last_pass),
                    "last_ok": report.ok if report else None,
                },
                "manifest": report.manifest_name if report else None,
                "components": components,
                "last_report": report.model_dump(mode="json") if report else None,
                "recent_errors": self.errors[-RECENT_ERRORS:],
            }

    def record_report(self, report: ReconcileReport) -> None:
        with self._lock:
            self.last_pass = datetime.now(timezone.utc)
            self.passes_completed += 1
            self.last_report = report
        for outcome in report.failed:
            self.record_error(f"{outcome.name}: {outcome.operation}: {outcome.error}")

    def record_failure(self, exc: Exception) -> None:
        with self._lock:
            self.last_pass = datetime.now(timezone.utc)
            self.passes_failed += 1
        self.record_error(f"pass: {exc}")

    def record_error(self, error: str) -> None:
        """Append a timestamped error, keeping the newest MAX_ERRORS."""
        stamped = f"[{datetime.now(timezone.utc).isoformat()}] {error}"
        with self._lock:
            self.errors = (self.errors + [stamped])[-MAX_ERRORS:]


def _send_json(handler: BaseHTTPRequestHandler, data: dict, status: int = 200) -> None:
    body = json.dumps(data, indent=2).encode()
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def status_handler(state: DaemonState) -> type[BaseHTTPRequestHandler]:
    """Build a request handler class serving ``state``."""
    routes: dict[str, Callable[[], dict]] = {
        "/status": state.snapshot,
        "/components": state.components,
        "/ping": lambda: {"pong": True, "pid": os.getpid()},
    }

    class StatusHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            route = routes.get(self.path.split("?", 1)[0].rstrip("/") or "/")
            if route is None:
                _send_json(self, {"error": "not found", "routes": sorted(routes)}, status=404)
                return
            _send_json(self, route())

        def log_message(self, format, *args):
            logger.debug("status api %s: %s", self.address_string(), format % args)

    return StatusHandler


class AgentService:
    """The reconciliation agent process.

    Args:
        config: Agent configuration.
        reconciler: Prebuilt reconciler; built from config if omitted.
    """

    def __init__(self, config: AgentConfig, reconciler: Optional[Reconciler] = None):
        self.config = config
        self.home = config.home.expanduser()
        self.state = DaemonState()
        self.stop_event = reconciler.cancel_event if reconciler else threading.Event()
        self.reconciler = reconciler or Reconciler.from_config(config, self.stop_event)
        self.loop = ControlLoop(
            self.reconciler,
            interval=config.interval,
            stop_event=self.stop_event,
            on_report=self.state.record_report,
            on_error=self.state.record_failure,
        )
        self._server: Optional[HTTPServer] = None
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Write the PID file, hook up logging, signals, and the API."""
        write_pid(self.home)
        self._setup_logging()
        self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            "Agent starting: registry=%s deploy_dir=%s interval=%.1fs",
            self.config.registry,
            self.config.deploy_dir,
            self.config.interval,
        )
        if self.config.status_port:
            self._start_api_server()

    def stop(self) -> None:
        """Stop the loop and release process resources."""
        logger.info("Agent stopping")
        self.stop_event.set()
        self.state.running = False

        if self._server:
            self._server.shutdown()
            self._server.server_close()

        for t in self._threads:
            t.join(timeout=5)

        _pid_path(self.home).unlink(missing_ok=True)
        logger.info("Agent stopped")

    def run_forever(self) -> None:
        """Run the control loop until a signal arrives."""
        try:
            self.loop.run_forever()
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _start_api_server(self) -> None:
        """Serve the status API from a background thread."""
        try:
            self._server = HTTPServer(
                ("127.0.0.1", self.config.status_port), status_handler(self.state)
            )
        except OSError as exc:
            logger.error("Failed to start status API: %s", exc)
            self.state.record_error(f"status api: {exc}")
            return

        t = threading.Thread(target=self._server.serve_forever, name="status-api", daemon=True)
        t.start()
        self._threads.append(t)
        logger.info("Status API listening on http://127.0.0.1:%d", self._server.server_port)

    def _setup_logging(self) -> None:
        """Add the agent log file to the root logger."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        if root.level == logging.NOTSET or root.level > logging.INFO:
            root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        """Stop on SIGTERM and SIGINT. Only the main thread may install handlers."""
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received %s, finishing current pass", signal.Signals(signum).name)
        self.stop_event.set()


def _pid_path(home: Optional[Path]) -> Path:
    return Path(home or AGENT_HOME).expanduser() / PID_FILE


def write_pid(home: Optional[Path] = None) -> Path:
    """Record this process as the running agent."""
    path = _pid_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()), encoding="utf-8")
    return path


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """PID of the running agent, or None.

    A PID file naming a dead process, or holding garbage, is removed.
    """
    path = _pid_path(home)
    try:
        pid = int(path.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except ValueError:
        path.unlink(missing_ok=True)
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        path.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Alive but owned by another user.
        pass
    return pid


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_agent_status(port: int = DEFAULT_STATUS_PORT, route: str = "/status") -> Optional[dict]:
    """Fetch a route of the running agent's status API.

    Returns:
        Decoded JSON body, or None if the agent cannot be reached.
    """
    import urllib.error
    import urllib.request

    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{route}", timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
