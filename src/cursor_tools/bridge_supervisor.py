from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from cursor_core.config import DEFAULT_HOST, DEFAULT_PORT
from cursor_core.paths import bridge_pid_file
from cursor_core.shared import env_number


LOGGER = logging.getLogger("cursor_tools.bridge")
LOGGER.addHandler(logging.NullHandler())

START_STATUS_ALREADY_RUNNING = "already_running"
START_STATUS_STARTED = "started"
START_STATUS_SKIPPED = "skipped"
START_STATUS_FAILED = "failed"

AUTOSTART_WAIT_SECONDS = 3.0
START_WAIT_SECONDS = 5.0
_POLL_INTERVAL_SECONDS = 0.25


@dataclass(frozen=True)
class BridgeStartOutcome:
    status: str
    pid: int | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status in {START_STATUS_ALREADY_RUNNING, START_STATUS_STARTED}


def _environ(environ: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def bridge_base_url(environ: Mapping[str, str] | None = None) -> str:
    env = _environ(environ)
    host = env.get("CURSOR_BRIDGE_HOST") or DEFAULT_HOST
    port = env_number(env, "CURSOR_BRIDGE_PORT", DEFAULT_PORT)
    if port <= 0:
        port = DEFAULT_PORT
    return f"http://{host}:{port}"


def bridge_health_url(environ: Mapping[str, str] | None = None) -> str:
    return f"{bridge_base_url(environ)}/health"


def bridge_urls(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    base_url = bridge_base_url(environ)
    return {"baseURL": base_url, "v1BaseURL": f"{base_url}/v1", "healthURL": f"{base_url}/health"}


def should_autostart_bridge(environ: Mapping[str, str] | None = None) -> bool:
    raw = _environ(environ).get("CURSOR_BRIDGE_AUTOSTART")
    if not raw:
        return True
    return raw.strip().lower() not in {"0", "false"}


def is_bridge_up(timeout_seconds: float = 0.5, environ: Mapping[str, str] | None = None) -> bool:
    env = _environ(environ)
    headers = {}
    api_key = env.get("CURSOR_BRIDGE_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    request = urllib.request.Request(bridge_health_url(env), headers=headers, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return 200 <= response.status < 300
    except (urllib.error.URLError, OSError, ValueError):
        return False


def _bridge_child_env(agent_bin: str, workspace: str | None, environ: Mapping[str, str]) -> dict[str, str]:
    env = dict(environ)
    env["CURSOR_AGENT_BIN"] = agent_bin
    if workspace and not environ.get("CURSOR_BRIDGE_WORKSPACE"):
        env["CURSOR_BRIDGE_WORKSPACE"] = workspace
    env.setdefault("CURSOR_BRIDGE_MODE", "ask")
    env.setdefault("CURSOR_BRIDGE_FORCE", "false")
    env.setdefault("CURSOR_BRIDGE_APPROVE_MCPS", "false")
    return env


def start_bridge_detached(
    agent_bin: str,
    workspace: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    pid_file: Path | None = None,
) -> int:
    env = _environ(environ)
    command = [env.get("CURSOR_BRIDGE_PYTHON_BIN") or sys.executable, "-m", "cursor_bridge"]
    process = subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=_bridge_child_env(agent_bin, workspace, env),
        start_new_session=True,
    )
    target = pid_file or bridge_pid_file()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(str(process.pid), encoding="utf-8")
    LOGGER.info(
        "Started detached bridge pid=%s",
        process.pid,
        extra={"component": "bridge", "operation": "start", "result": "started"},
    )
    return process.pid


def stop_bridge_by_pid_file(pid_file: Path | None = None) -> bool:
    target = pid_file or bridge_pid_file()
    try:
        raw = target.read_text(encoding="utf-8").strip()
    except OSError:
        return False
    try:
        pid = int(raw)
    except ValueError:
        pid = 0
    if pid <= 0:
        target.unlink(missing_ok=True)
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        LOGGER.debug("Bridge pid %s already exited", pid)
    except PermissionError as exc:
        LOGGER.warning("Unable to signal bridge pid %s: %s", pid, exc)
    target.unlink(missing_ok=True)
    return True


def wait_for_bridge(
    deadline_seconds: float,
    *,
    probe: Callable[[], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    check = probe or (lambda: is_bridge_up(0.3))
    start = clock()
    while clock() - start < deadline_seconds:
        if check():
            return True
        sleep(_POLL_INTERVAL_SECONDS)
    return False


def ensure_bridge_process(
    agent_bin: str,
    workspace: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    probe: Callable[[], bool] | None = None,
    starter: Callable[[str, str | None], int] | None = None,
    wait_seconds: float = AUTOSTART_WAIT_SECONDS,
) -> BridgeStartOutcome:
    """Start the bridge unless it is already up or autostart is disabled."""
    env = _environ(environ)
    check = probe or (lambda: is_bridge_up(0.5, env))
    if not should_autostart_bridge(env):
        return BridgeStartOutcome(status=START_STATUS_SKIPPED, reason="CURSOR_BRIDGE_AUTOSTART is disabled")
    if check():
        return BridgeStartOutcome(status=START_STATUS_ALREADY_RUNNING)
    start = starter or (lambda bin_path, cwd: start_bridge_detached(bin_path, cwd, environ=env))
    try:
        pid = start(agent_bin, workspace)
    except OSError as exc:
        return BridgeStartOutcome(status=START_STATUS_FAILED, reason=f"Failed to spawn cursor-bridge: {exc}")
    if wait_for_bridge(wait_seconds, probe=check):
        return BridgeStartOutcome(status=START_STATUS_STARTED, pid=pid)
    return BridgeStartOutcome(
        status=START_STATUS_FAILED,
        pid=pid,
        reason="Started process but /health did not respond yet. Check logs by running the bridge manually.",
    )
