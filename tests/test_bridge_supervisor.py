from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cursor_tools import bridge_supervisor
from cursor_tools.bridge_supervisor import BridgeStartOutcome, ensure_bridge_process


def test_bridge_urls_follow_environment() -> None:
    assert bridge_supervisor.bridge_urls({}) == {
        "baseURL": "http://127.0.0.1:8765",
        "v1BaseURL": "http://127.0.0.1:8765/v1",
        "healthURL": "http://127.0.0.1:8765/health",
    }
    env = {"CURSOR_BRIDGE_HOST": "0.0.0.0", "CURSOR_BRIDGE_PORT": "9001"}
    assert bridge_supervisor.bridge_base_url(env) == "http://0.0.0.0:9001"
    assert bridge_supervisor.bridge_base_url({"CURSOR_BRIDGE_PORT": "-4"}) == "http://127.0.0.1:8765"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, True), ("", True), ("1", True), ("true", True), ("0", False), ("false", False), (" FALSE ", False)],
)
def test_should_autostart_bridge(raw: str | None, expected: bool) -> None:
    env = {} if raw is None else {"CURSOR_BRIDGE_AUTOSTART": raw}
    assert bridge_supervisor.should_autostart_bridge(env) is expected


def test_is_bridge_up_returns_false_when_nothing_listens() -> None:
    assert bridge_supervisor.is_bridge_up(0.2, {"CURSOR_BRIDGE_PORT": "1"}) is False


def test_autostart_disabled_is_reported_as_skipped() -> None:
    def _never(*_args: object) -> int:
        raise AssertionError("must not start")

    outcome = ensure_bridge_process(
        "agent",
        environ={"CURSOR_BRIDGE_AUTOSTART": "0"},
        probe=lambda: False,
        starter=_never,
    )
    assert outcome == BridgeStartOutcome(status="skipped", reason="CURSOR_BRIDGE_AUTOSTART is disabled")
    assert outcome.ok is False


def test_running_bridge_is_not_restarted() -> None:
    def _never(*_args: object) -> int:
        raise AssertionError("must not start")

    outcome = ensure_bridge_process("agent", environ={}, probe=lambda: True, starter=_never)
    assert outcome.status == "already_running"
    assert outcome.ok is True


def test_started_bridge_reports_pid() -> None:
    probes = iter([False, False, True])
    started: list[tuple[str, str | None]] = []

    def _starter(agent_bin: str, workspace: str | None) -> int:
        started.append((agent_bin, workspace))
        return 4242

    outcome = ensure_bridge_process(
        "/opt/agent",
        "/work",
        environ={},
        probe=lambda: next(probes),
        starter=_starter,
        wait_seconds=5.0,
    )
    assert started == [("/opt/agent", "/work")]
    assert outcome == BridgeStartOutcome(status="started", pid=4242)


def test_spawn_failure_is_reported() -> None:
    def _starter(_agent_bin: str, _workspace: str | None) -> int:
        raise FileNotFoundError("python missing")

    outcome = ensure_bridge_process("agent", environ={}, probe=lambda: False, starter=_starter)
    assert outcome.status == "failed"
    assert "python missing" in outcome.reason


def test_unhealthy_start_is_reported_as_failed() -> None:
    outcome = ensure_bridge_process(
        "agent",
        environ={},
        probe=lambda: False,
        starter=lambda _bin, _cwd: 77,
        wait_seconds=0.3,
    )
    assert outcome.status == "failed"
    assert outcome.pid == 77
    assert "/health did not respond" in outcome.reason


def test_wait_for_bridge_uses_injected_clock() -> None:
    now = [0.0]
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    assert bridge_supervisor.wait_for_bridge(1.0, probe=lambda: False, sleep=_sleep, clock=lambda: now[0]) is False
    assert len(sleeps) == 4


def test_child_environment_defaults() -> None:
    env = bridge_supervisor._bridge_child_env("/opt/agent", "/work", {"CURSOR_BRIDGE_MODE": "plan", "PATH": "/bin"})
    assert env["CURSOR_AGENT_BIN"] == "/opt/agent"
    assert env["CURSOR_BRIDGE_WORKSPACE"] == "/work"
    assert env["CURSOR_BRIDGE_MODE"] == "plan"
    assert env["CURSOR_BRIDGE_FORCE"] == "false"
    assert env["CURSOR_BRIDGE_APPROVE_MCPS"] == "false"
    assert env["PATH"] == "/bin"

    kept = bridge_supervisor._bridge_child_env("agent", "/work", {"CURSOR_BRIDGE_WORKSPACE": "/other"})
    assert kept["CURSOR_BRIDGE_WORKSPACE"] == "/other"


def test_stop_bridge_by_pid_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_file = tmp_path / "bridge.pid"
    assert bridge_supervisor.stop_bridge_by_pid_file(pid_file) is False

    signalled: list[tuple[int, int]] = []
    monkeypatch.setattr(bridge_supervisor.os, "kill", lambda pid, sig: signalled.append((pid, sig)))

    pid_file.write_text("12345", encoding="utf-8")
    assert bridge_supervisor.stop_bridge_by_pid_file(pid_file) is True
    assert signalled == [(12345, bridge_supervisor.signal.SIGTERM)]
    assert not pid_file.exists()

    pid_file.write_text("garbage", encoding="utf-8")
    assert bridge_supervisor.stop_bridge_by_pid_file(pid_file) is False
    assert not pid_file.exists()


def test_stop_bridge_tolerates_exited_process(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _kill(_pid: int, _sig: int) -> None:
        raise ProcessLookupError()

    monkeypatch.setattr(bridge_supervisor.os, "kill", _kill)
    pid_file = tmp_path / "bridge.pid"
    pid_file.write_text(str(os.getpid() + 100000), encoding="utf-8")
    assert bridge_supervisor.stop_bridge_by_pid_file(pid_file) is True
    assert not pid_file.exists()
