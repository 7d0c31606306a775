from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from cursor_core.errors import SpawnError


LOGGER = logging.getLogger("cursor_core.process")
LOGGER.addHandler(logging.NullHandler())

_READ_CHUNK_BYTES = 64 * 1024
# Grandchildren may keep the pipes open after a kill.
_DRAIN_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class RunResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            return
        sink.append(chunk)


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


async def run_command(
    command: str,
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout_ms: int | None = None,
) -> RunResult:
    """Run ``command`` with ``args`` and capture its output.

    Arguments are passed verbatim, without a shell. stdin is closed so the
    child can never block on interactive input. A non-zero exit is returned as
    a normal result; only launch failures raise ``SpawnError``. When
    ``timeout_ms`` elapses the child is sent SIGKILL and the result carries
    ``timed_out=True``.
    """
    argv = [str(arg) for arg in args]
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        if cwd and not Path(cwd).is_dir():
            raise SpawnError(f"Failed to launch {command}: working directory {cwd} does not exist") from exc
        raise SpawnError(
            f"Command not found: {command}. Install Cursor CLI (agent) or set CURSOR_AGENT_BIN to its path."
        ) from exc
    except OSError as exc:
        raise SpawnError(f"Failed to launch {command}: {exc}") from exc

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = {
        asyncio.ensure_future(_drain(process.stdout, stdout_chunks)),
        asyncio.ensure_future(_drain(process.stderr, stderr_chunks)),
    }
    timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
    timed_out = False
    try:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            LOGGER.warning(
                "Killing %s after %sms timeout",
                command,
                timeout_ms,
                extra={"component": "process", "operation": "run_command", "result": "timeout"},
            )
            _kill(process)
            await process.wait()
        _, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
        for task in pending:
            task.cancel()
    finally:
        if process.returncode is None:
            _kill(process)
        for task in readers:
            if not task.done():
                task.cancel()

    exit_code = process.returncode if process.returncode is not None else -1
    return RunResult(
        exit_code=exit_code,
        stdout=_decode(stdout_chunks),
        stderr=_decode(stderr_chunks),
        timed_out=timed_out,
    )
