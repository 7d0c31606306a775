from __future__ import annotations

import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cursor_core.config import IMPLICIT_CLI_MODE, MODE_ASK
from cursor_core.errors import AgentCliError
from cursor_core.process import RunResult, run_command


LIST_MODELS_TIMEOUT_MS = 60_000
STATUS_TIMEOUT_MS = 60_000

_MODEL_LINE_RE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._:/-]*)\s+-\s+(.*)$")
_TRAILING_NOTE_RE = re.compile(r"\s*\([^)]*\)\s*$")


@dataclass(frozen=True)
class CursorCliModel:
    id: str
    name: str


def parse_cursor_cli_models(output: str) -> list[CursorCliModel]:
    """Parse ``agent --list-models`` output.

    Only ``<id> - <description>`` lines are recognized. A repeated id keeps
    its first position and its last description.
    """
    by_id: dict[str, CursorCliModel] = {}
    for raw_line in output.splitlines():
        match = _MODEL_LINE_RE.match(raw_line.strip())
        if not match:
            continue
        model_id, raw_name = match.group(1), match.group(2)
        name = _TRAILING_NOTE_RE.sub("", raw_name).strip()
        by_id[model_id] = CursorCliModel(id=model_id, name=name or model_id)
    return list(by_id.values())


def describe_failure(label: str, result: RunResult, *, timeout_ms: int | None = None) -> str:
    if result.timed_out:
        return f"{label} timed out after {timeout_ms} ms"
    return f"{label} failed (exit {result.exit_code}): {result.stderr.strip()}"


async def list_cursor_cli_models(
    agent_bin: str,
    *,
    timeout_ms: int = LIST_MODELS_TIMEOUT_MS,
    cwd: Path | str | None = None,
) -> list[CursorCliModel]:
    result = await run_command(
        agent_bin,
        ["--list-models"],
        cwd=cwd or tempfile.gettempdir(),
        timeout_ms=timeout_ms,
    )
    if not result.ok:
        raise AgentCliError(describe_failure("agent --list-models", result, timeout_ms=timeout_ms))
    return parse_cursor_cli_models(result.stdout)


def build_print_args(
    prompt: str,
    *,
    mode: str = MODE_ASK,
    model: str | None = None,
    output_format: str = "text",
    force: bool = False,
) -> list[str]:
    args = ["--print"]
    if mode != IMPLICIT_CLI_MODE:
        args.extend(["--mode", mode])
    args.extend(["--output-format", output_format])
    if model:
        args.extend(["--model", model])
    if force:
        args.append("--force")
    args.append(prompt)
    return args


async def run_agent_print(
    agent_bin: str,
    prompt: str,
    *,
    cwd: Path | str,
    mode: str = MODE_ASK,
    model: str | None = None,
    output_format: str = "text",
    force: bool = False,
    timeout_ms: int | None = None,
) -> str:
    args = build_print_args(prompt, mode=mode, model=model, output_format=output_format, force=force)
    result = await run_command(agent_bin, args, cwd=cwd, timeout_ms=timeout_ms)
    if not result.ok:
        raise AgentCliError(describe_failure("Cursor CLI", result, timeout_ms=timeout_ms))
    return result.stdout.strip()


async def agent_status(agent_bin: str, *, cwd: Path | str, timeout_ms: int = STATUS_TIMEOUT_MS) -> str:
    result = await run_command(agent_bin, ["status"], cwd=cwd, timeout_ms=timeout_ms)
    if not result.ok:
        raise AgentCliError(describe_failure("Cursor CLI status", result, timeout_ms=timeout_ms))
    return result.stdout.strip()
