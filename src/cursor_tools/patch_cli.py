from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from pathlib import Path

import click

from cursor_core import logging as core_logging
from cursor_core.config import AGENT_BIN_ENV_KEYS, DEFAULT_AGENT_BIN, MODE_AGENT, MODE_CHOICES
from cursor_core.errors import TypedCursorError
from cursor_core.shared import first_env
from cursor_core.worktree import PatchOptions, find_repo_root, generate_patch


async def _run(prompt: str, options: PatchOptions, cwd: Path) -> str:
    repo_root = await find_repo_root(cwd)
    return await generate_patch(prompt, replace(options, repo_root=repo_root))


@click.command(help="Run the Cursor agent in a temporary git worktree and print the resulting patch envelope.")
@click.argument("prompt")
@click.option("--agent-bin", default=None, show_default="CURSOR_AGENT_BIN or agent", help="Cursor agent executable.")
@click.option("--model", default=None, help="Cursor model ID (e.g. gpt-5.2).")
@click.option("--mode", default=MODE_AGENT, show_default=True, type=click.Choice(MODE_CHOICES, case_sensitive=False))
@click.option("--allow-dirty", is_flag=True, default=False, help="Run even when the repository has uncommitted changes.")
@click.option("--keep-temp", is_flag=True, default=False, help="Keep the temporary worktree directory for debugging.")
@click.option("--timeout-ms", default=None, type=click.IntRange(min=1), help="Timeout for the Cursor agent call.")
@click.option(
    "--log-level",
    default="warning",
    show_default=True,
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
)
def main(
    prompt: str,
    agent_bin: str | None,
    model: str | None,
    mode: str,
    allow_dirty: bool,
    keep_temp: bool,
    timeout_ms: int | None,
    log_level: str,
) -> None:
    core_logging.configure_package_loggers("cursor_core", level=log_level)
    options = PatchOptions(
        agent_bin=agent_bin or first_env(os.environ, *AGENT_BIN_ENV_KEYS) or DEFAULT_AGENT_BIN,
        model=model,
        mode=mode.lower(),
        allow_dirty=allow_dirty,
        keep_temp=keep_temp,
        timeout_ms=timeout_ms,
    )
    try:
        envelope = asyncio.run(_run(prompt, options, Path.cwd()))
    except TypedCursorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(envelope)


if __name__ == "__main__":
    main()
