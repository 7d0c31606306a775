from __future__ import annotations

import logging
import shutil
import tempfile
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from cursor_core.agent_cli import describe_failure
from cursor_core.config import DEFAULT_AGENT_BIN, IMPLICIT_CLI_MODE, MODE_AGENT
from cursor_core.errors import AgentCliError, GitCommandError, PreconditionError, SpawnError
from cursor_core.process import RunResult, run_command


LOGGER = logging.getLogger("cursor_core.worktree")
LOGGER.addHandler(logging.NullHandler())

GIT_STATUS_TIMEOUT_MS = 30_000
GIT_TIMEOUT_MS = 60_000
TEMP_DIR_PREFIX = "cursor-worktree-"
ENVELOPE_TAG = "cursor_cli_patch"
NO_CHANGES_MESSAGE = "Cursor completed, but produced no git diff (no changes)."


@dataclass(frozen=True)
class PatchOptions:
    agent_bin: str = DEFAULT_AGENT_BIN
    repo_root: Path | None = None
    model: str | None = None
    mode: str = MODE_AGENT
    allow_dirty: bool = False
    keep_temp: bool = False
    timeout_ms: int | None = None


@dataclass
class WorktreeSession:
    temp_dir: Path
    repo_root: Path
    created_worktree: bool = False


def _git_output(result: RunResult) -> str:
    return result.stderr.strip() or result.stdout.strip()


async def _git(args: list[str], *, cwd: Path, timeout_ms: int = GIT_TIMEOUT_MS) -> RunResult:
    return await run_command("git", args, cwd=cwd, timeout_ms=timeout_ms)


async def _git_checked(args: list[str], *, cwd: Path, timeout_ms: int = GIT_TIMEOUT_MS) -> RunResult:
    result = await _git(args, cwd=cwd, timeout_ms=timeout_ms)
    if not result.ok:
        label = " ".join(["git", *args[:2]])
        raise GitCommandError(f"{label} failed.\n{_git_output(result)}")
    return result


async def find_repo_root(cwd: Path | str) -> Path | None:
    try:
        result = await _git(["rev-parse", "--show-toplevel"], cwd=Path(cwd), timeout_ms=GIT_STATUS_TIMEOUT_MS)
    except SpawnError as exc:
        LOGGER.debug("Unable to run git in %s: %s", cwd, exc)
        return None
    if not result.ok:
        return None
    top_level = result.stdout.strip()
    return Path(top_level) if top_level else None


async def ensure_clean_tree(repo_root: Path, *, allow_dirty: bool) -> None:
    status = await _git(["status", "--porcelain"], cwd=repo_root, timeout_ms=GIT_STATUS_TIMEOUT_MS)
    if not status.ok:
        raise GitCommandError(f"git status failed.\n{_git_output(status)}")
    if not allow_dirty and status.stdout.strip():
        raise PreconditionError("Working tree is not clean. Commit/stash changes (or pass allowDirty=true).")


async def _deregister_worktree(session: WorktreeSession) -> None:
    removed = await _git(["worktree", "remove", str(session.temp_dir)], cwd=session.repo_root)
    if removed.ok:
        return
    forced = await _git(["worktree", "remove", "--force", str(session.temp_dir)], cwd=session.repo_root)
    if not forced.ok:
        LOGGER.warning(
            "Unable to deregister worktree %s: %s",
            session.temp_dir,
            _git_output(forced),
            extra={"component": "worktree", "operation": "cleanup", "result": "failed"},
        )


async def _remove_worktree(session: WorktreeSession) -> None:
    if session.created_worktree:
        try:
            await _deregister_worktree(session)
        except SpawnError as exc:
            LOGGER.warning(
                "Unable to run git to deregister worktree %s: %s",
                session.temp_dir,
                exc,
                extra={"component": "worktree", "operation": "cleanup", "result": "failed", "error_class": "SpawnError"},
            )
    shutil.rmtree(session.temp_dir, ignore_errors=True)


@asynccontextmanager
async def worktree_session(repo_root: Path, *, keep_temp: bool = False) -> AsyncIterator[WorktreeSession]:
    """Register a detached worktree at HEAD in a fresh temp directory.

    The worktree entry and the directory are removed on every exit path
    unless ``keep_temp`` is set.
    """
    session = WorktreeSession(temp_dir=Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX)), repo_root=repo_root)
    try:
        await _git_checked(["worktree", "add", "--detach", str(session.temp_dir), "HEAD"], cwd=repo_root)
        session.created_worktree = True
        yield session
    finally:
        if keep_temp:
            LOGGER.info(
                "Keeping temporary worktree %s",
                session.temp_dir,
                extra={"component": "worktree", "operation": "cleanup", "result": "kept"},
            )
        else:
            await _remove_worktree(session)


def build_patch_agent_args(prompt: str, *, mode: str, model: str | None) -> list[str]:
    args = ["--print", "--force", "--output-format", "text"]
    if mode != IMPLICIT_CLI_MODE:
        args.extend(["--mode", mode])
    if model:
        args.extend(["--model", model])
    args.append(prompt)
    return args


def _section(tag: str, body: str) -> str:
    if not body:
        return ""
    return f"<{tag}>\n{body}\n</{tag}>"


def render_patch_envelope(*, summary: str, stdout: str, stderr: str, patch: str) -> str:
    parts = [f"<{ENVELOPE_TAG}>"]
    if not patch:
        parts.append(f"<message>{NO_CHANGES_MESSAGE}</message>")
    parts.append(_section("summary", summary))
    parts.append(_section("cursor_stdout", stdout.strip()))
    parts.append(_section("cursor_stderr", stderr.strip()))
    if patch:
        parts.extend(["<patch>", patch, "</patch>"])
    parts.append(f"</{ENVELOPE_TAG}>")
    return "\n".join(part for part in parts if part)


async def collect_worktree_diff(worktree: Path) -> tuple[str, str]:
    """Return ``(patch, name_status_summary)`` for the worktree.

    Untracked files are marked intent-to-add so they appear as additions;
    deletions and renames come straight from the working tree.
    """
    untracked = await _git_checked(["ls-files", "-z", "--others", "--exclude-standard"], cwd=worktree)
    paths = [path for path in untracked.stdout.split("\0") if path]
    if paths:
        # Intent-to-add only; deletions must stay unstaged to show up in the diff.
        await _git_checked(["add", "-N", "--", *paths], cwd=worktree)
    diff = await _git_checked(["diff", "--patch", "--binary", "--find-renames"], cwd=worktree)
    name_status = await _git(["diff", "--name-status", "--find-renames"], cwd=worktree)
    summary = name_status.stdout.strip() if name_status.ok else ""
    return diff.stdout.rstrip(), summary


async def generate_patch(prompt: str, options: PatchOptions) -> str:
    if options.repo_root is None:
        raise PreconditionError("cursor_cli_patch requires a git repository (no worktree detected).")
    repo_root = Path(options.repo_root)
    started = time.monotonic()
    await ensure_clean_tree(repo_root, allow_dirty=options.allow_dirty)

    async with worktree_session(repo_root, keep_temp=options.keep_temp) as session:
        result = await run_command(
            options.agent_bin,
            build_patch_agent_args(prompt, mode=options.mode, model=options.model),
            cwd=session.temp_dir,
            timeout_ms=options.timeout_ms,
        )
        if not result.ok:
            raise AgentCliError(describe_failure("Cursor CLI inside worktree", result, timeout_ms=options.timeout_ms))
        patch, summary = await collect_worktree_diff(session.temp_dir)

    LOGGER.info(
        "Generated patch for %s (%s bytes)",
        repo_root,
        len(patch),
        extra={
            "component": "worktree",
            "operation": "generate_patch",
            "result": "changes" if patch else "no_changes",
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return render_patch_envelope(summary=summary, stdout=result.stdout, stderr=result.stderr, patch=patch)
