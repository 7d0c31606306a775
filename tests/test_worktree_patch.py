from __future__ import annotations

import asyncio
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cursor_core import AgentCliError, GitCommandError, PreconditionError
from cursor_core import worktree
from cursor_core.worktree import (
    NO_CHANGES_MESSAGE,
    PatchOptions,
    build_patch_agent_args,
    find_repo_root,
    generate_patch,
    render_patch_envelope,
)


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture
def repo(tmp_path: Path, git_bin: str) -> Path:
    del git_bin
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "-q")
    (root / "README.md").write_text("hello\n", encoding="utf-8")
    _git(root, "add", "README.md")
    _git(root, "commit", "-q", "-m", "initial")
    return root.resolve()


@pytest.fixture
def recorded_temp_dirs(monkeypatch: pytest.MonkeyPatch) -> list[Path]:
    created: list[Path] = []
    real_mkdtemp = tempfile.mkdtemp

    def _mkdtemp(*args, **kwargs) -> str:
        path = real_mkdtemp(*args, **kwargs)
        created.append(Path(path))
        return path

    monkeypatch.setattr(worktree.tempfile, "mkdtemp", _mkdtemp)
    return created


def _assert_cleaned_up(repo: Path, temp_dirs: list[Path]) -> None:
    [temp_dir] = temp_dirs
    assert not temp_dir.exists()
    assert str(temp_dir) not in _git(repo, "worktree", "list")


def test_build_patch_agent_args() -> None:
    assert build_patch_agent_args("fix it", mode="agent", model=None) == [
        "--print",
        "--force",
        "--output-format",
        "text",
        "fix it",
    ]
    assert build_patch_agent_args("plan it", mode="plan", model="gpt-5.2") == [
        "--print",
        "--force",
        "--output-format",
        "text",
        "--mode",
        "plan",
        "--model",
        "gpt-5.2",
        "plan it",
    ]


def test_render_envelope_omits_empty_sections() -> None:
    assert render_patch_envelope(summary="", stdout="", stderr="", patch="") == (
        f"<cursor_cli_patch>\n<message>{NO_CHANGES_MESSAGE}</message>\n</cursor_cli_patch>"
    )
    assert render_patch_envelope(summary="M\ta.txt", stdout=" ok \n", stderr="", patch="diff --git a/a.txt b/a.txt") == (
        "<cursor_cli_patch>\n"
        "<summary>\nM\ta.txt\n</summary>\n"
        "<cursor_stdout>\nok\n</cursor_stdout>\n"
        "<patch>\ndiff --git a/a.txt b/a.txt\n</patch>\n"
        "</cursor_cli_patch>"
    )


def test_find_repo_root(repo: Path, tmp_path: Path) -> None:
    nested = repo / "pkg" / "sub"
    nested.mkdir(parents=True)
    assert asyncio.run(find_repo_root(nested)) == repo
    outside = tmp_path / "plain"
    outside.mkdir()
    assert asyncio.run(find_repo_root(outside)) is None


def test_patch_reports_new_file_and_cleans_up(repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]) -> None:
    agent = write_stub_agent('echo "created by agent" > generated.txt\necho "Added generated.txt"\necho "note" >&2\n')

    envelope = asyncio.run(generate_patch("add a file", PatchOptions(agent_bin=str(agent), repo_root=repo)))

    assert envelope.startswith("<cursor_cli_patch>\n<summary>\nA\tgenerated.txt\n</summary>\n")
    assert "<cursor_stdout>\nAdded generated.txt\n</cursor_stdout>" in envelope
    assert "<cursor_stderr>\nnote\n</cursor_stderr>" in envelope
    assert "<patch>\ndiff --git a/generated.txt b/generated.txt" in envelope
    assert "+created by agent" in envelope
    assert NO_CHANGES_MESSAGE not in envelope
    assert envelope.endswith("</patch>\n</cursor_cli_patch>")
    assert not (repo / "generated.txt").exists()
    assert _git(repo, "status", "--porcelain") == ""
    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_patch_includes_edits_to_tracked_files(repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]) -> None:
    agent = write_stub_agent('echo "more" >> README.md\n')

    envelope = asyncio.run(generate_patch("edit", PatchOptions(agent_bin=str(agent), repo_root=repo)))

    assert "<summary>\nM\tREADME.md\n</summary>" in envelope
    assert "+more" in envelope
    assert (repo / "README.md").read_text(encoding="utf-8") == "hello\n"
    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_patch_without_changes_returns_no_changes_envelope(
    repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]
) -> None:
    agent = write_stub_agent('echo "nothing to do"\n')

    envelope = asyncio.run(generate_patch("noop", PatchOptions(agent_bin=str(agent), repo_root=repo)))

    assert envelope == (
        "<cursor_cli_patch>\n"
        f"<message>{NO_CHANGES_MESSAGE}</message>\n"
        "<cursor_stdout>\nnothing to do\n</cursor_stdout>\n"
        "</cursor_cli_patch>"
    )
    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_patch_agent_failure_raises_and_cleans_up(repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]) -> None:
    agent = write_stub_agent('echo "partial" > half.txt\necho "model unavailable" >&2\nexit 3\n')

    with pytest.raises(AgentCliError, match=r"Cursor CLI inside worktree failed \(exit 3\): model unavailable"):
        asyncio.run(generate_patch("fail", PatchOptions(agent_bin=str(agent), repo_root=repo)))

    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_patch_refuses_dirty_tree_before_creating_worktree(
    repo: Path, write_stub_agent, monkeypatch: pytest.MonkeyPatch
) -> None:
    agent = write_stub_agent("exit 0\n")
    (repo / "README.md").write_text("dirty\n", encoding="utf-8")

    def _unexpected_mkdtemp(*_args, **_kwargs) -> str:
        raise AssertionError("worktree must not be created for a dirty tree")

    monkeypatch.setattr(worktree.tempfile, "mkdtemp", _unexpected_mkdtemp)

    with pytest.raises(PreconditionError, match="Working tree is not clean"):
        asyncio.run(generate_patch("x", PatchOptions(agent_bin=str(agent), repo_root=repo)))


def test_patch_allow_dirty_uses_committed_head(repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]) -> None:
    agent = write_stub_agent("cat README.md\n")
    (repo / "README.md").write_text("dirty\n", encoding="utf-8")

    envelope = asyncio.run(
        generate_patch("x", PatchOptions(agent_bin=str(agent), repo_root=repo, allow_dirty=True))
    )

    assert "<cursor_stdout>\nhello\n</cursor_stdout>" in envelope
    assert NO_CHANGES_MESSAGE in envelope
    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_patch_keep_temp_leaves_worktree(repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]) -> None:
    agent = write_stub_agent('echo "x" > kept.txt\n')

    asyncio.run(generate_patch("x", PatchOptions(agent_bin=str(agent), repo_root=repo, keep_temp=True)))

    [temp_dir] = recorded_temp_dirs
    try:
        assert (temp_dir / "kept.txt").exists()
        assert str(temp_dir) in _git(repo, "worktree", "list")
    finally:
        _git(repo, "worktree", "remove", "--force", str(temp_dir))


def test_patch_requires_repo_root(write_stub_agent) -> None:
    agent = write_stub_agent("exit 0\n")
    with pytest.raises(PreconditionError, match="requires a git repository"):
        asyncio.run(generate_patch("x", PatchOptions(agent_bin=str(agent), repo_root=None)))


def test_patch_reports_binary_deleted_and_renamed_files(
    repo: Path, write_stub_agent, recorded_temp_dirs: list[Path]
) -> None:
    (repo / "gone.txt").write_text("remove me\n", encoding="utf-8")
    (repo / "old.txt").write_text("moved content\nsecond line\n", encoding="utf-8")
    _git(repo, "add", "gone.txt", "old.txt")
    _git(repo, "commit", "-q", "-m", "more files")
    agent = write_stub_agent("printf '\\000\\001\\002\\377' > blob.bin\nrm gone.txt\nmv old.txt new.txt\n")

    envelope = asyncio.run(generate_patch("shuffle", PatchOptions(agent_bin=str(agent), repo_root=repo)))

    summary = envelope.split("<summary>\n", 1)[1].split("\n</summary>", 1)[0]
    assert sorted(summary.splitlines()) == ["A\tblob.bin", "D\tgone.txt", "R100\told.txt\tnew.txt"]
    assert "GIT binary patch" in envelope
    assert "diff --git a/gone.txt b/gone.txt\ndeleted file mode" in envelope
    assert "-remove me" in envelope
    assert "rename from old.txt\nrename to new.txt" in envelope
    assert (repo / "gone.txt").exists()
    assert (repo / "old.txt").exists()
    assert _git(repo, "status", "--porcelain") == ""
    _assert_cleaned_up(repo, recorded_temp_dirs)


def test_failed_worktree_registration_still_removes_temp_dir(
    tmp_path: Path, git_bin: str, write_stub_agent, recorded_temp_dirs: list[Path]
) -> None:
    del git_bin
    empty_repo = tmp_path / "empty"
    empty_repo.mkdir()
    _git(empty_repo, "init", "-q")
    agent = write_stub_agent("exit 0\n")

    with pytest.raises(GitCommandError, match="git worktree add failed") as excinfo:
        asyncio.run(generate_patch("x", PatchOptions(agent_bin=str(agent), repo_root=empty_repo.resolve())))

    assert "HEAD" in str(excinfo.value)
    [temp_dir] = recorded_temp_dirs
    assert not temp_dir.exists()
