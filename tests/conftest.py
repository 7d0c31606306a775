from __future__ import annotations

import shutil
import stat
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture
def write_stub_agent(tmp_path: Path):
    """Return a factory writing an executable /bin/sh script that stands in for the agent CLI."""
    if not Path("/bin/sh").exists():
        pytest.skip("requires /bin/sh")

    def _write(body: str, name: str = "agent") -> Path:
        script = tmp_path / "bin" / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _write


@pytest.fixture
def git_bin() -> str:
    path = shutil.which("git")
    if path is None:
        pytest.skip("requires git")
    return path
