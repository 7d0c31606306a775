from __future__ import annotations

import tempfile
from pathlib import Path


def default_cursor_bridge_data_dir(home: Path | None = None) -> Path:
    try:
        resolved_home = (home or Path.home()).expanduser()
    except RuntimeError:
        return Path(tempfile.gettempdir()) / "cursor-bridge"
    return resolved_home / ".local" / "share" / "cursor-bridge"


def bridge_pid_file(data_dir: Path | None = None) -> Path:
    return (data_dir or default_cursor_bridge_data_dir()) / "bridge.pid"
