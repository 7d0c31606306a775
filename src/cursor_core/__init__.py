from __future__ import annotations

from .config import BridgeConfig, load_bridge_config
from .errors import (
    AgentCliError,
    CloudApiError,
    ConfigError,
    GitCommandError,
    PreconditionError,
    SpawnError,
    TypedCursorError,
)
from .process import RunResult, run_command

__all__ = [
    "AgentCliError",
    "BridgeConfig",
    "CloudApiError",
    "ConfigError",
    "GitCommandError",
    "PreconditionError",
    "RunResult",
    "SpawnError",
    "TypedCursorError",
    "load_bridge_config",
    "run_command",
]
