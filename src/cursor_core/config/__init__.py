from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from cursor_core.errors import ConfigError
from cursor_core.logging import LOG_LEVEL_CHOICES, normalize_log_level
from cursor_core.shared import env_bool, env_number, first_env, normalize_model_id


MODE_AGENT = "agent"
MODE_ASK = "ask"
MODE_PLAN = "plan"
MODE_CHOICES = (MODE_AGENT, MODE_ASK, MODE_PLAN)
# The CLI runs in agent mode when --mode is omitted.
IMPLICIT_CLI_MODE = MODE_AGENT
DEFAULT_BRIDGE_MODE = MODE_ASK

DEFAULT_AGENT_BIN = "agent"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_MODEL = "auto"
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_LOG_LEVEL = "info"

AGENT_BIN_ENV_KEYS = ("CURSOR_AGENT_BIN", "CURSOR_CLI_BIN", "CURSOR_CLI_PATH")

_FILE_SECTION = "bridge"
_FILE_KEYS = (
    "agent_bin",
    "host",
    "port",
    "api_key",
    "default_model",
    "mode",
    "force",
    "approve_mcps",
    "strict_model",
    "workspace",
    "timeout_ms",
    "log_level",
)


@dataclass(frozen=True)
class BridgeConfig:
    agent_bin: str = DEFAULT_AGENT_BIN
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    api_key: str | None = None
    default_model: str = DEFAULT_MODEL
    mode: str = DEFAULT_BRIDGE_MODE
    force: bool = False
    approve_mcps: bool = False
    strict_model: bool = True
    workspace: Path = Path(".")
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    log_level: str = DEFAULT_LOG_LEVEL

    def with_overrides(self, **overrides: Any) -> "BridgeConfig":
        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return replace(self, **values)

    def summary(self) -> dict[str, Any]:
        return {
            "workspace": str(self.workspace),
            "mode": self.mode,
            "defaultModel": self.default_model,
            "force": self.force,
            "approveMcps": self.approve_mcps,
            "strictModel": self.strict_model,
        }


def normalize_mode(raw: object) -> str:
    mode = str(raw or "").strip().lower()
    if mode in MODE_CHOICES:
        return mode
    return DEFAULT_BRIDGE_MODE


def parse_mode(value: object, *, label: str) -> str:
    if not isinstance(value, str) or value.strip().lower() not in MODE_CHOICES:
        raise ConfigError(f"{label} must be one of: {', '.join(MODE_CHOICES)}.")
    return value.strip().lower()


def _ensure_str(value: object, *, label: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value


def _ensure_bool(value: object, *, label: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{label} must be a boolean.")
    return value


def _ensure_positive_int(value: object, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{label} must be a positive integer.")
    return value


def _parse_file_section(raw: Mapping[str, Any]) -> dict[str, Any]:
    section = raw.get(_FILE_SECTION)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"section '{_FILE_SECTION}' must be a table/object.")
    unknown = sorted(key for key in section if key not in _FILE_KEYS)
    if unknown:
        raise ConfigError(f"Unknown keys in section '{_FILE_SECTION}': " + ", ".join(unknown))

    values: dict[str, Any] = {}
    for key in ("agent_bin", "host", "api_key"):
        if key in section:
            values[key] = _ensure_str(section[key], label=f"{_FILE_SECTION}.{key}")
    for key in ("port", "timeout_ms"):
        if key in section:
            values[key] = _ensure_positive_int(section[key], label=f"{_FILE_SECTION}.{key}")
    for key in ("force", "approve_mcps", "strict_model"):
        if key in section:
            values[key] = _ensure_bool(section[key], label=f"{_FILE_SECTION}.{key}")
    if "default_model" in section:
        values["default_model"] = (
            normalize_model_id(_ensure_str(section["default_model"], label=f"{_FILE_SECTION}.default_model"))
            or DEFAULT_MODEL
        )
    if "mode" in section:
        values["mode"] = parse_mode(section["mode"], label=f"{_FILE_SECTION}.mode")
    if "workspace" in section:
        workspace = _ensure_str(section["workspace"], label=f"{_FILE_SECTION}.workspace")
        values["workspace"] = Path(workspace).expanduser().resolve()
    if "log_level" in section:
        level = _ensure_str(section["log_level"], label=f"{_FILE_SECTION}.log_level").strip().lower()
        if level not in LOG_LEVEL_CHOICES:
            raise ConfigError(f"{_FILE_SECTION}.log_level must be one of: {', '.join(LOG_LEVEL_CHOICES)}.")
        values["log_level"] = level
    return values


def load_config_file(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
    return _parse_file_section(parsed)


def _parse_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    agent_bin = first_env(environ, *AGENT_BIN_ENV_KEYS)
    if agent_bin:
        values["agent_bin"] = agent_bin
    if environ.get("CURSOR_BRIDGE_HOST"):
        values["host"] = environ["CURSOR_BRIDGE_HOST"]
    if "CURSOR_BRIDGE_PORT" in environ:
        port = env_number(environ, "CURSOR_BRIDGE_PORT", DEFAULT_PORT)
        values["port"] = port if port > 0 else DEFAULT_PORT
    if "CURSOR_BRIDGE_API_KEY" in environ:
        values["api_key"] = environ["CURSOR_BRIDGE_API_KEY"] or None
    if "CURSOR_BRIDGE_DEFAULT_MODEL" in environ:
        values["default_model"] = normalize_model_id(environ["CURSOR_BRIDGE_DEFAULT_MODEL"]) or DEFAULT_MODEL
    if "CURSOR_BRIDGE_MODE" in environ:
        values["mode"] = normalize_mode(environ["CURSOR_BRIDGE_MODE"])
    for key, name in (
        ("force", "CURSOR_BRIDGE_FORCE"),
        ("approve_mcps", "CURSOR_BRIDGE_APPROVE_MCPS"),
        ("strict_model", "CURSOR_BRIDGE_STRICT_MODEL"),
    ):
        if name in environ:
            values[key] = env_bool(environ, name, getattr(BridgeConfig, key))
    if environ.get("CURSOR_BRIDGE_WORKSPACE"):
        values["workspace"] = Path(environ["CURSOR_BRIDGE_WORKSPACE"]).expanduser().resolve()
    if "CURSOR_BRIDGE_TIMEOUT_MS" in environ:
        values["timeout_ms"] = env_number(environ, "CURSOR_BRIDGE_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)
    if "CURSOR_BRIDGE_LOG_LEVEL" in environ:
        values["log_level"] = normalize_log_level(environ["CURSOR_BRIDGE_LOG_LEVEL"])
    return values


def load_bridge_config(
    environ: Mapping[str, str] | None = None,
    *,
    config_file: str | Path | None = None,
) -> BridgeConfig:
    """Build the bridge configuration.

    Environment variables win over the optional TOML file, which wins over the
    built-in defaults. The workspace defaults to the current directory.
    """
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {"workspace": Path.cwd().resolve()}
    if config_file is not None:
        values.update(load_config_file(config_file))
    values.update(_parse_environ(env))
    return BridgeConfig(**values)


__all__ = [
    "AGENT_BIN_ENV_KEYS",
    "BridgeConfig",
    "DEFAULT_AGENT_BIN",
    "DEFAULT_BRIDGE_MODE",
    "DEFAULT_HOST",
    "DEFAULT_MODEL",
    "DEFAULT_PORT",
    "DEFAULT_TIMEOUT_MS",
    "IMPLICIT_CLI_MODE",
    "MODE_AGENT",
    "MODE_ASK",
    "MODE_CHOICES",
    "MODE_PLAN",
    "load_bridge_config",
    "load_config_file",
    "normalize_mode",
    "parse_mode",
]
