from __future__ import annotations

import math
from collections.abc import Mapping

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def env_number(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    if not math.isfinite(value):
        return default
    return int(value)


def first_env(environ: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


def normalize_model_id(raw: str | None) -> str | None:
    """Reduce ``provider/model`` identifiers to the bare model id."""
    if not raw:
        return None
    trimmed = str(raw).strip()
    if not trimmed:
        return None
    return trimmed.split("/")[-1] or None
