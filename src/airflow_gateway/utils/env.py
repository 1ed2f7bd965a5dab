"""Environment variable substitution for file-based configuration."""

from __future__ import annotations

import os
import re
from typing import Any

_MAX_ENV_VAR_DEPTH = 20

# ${VAR} or $VAR; names restricted to safe identifiers.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def _substitute(value: str) -> str:
    def replace(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_PATTERN.sub(replace, value)


def substitute_env_vars(obj: Any, _depth: int = 0) -> Any:
    """Recursively substitute environment variables in strings.

    Unknown variables are left untouched so a missing secret shows up as the
    literal ``${NAME}`` rather than an empty string.
    """
    if _depth > _MAX_ENV_VAR_DEPTH:
        return obj
    if isinstance(obj, str):
        return _substitute(obj)
    if isinstance(obj, dict):
        return {k: substitute_env_vars(v, _depth + 1) for k, v in obj.items()}
    if isinstance(obj, list):
        return [substitute_env_vars(item, _depth + 1) for item in obj]
    return obj
