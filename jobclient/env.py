"""Environment variable expansion for manifests and config files.

Supports ``${VAR}``, ``${VAR:-fallback}`` and bare ``$VAR`` references.
``.env`` files are loaded through python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env", "expand_env_string", "load_env_file"]

_REFERENCE = re.compile(
    r"\$\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}"
    r"|\$(?P<bare>[A-Za-z_][A-Za-z0-9_]*)"
)


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load a ``.env`` file into ``os.environ``.

    Returns:
        True if a file was found and loaded
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_string(
    value: str,
    *,
    environ: Optional[Mapping[str, str]] = None,
    strict: bool = False,
) -> str:
    """Replace variable references in one string.

    Unset variables without a fallback are left as written, or raise
    KeyError when ``strict`` is set.
    """
    env = os.environ if environ is None else environ

    def substitute(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("bare")
        if name in env:
            return env[name]
        fallback = match.group("fallback")
        if fallback is not None:
            return fallback
        if strict:
            raise KeyError(f"Environment variable not set: {name}")
        return match.group(0)

    return _REFERENCE.sub(substitute, value)


def expand_env(
    value: Any,
    *,
    environ: Optional[Mapping[str, str]] = None,
    strict: bool = False,
) -> Any:
    """Recursively expand references in strings nested in dicts and lists."""
    if isinstance(value, str):
        return expand_env_string(value, environ=environ, strict=strict)
    if isinstance(value, dict):
        return {k: expand_env(v, environ=environ, strict=strict) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(item, environ=environ, strict=strict) for item in value]
    return value
