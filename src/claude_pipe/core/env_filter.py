"""Environment filtering for child CLI processes.

Bot tokens and internal configuration must not leak into spawned agent
processes, so children only ever receive an allow-listed copy.
"""

from __future__ import annotations

from collections.abc import Mapping

ALLOWED_PREFIXES: tuple[str, ...] = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "LANG",
    "LC_",
    "TERM",
    "SHELL",
    "TMPDIR",
    "TMP",
    "TEMP",
    "XDG_",
    "NODE_",
    "NPM_",
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
)
DENIED_PREFIXES: tuple[str, ...] = ("CLAUDEPIPE_",)


def _matches_any(key: str, prefixes: tuple[str, ...]) -> bool:
    return any(key == prefix or key.startswith(prefix) for prefix in prefixes)


def filter_env_for_child(env: Mapping[str, str]) -> dict[str, str]:
    """Return only the variables that are safe to hand to a child process."""

    filtered: dict[str, str] = {}
    for key, value in env.items():
        if _matches_any(key, DENIED_PREFIXES):
            continue
        if _matches_any(key, ALLOWED_PREFIXES):
            filtered[key] = value
    return filtered
