"""Permission-mode handling for agent CLI argument lists."""

from __future__ import annotations

from collections.abc import Sequence

from claude_pipe.core.types import PermissionMode

PERMISSION_FLAG = "--permission-mode"
BYPASS_FLAG = "--dangerously-skip-permissions"

# The approval policy name differs from what the Claude CLI accepts.
_CLI_MODE_NAMES: dict[PermissionMode, str] = {
    "default": "default",
    "plan": "plan",
    "autoEditApprove": "acceptEdits",
    "bypassPermissions": "bypassPermissions",
}


def cli_mode_name(mode: PermissionMode) -> str:
    return _CLI_MODE_NAMES[mode]


def current_permission_mode(args: Sequence[str]) -> PermissionMode:
    """Read the permission mode encoded in an argument list."""

    values = list(args)
    if PERMISSION_FLAG not in values:
        return "default"
    index = values.index(PERMISSION_FLAG)
    if index + 1 >= len(values):
        return "default"
    raw = values[index + 1]
    for mode, cli_name in _CLI_MODE_NAMES.items():
        if raw in (mode, cli_name):
            return mode
    return "default"


def apply_permission_mode(args: Sequence[str], mode: PermissionMode) -> list[str]:
    """Return a copy of ``args`` carrying exactly one permission-mode pair.

    The bypass flag is present only for ``bypassPermissions``. Applying the
    same mode twice yields the same list.
    """

    result: list[str] = []
    skip_next = False
    for index, token in enumerate(args):
        if skip_next:
            skip_next = False
            continue
        if token == PERMISSION_FLAG:
            skip_next = index + 1 < len(args)
            continue
        if token == BYPASS_FLAG:
            continue
        result.append(token)

    result.extend([PERMISSION_FLAG, cli_mode_name(mode)])
    if mode == "bypassPermissions":
        result.append(BYPASS_FLAG)
    return result
