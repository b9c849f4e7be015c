from __future__ import annotations

from claude_pipe.core.env_filter import filter_env_for_child
from claude_pipe.core.permissions import (
    BYPASS_FLAG,
    PERMISSION_FLAG,
    apply_permission_mode,
    current_permission_mode,
)

BASE_ARGS = [
    "--print",
    "--output-format",
    "stream-json",
    "--permission-mode",
    "bypassPermissions",
    "--dangerously-skip-permissions",
]


def test_apply_plan_mode_drops_bypass_flag() -> None:
    args = apply_permission_mode(BASE_ARGS, "plan")

    assert args.count(PERMISSION_FLAG) == 1
    assert args[args.index(PERMISSION_FLAG) + 1] == "plan"
    assert BYPASS_FLAG not in args
    assert args[:3] == ["--print", "--output-format", "stream-json"]


def test_apply_bypass_mode_adds_flag_once() -> None:
    args = apply_permission_mode(["--print"], "bypassPermissions")

    assert args == ["--print", PERMISSION_FLAG, "bypassPermissions", BYPASS_FLAG]


def test_apply_is_idempotent_and_does_not_mutate_input() -> None:
    original = list(BASE_ARGS)
    once = apply_permission_mode(BASE_ARGS, "autoEditApprove")
    twice = apply_permission_mode(once, "autoEditApprove")

    assert once == twice
    assert BASE_ARGS == original
    assert once[once.index(PERMISSION_FLAG) + 1] == "acceptEdits"


def test_current_permission_mode_reads_cli_names() -> None:
    assert current_permission_mode(BASE_ARGS) == "bypassPermissions"
    assert current_permission_mode(["--permission-mode", "acceptEdits"]) == "autoEditApprove"
    assert current_permission_mode(["--print"]) == "default"
    assert current_permission_mode(["--permission-mode"]) == "default"


def test_filter_env_for_child_keeps_only_allowed_keys() -> None:
    env = {
        "PATH": "/usr/bin",
        "HOME": "/home/me",
        "LC_ALL": "C.UTF-8",
        "ANTHROPIC_API_KEY": "sk-ant",
        "TELEGRAM_BOT_TOKEN": "secret",
        "CLAUDEPIPE_ADMIN_IDS": "1",
        "AWS_SECRET_ACCESS_KEY": "nope",
    }

    filtered = filter_env_for_child(env)

    assert filtered == {
        "PATH": "/usr/bin",
        "HOME": "/home/me",
        "LC_ALL": "C.UTF-8",
        "ANTHROPIC_API_KEY": "sk-ant",
    }
