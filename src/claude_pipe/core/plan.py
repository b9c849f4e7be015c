"""Plan detection and approval policy for plan-mode turns."""

from __future__ import annotations

import re
from collections.abc import Iterable

from claude_pipe.core.types import PermissionMode, PlanAction

WRITE_TOOLS: frozenset[str] = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit", "ExitPlanMode"})
DANGEROUS_TOOLS: frozenset[str] = frozenset({"Bash"})

_APOSTROPHE = "['’]"
_CHANGE_VERBS = (
    "create|modify|update|delete|remove|write|edit|add|change|rename|move|"
    "replace|refactor|implement|install|run|execute|fix|rewrite"
)
PLAN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        rf"\bI(?:{_APOSTROPHE}ll| will| want to|{_APOSTROPHE}d like to| need to)\s+(?:{_CHANGE_VERBS})\b",
        re.IGNORECASE,
    ),
    re.compile(rf"\bhere(?:{_APOSTROPHE}s| is) (?:my|the)(?: [\w-]+)? plan\b", re.IGNORECASE),
    re.compile(r"\bstep\s+\d+\b", re.IGNORECASE),
    re.compile(r"\bphase\s+\d+\b", re.IGNORECASE),
)


def has_plan_language(text: str) -> bool:
    return any(pattern.search(text) for pattern in PLAN_PATTERNS)


def uses_write_tools(tools: Iterable[str]) -> bool:
    return any(tool in WRITE_TOOLS for tool in tools)


def uses_dangerous_tools(tools: Iterable[str]) -> bool:
    return any(tool in DANGEROUS_TOOLS for tool in tools)


def detect_plan(text: str, tools: Iterable[str]) -> bool:
    """Return whether a plan-mode turn proposed changes that need a decision."""

    tool_list = list(tools)
    if uses_write_tools(tool_list) or uses_dangerous_tools(tool_list):
        return True
    return has_plan_language(text)


def get_plan_action(text: str, tools: Iterable[str], mode: PermissionMode) -> PlanAction:
    """Map a plan-mode outcome to what the orchestrator should do next."""

    if mode == "bypassPermissions":
        return "respond"

    tool_list = list(tools)
    wants_changes = uses_write_tools(tool_list) or has_plan_language(text)
    if mode == "autoEditApprove":
        if uses_dangerous_tools(tool_list):
            return "ask_approval"
        if wants_changes:
            return "auto_execute"
        return "respond"

    if wants_changes:
        return "ask_approval"
    return "respond"
