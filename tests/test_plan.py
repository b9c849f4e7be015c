from __future__ import annotations

import pytest

from claude_pipe.core.plan import detect_plan, get_plan_action, has_plan_language


@pytest.mark.parametrize(
    "text",
    [
        "I'll update the config loader to read env vars.",
        "I will create a new module for parsing.",
        "Here's my plan for the refactor.",
        "Step 1: read the file. Step 2: patch it.",
        "Phase 2 covers the migration.",
    ],
)
def test_plan_language_is_detected(text: str) -> None:
    assert has_plan_language(text)


@pytest.mark.parametrize(
    "text",
    [
        "The function returns a list of strings.",
        "There are three files in src/.",
        "",
    ],
)
def test_plain_answers_are_not_plans(text: str) -> None:
    assert not has_plan_language(text)


def test_detect_plan_uses_tools_and_text() -> None:
    assert detect_plan("nothing special", ["Edit"])
    assert detect_plan("nothing special", ["Bash"])
    assert detect_plan("I'll fix the bug", [])
    assert not detect_plan("The answer is 42.", ["Read", "Grep"])


@pytest.mark.parametrize(
    ("text", "tools", "mode", "expected"),
    [
        ("I'll edit main.py", ["Edit"], "bypassPermissions", "respond"),
        ("I'll edit main.py", ["Edit"], "default", "ask_approval"),
        ("I'll edit main.py", [], "plan", "ask_approval"),
        ("The answer is 42.", ["Read"], "default", "respond"),
        ("I'll edit main.py", ["Edit"], "autoEditApprove", "auto_execute"),
        ("I'll run the tests", ["Bash"], "autoEditApprove", "ask_approval"),
        ("The answer is 42.", [], "autoEditApprove", "respond"),
    ],
)
def test_get_plan_action(text: str, tools: list[str], mode: str, expected: str) -> None:
    assert get_plan_action(text, tools, mode) == expected  # type: ignore[arg-type]
