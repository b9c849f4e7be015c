from __future__ import annotations

from pathlib import Path

import pytest

from claude_pipe.core.commands import (
    PERMISSION_DENIED_TEXT,
    CommandHandler,
    CommandRegistry,
    RuntimeStatus,
    parse_command_words,
    register_builtin_commands,
)
from claude_pipe.core.session_store import SessionStore
from claude_pipe.core.types import PermissionMode


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.store = SessionStore(tmp_path / "sessions.json")
        self.mode: PermissionMode = "default"
        self.new_sessions: list[str] = []
        registry = register_builtin_commands(
            CommandRegistry(),
            store=self.store,
            start_new_session=self.start_new_session,
            get_mode=lambda: self.mode,
            set_mode=self.set_mode,
            get_status=lambda: RuntimeStatus(provider="claude", model="m", workspace="/ws", channels=["cli"]),
        )
        self.handler = CommandHandler(registry, admin_ids=["admin"])

    async def start_new_session(self, key: str) -> None:
        self.new_sessions.append(key)
        self.store.clear(key)

    def set_mode(self, mode: PermissionMode) -> None:
        self.mode = mode

    async def run(self, text: str, sender_id: str = "u1"):
        return await self.handler.execute(text, "telegram", "42", sender_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["/new", "/reset", "/session new", "/session_new", "/NEW@my_bot"])
async def test_new_session_forms(tmp_path: Path, text: str) -> None:
    harness = Harness(tmp_path)
    harness.store.set("telegram:42", "S1")

    result = await harness.run(text)

    assert result is not None
    assert not result.error
    assert harness.new_sessions == ["telegram:42"]
    assert harness.store.get("telegram:42") is None


@pytest.mark.asyncio
async def test_session_info_reports_stored_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    assert (await harness.run("/session info")).content == "No active session for this chat."

    harness.store.set("telegram:42", "S1", "refactor parser")
    result = await harness.run("/session_info")

    assert "S1" in result.content
    assert "refactor parser" in result.content


@pytest.mark.asyncio
async def test_admin_commands_require_admin(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    denied = await harness.run("/mode plan", sender_id="u1")
    assert denied.error
    assert denied.content == PERMISSION_DENIED_TEXT
    assert harness.mode == "default"

    allowed = await harness.run("/mode plan", sender_id="admin")
    assert not allowed.error
    assert harness.mode == "plan"

    listing = await harness.run("/session list", sender_id="admin")
    assert listing.content == "No active sessions."


@pytest.mark.asyncio
async def test_mode_rejects_unknown_values(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    shown = await harness.run("/mode", sender_id="admin")
    invalid = await harness.run("/mode yolo", sender_id="admin")

    assert shown.content == "Current permission mode: default"
    assert invalid.error
    assert "Valid modes" in invalid.content


@pytest.mark.asyncio
async def test_help_and_utility_commands(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    overview = await harness.run("/help@my_bot")
    detail = await harness.run("/help new")
    status = await harness.run("/status")
    ping = await harness.run("/ping")

    assert "/session_new" in overview.content
    assert "Session:" in overview.content
    assert detail.content.startswith("/session_new")
    assert "Aliases:" in detail.content
    assert "Provider: claude" in status.content
    assert ping.content == "pong"


@pytest.mark.asyncio
async def test_non_commands_are_not_handled(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert not harness.handler.is_command("hello /new")
    assert not harness.handler.is_command("/unknown")
    assert not harness.handler.is_command("/")
    assert await harness.run("/unknown thing") is None


def test_parse_command_words_handles_quotes() -> None:
    assert parse_command_words('a "b c" d') == ["a", "b c", "d"]
    assert parse_command_words('broken "quote') == ["broken", '"quote']
