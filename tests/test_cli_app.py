from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from claude_pipe.__main__ import app
from claude_pipe.app.runtime import AppRuntime
from claude_pipe.backends import ClaudeStreamBackend, CodexRpcBackend, build_backend
from claude_pipe.config import load_settings
from claude_pipe.core.session_store import SessionStore
from claude_pipe.core.transcript import TranscriptLogger
from claude_pipe.core.types import TurnContext


class EchoBackend:
    def __init__(self) -> None:
        self.reset: list[str] = []

    async def run_turn(self, conversation_key: str, text: str, context: TurnContext) -> str:
        return f"echo: {text}"

    async def close_all(self) -> None:
        return None

    async def start_new_session(self, conversation_key: str) -> None:
        self.reset.append(conversation_key)


@pytest.fixture
def home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    state = tmp_path / "state"
    monkeypatch.setenv("CLAUDEPIPE_HOME", str(state))
    monkeypatch.delenv("CLAUDEPIPE_LLM_PROVIDER", raising=False)
    monkeypatch.chdir(tmp_path)
    return state


def test_sessions_command_lists_stored_sessions(home: Path, tmp_path: Path) -> None:
    SessionStore(home / "sessions.json").set("cli:local-chat", "S1", "fix tests")

    result = CliRunner().invoke(app, ["sessions", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    assert "cli:local-chat" in result.output
    assert "S1" in result.output


def test_sessions_command_without_sessions(home: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["sessions", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    assert "No stored sessions." in result.output


def test_run_rejects_missing_workspace(home: Path, tmp_path: Path) -> None:
    result = CliRunner().invoke(app, ["run", "--workspace", str(tmp_path / "missing")])

    assert result.exit_code == 1
    assert "workspace does not exist" in result.output


def test_build_backend_selects_provider(home: Path, tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "sessions.json")
    transcript = TranscriptLogger.disabled()

    claude = build_backend(load_settings(tmp_path), store, transcript)
    codex = build_backend(load_settings(tmp_path, llm_provider="codex"), store, transcript)

    assert isinstance(claude, ClaudeStreamBackend)
    assert isinstance(codex, CodexRpcBackend)
    assert codex.options.args[-1] == "app-server"


@pytest.mark.asyncio
async def test_runtime_serves_cli_until_eof(home: Path, tmp_path: Path) -> None:
    lines = ["/ping", "hello"]

    async def read_line() -> str:
        if lines:
            return lines.pop(0)
        # Give the agent loop time to answer before the input closes.
        await asyncio.sleep(0.1)
        raise EOFError

    output = io.StringIO()
    backend = EchoBackend()
    runtime = AppRuntime(
        load_settings(tmp_path, approval_channels=[]),
        backend=backend,
        read_line=read_line,
        console=Console(file=output, force_terminal=False, width=120),
    )

    await asyncio.wait_for(runtime.run(), timeout=2)

    text = output.getvalue()
    assert "bot> pong" in text
    assert "bot> echo: hello" in text
    assert runtime.status().channels == ["cli"]


def test_runtime_only_plans_for_channels_with_approval_ui(home: Path, tmp_path: Path) -> None:
    runtime = AppRuntime(
        load_settings(tmp_path, approval_channels=["cli", "telegram"]),
        backend=EchoBackend(),
        console=Console(file=io.StringIO(), force_terminal=False),
    )

    assert runtime.agent.approval_channels == frozenset({"cli"})
