"""Configuration management for claude-pipe."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from claude_pipe.core.types import PermissionMode
from claude_pipe.errors import WorkspaceNotFoundError

DEFAULT_CLAUDE_ARGS = [
    "--print",
    "--verbose",
    "--output-format",
    "stream-json",
    "--permission-mode",
    "bypassPermissions",
    "--dangerously-skip-permissions",
]
DEFAULT_SUMMARY_TEMPLATE = (
    "Workspace: {{workspace}}\n"
    "Request: {{request}}\n"
    "Provide a concise summary with key files and actionable insights."
)

ArgList = Annotated[list[str], NoDecode]


def _split_words(value: object) -> object:
    """Accept a JSON array or a whitespace/comma separated string."""

    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not trimmed:
        return []
    if trimmed.startswith("["):
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(item, str) for item in parsed):
            return parsed
    return [part for part in trimmed.replace(",", " ").split() if part]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAUDEPIPE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend selection
    llm_provider: Literal["claude", "codex"] = Field(default="claude", description="Agent backend to drive")
    model: str = Field(default="claude-sonnet-4-5", description="Model passed to the agent CLI")
    workspace: Path = Field(default_factory=Path.cwd, description="Workspace directory for agent turns")
    home: Path = Field(default_factory=lambda: Path.home() / ".claude-pipe", description="State directory")

    # Claude CLI (stream-json backend)
    claude_command: str = Field(default="claude", description="Claude CLI executable")
    claude_args: ArgList = Field(default_factory=lambda: list(DEFAULT_CLAUDE_ARGS))

    # Codex app-server (JSON-RPC backend)
    codex_command: str = Field(default="codex", description="Codex CLI executable")
    codex_args: ArgList = Field(default_factory=list, description="Explicit app-server args; built when empty")
    codex_approval_policy: Literal["untrusted", "on-failure", "on-request", "never"] = "on-failure"
    codex_sandbox: Literal["read-only", "workspace-write", "danger-full-access"] = "workspace-write"
    codex_model_provider: str | None = None
    codex_api_key_env_var: str = "OPENAI_API_KEY"

    # Persistence
    session_store_path: Path | None = Field(default=None, description="Session map file; defaults under home")
    transcript_enabled: bool = False
    transcript_path: Path | None = None
    transcript_max_bytes: int = Field(default=1_000_000, gt=0)
    transcript_max_files: int = Field(default=3, gt=0)

    # Model input
    summary_prompt_enabled: bool = False
    summary_prompt_template: str = DEFAULT_SUMMARY_TEMPLATE

    # Orchestration
    approval_channels: ArgList = Field(default_factory=lambda: ["cli"])
    approval_mode: PermissionMode = "default"
    approval_timeout_seconds: float = Field(default=300.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=60.0, gt=0)
    progress_updates: bool = True
    progress_window_seconds: float = Field(default=5.0, ge=0)
    admin_ids: ArgList = Field(default_factory=list)

    # CLI channel
    cli_sender_id: str = "local-user"
    cli_chat_id: str = "local-chat"
    cli_allow_from: ArgList = Field(default_factory=list, description="Allowed CLI sender ids; empty allows all")

    log_level: str = "INFO"

    @field_validator("claude_args", "codex_args", "approval_channels", "admin_ids", "cli_allow_from", mode="before")
    @classmethod
    def _parse_word_list(cls, value: object) -> object:
        return _split_words(value)

    def resolve_home(self) -> Path:
        return self.home.expanduser().resolve()

    def resolve_session_store_path(self) -> Path:
        if self.session_store_path is not None:
            return self.session_store_path.expanduser()
        return self.resolve_home() / "sessions.json"

    def resolve_transcript_path(self) -> Path:
        if self.transcript_path is not None:
            return self.transcript_path.expanduser()
        return self.resolve_home() / "transcript.jsonl"

    def resolve_codex_args(self) -> list[str]:
        if self.codex_args:
            return list(self.codex_args)
        return ["--sandbox", self.codex_sandbox, "--ask-for-approval", self.codex_approval_policy, "app-server"]


def load_settings(workspace: Path | None = None, **overrides: object) -> Settings:
    """Load settings from the environment, optionally overriding the workspace.

    Raises:
        WorkspaceNotFoundError: when the resolved workspace does not exist.
    """

    updates: dict[str, object] = {key: value for key, value in overrides.items() if value is not None}
    if workspace is not None:
        updates["workspace"] = workspace
    settings = Settings(**updates)  # type: ignore[arg-type]
    resolved = settings.workspace.expanduser().resolve()
    if not resolved.is_dir():
        raise WorkspaceNotFoundError(f"workspace does not exist: {resolved}")
    return settings.model_copy(update={"workspace": resolved})
