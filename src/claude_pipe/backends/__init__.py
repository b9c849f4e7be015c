"""Agent backends and their factory."""

from __future__ import annotations

from claude_pipe.backends.claude import ClaudeStreamBackend
from claude_pipe.backends.codex import CodexRpcBackend, CodexRuntimeOptions
from claude_pipe.config import Settings
from claude_pipe.core.backend import AgentBackend
from claude_pipe.core.session_store import SessionStoreProtocol
from claude_pipe.core.transcript import TranscriptLogger

__all__ = ["ClaudeStreamBackend", "CodexRpcBackend", "CodexRuntimeOptions", "build_backend"]


def build_backend(settings: Settings, store: SessionStoreProtocol, transcript: TranscriptLogger) -> AgentBackend:
    """Create the backend selected by ``settings.llm_provider``."""

    if settings.llm_provider == "codex":
        options = CodexRuntimeOptions(
            command=settings.codex_command,
            args=tuple(settings.resolve_codex_args()),
            approval_policy=settings.codex_approval_policy,
            sandbox=settings.codex_sandbox,
            model_provider=settings.codex_model_provider,
            api_key_env_var=settings.codex_api_key_env_var,
        )
        return CodexRpcBackend(model=settings.model, store=store, options=options, transcript=transcript)

    return ClaudeStreamBackend(
        command=settings.claude_command,
        base_args=settings.claude_args,
        model=settings.model,
        store=store,
        transcript=transcript,
    )
