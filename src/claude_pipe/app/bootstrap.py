"""Runtime bootstrap helpers."""

from __future__ import annotations

from pathlib import Path

from claude_pipe.app.runtime import AppRuntime
from claude_pipe.config import load_settings


def build_runtime(
    workspace: Path | None = None,
    *,
    provider: str | None = None,
    model: str | None = None,
) -> AppRuntime:
    """Build the app runtime for one workspace.

    Raises:
        WorkspaceNotFoundError: when the workspace directory does not exist.
    """

    settings = load_settings(workspace, llm_provider=provider, model=model)
    return AppRuntime(settings)
