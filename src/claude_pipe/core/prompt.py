"""Model input rendering."""

from __future__ import annotations

from pathlib import Path


def render_model_input(template: str, workspace: str | Path, request: str) -> str:
    """Fill ``{{workspace}}`` and ``{{request}}`` placeholders in ``template``."""

    return template.replace("{{workspace}}", str(workspace)).replace("{{request}}", request)


def build_model_input(text: str, workspace: str | Path, *, enabled: bool, template: str) -> str:
    if not enabled:
        return text
    return render_model_input(template, workspace, text)
