"""claude-pipe command line."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from claude_pipe.app import build_runtime
from claude_pipe.config import load_settings
from claude_pipe.core.session_store import SessionStore
from claude_pipe.errors import ConfigurationError
from claude_pipe.logging_utils import configure_logging

app = typer.Typer(
    name="claude-pipe",
    help="Chat with a local coding agent CLI, with plan approval.",
    add_completion=False,
    rich_markup_mode="rich",
)

WorkspaceOption = Annotated[Path | None, typer.Option("--workspace", "-w", help="Workspace directory for agent turns")]


@app.command()
def run(
    workspace: WorkspaceOption = None,
    provider: Annotated[str | None, typer.Option("--provider", "-p", help="Agent backend: claude or codex")] = None,
    model: Annotated[str | None, typer.Option("--model", "-m", help="Model passed to the agent CLI")] = None,
) -> None:
    """Start the terminal channel and the agent loop."""

    try:
        runtime = build_runtime(workspace, provider=provider, model=model)
    except (ConfigurationError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc

    configure_logging(runtime.settings.log_level, profile="chat")
    try:
        asyncio.run(runtime.run())
    except KeyboardInterrupt:
        typer.echo("Goodbye!")


@app.command()
def sessions(workspace: WorkspaceOption = None) -> None:
    """List stored conversation sessions."""

    try:
        settings = load_settings(workspace)
    except (ConfigurationError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc

    entries = SessionStore(settings.resolve_session_store_path()).entries()
    console = Console()
    if not entries:
        console.print("[dim]No stored sessions.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Conversation", style="cyan")
    table.add_column("Session ID", style="magenta")
    table.add_column("Topic")
    table.add_column("Updated", style="dim")
    for key, record in sorted(entries.items(), key=lambda item: item[1].updated_at, reverse=True):
        table.add_row(key, record.session_id, record.topic or "", record.updated_at)
    console.print(table)


if __name__ == "__main__":
    app()
