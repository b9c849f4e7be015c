"""Slash command registry, parsing, and built-in commands."""

from __future__ import annotations

import shlex
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Literal

from loguru import logger

from claude_pipe.core.session_store import SessionStore
from claude_pipe.core.types import PERMISSION_MODES, PermissionMode, conversation_key

PermissionLevel = Literal["user", "admin"]
CommandCategory = Literal["session", "config", "utility"]
COMMAND_PREFIX = "/"
PERMISSION_DENIED_TEXT = "You do not have permission to use this command."


@dataclass(frozen=True)
class CommandContext:
    """Everything a command sees about one invocation."""

    channel: str
    chat_id: str
    sender_id: str
    conversation_key: str
    args: list[str]
    raw_args: str


@dataclass(frozen=True)
class CommandResult:
    content: str
    error: bool = False


CommandExecutor = Callable[[CommandContext], Awaitable[CommandResult]]


@dataclass(frozen=True)
class CommandDefinition:
    """One chat command and how to run it."""

    name: str
    category: CommandCategory
    description: str
    execute: CommandExecutor
    usage: str | None = None
    aliases: tuple[str, ...] = ()
    permission: PermissionLevel = "user"


def parse_command_words(text: str) -> list[str]:
    """Split command text into words using shell rules."""

    try:
        return shlex.split(text)
    except ValueError:
        return text.split()


class CommandRegistry:
    """Case-insensitive lookup of commands by name or alias."""

    def __init__(self) -> None:
        self._commands: dict[str, CommandDefinition] = {}
        self._aliases: dict[str, str] = {}

    def register(self, command: CommandDefinition) -> None:
        key = command.name.lower()
        self._commands[key] = command
        self._aliases[key] = key
        for alias in command.aliases:
            self._aliases[alias.lower()] = key

    def get(self, name_or_alias: str) -> CommandDefinition | None:
        canonical = self._aliases.get(name_or_alias.lower())
        if canonical is None:
            return None
        return self._commands.get(canonical)

    def has(self, name_or_alias: str) -> bool:
        return name_or_alias.lower() in self._aliases

    def all(self) -> list[CommandDefinition]:
        return list(self._commands.values())


class CommandHandler:
    """Parse chat text into command invocations and dispatch them.

    Accepts ``/name``, ``/name@bot`` and the two-word form ``/group sub``
    which collapses to ``group_sub`` when that command exists.
    """

    def __init__(self, registry: CommandRegistry, admin_ids: Iterable[str] = ()) -> None:
        self.registry = registry
        self.admin_ids = set(admin_ids)

    def is_command(self, text: str) -> bool:
        resolved = self._resolve(text)
        return resolved is not None

    async def execute(self, text: str, channel: str, chat_id: str, sender_id: str) -> CommandResult | None:
        resolved = self._resolve(text)
        if resolved is None:
            return None
        command, raw_args = resolved

        if command.permission == "admin" and sender_id not in self.admin_ids:
            logger.info("command.denied name={} sender={}", command.name, sender_id)
            return CommandResult(content=PERMISSION_DENIED_TEXT, error=True)

        context = CommandContext(
            channel=channel,
            chat_id=chat_id,
            sender_id=sender_id,
            conversation_key=conversation_key(channel, chat_id),
            args=parse_command_words(raw_args) if raw_args else [],
            raw_args=raw_args,
        )
        logger.info("command.execute name={} key={}", command.name, context.conversation_key)
        return await command.execute(context)

    def _resolve(self, text: str) -> tuple[CommandDefinition, str] | None:
        stripped = text.strip()
        if not stripped.startswith(COMMAND_PREFIX):
            return None

        parts = stripped[len(COMMAND_PREFIX) :].split()
        if not parts:
            return None
        first = parts[0].split("@", 1)[0].lower()

        command = self.registry.get(first)
        if command is not None:
            return command, " ".join(parts[1:])

        if len(parts) >= 2:
            collapsed = self.registry.get(f"{first}_{parts[1].lower()}")
            if collapsed is not None:
                return collapsed, " ".join(parts[2:])
        return None


def session_new_command(start_new_session: Callable[[str], Awaitable[None]]) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        await start_new_session(ctx.conversation_key)
        return CommandResult(content="Started a new session for this chat.")

    return CommandDefinition(
        name="session_new",
        category="session",
        description="Start a new agent session for this chat",
        usage="/session_new (clears conversation history and starts fresh)",
        aliases=("new", "newsession", "new_session", "reset", "reset_session"),
        execute=execute,
    )


def session_info_command(store: SessionStore) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        record = store.get(ctx.conversation_key)
        if record is None:
            return CommandResult(content="No active session for this chat.")
        lines = ["Session info:", f"- Session ID: {record.session_id}", f"- Last active: {record.updated_at}"]
        if record.topic:
            lines.append(f"- Topic: {record.topic}")
        return CommandResult(content="\n".join(lines))

    return CommandDefinition(
        name="session_info",
        category="session",
        description="Show session info for the current chat",
        execute=execute,
    )


def session_list_command(store: SessionStore) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        entries = store.entries()
        if not entries:
            return CommandResult(content="No active sessions.")
        lines = [
            f"{index}. {key} (last active {record.updated_at})"
            for index, (key, record) in enumerate(entries.items(), start=1)
        ]
        return CommandResult(content=f"Active sessions ({len(entries)}):\n" + "\n".join(lines))

    return CommandDefinition(
        name="session_list",
        category="session",
        description="List stored sessions",
        permission="admin",
        execute=execute,
    )


def session_delete_command(store: SessionStore) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        store.clear(ctx.conversation_key)
        return CommandResult(content="Session deleted for this chat.")

    return CommandDefinition(
        name="session_delete",
        category="session",
        description="Delete the session for the current chat",
        execute=execute,
    )


def mode_command(
    get_mode: Callable[[], PermissionMode],
    set_mode: Callable[[PermissionMode], None],
) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        if not ctx.args:
            return CommandResult(content=f"Current permission mode: {get_mode()}")

        requested = ctx.args[0]
        if requested not in PERMISSION_MODES:
            return CommandResult(
                content=f"Invalid mode: {requested}\nValid modes: {', '.join(PERMISSION_MODES)}",
                error=True,
            )
        set_mode(requested)  # type: ignore[arg-type]
        logger.info("command.mode.switched mode={} sender={}", requested, ctx.sender_id)
        return CommandResult(content=f"Permission mode switched to: {requested}\nThis applies to new turns.")

    return CommandDefinition(
        name="mode",
        category="config",
        description="Show or switch the approval and permission mode",
        usage=f"/mode [{'|'.join(PERMISSION_MODES)}]",
        permission="admin",
        execute=execute,
    )


@dataclass(frozen=True)
class RuntimeStatus:
    provider: str
    model: str
    workspace: str
    channels: list[str] = field(default_factory=list)


def status_command(get_status: Callable[[], RuntimeStatus]) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        status = get_status()
        return CommandResult(
            content=(
                "Status:\n"
                f"- Provider: {status.provider}\n"
                f"- Model: {status.model}\n"
                f"- Workspace: {status.workspace}\n"
                f"- Channels: {', '.join(status.channels) or '(none)'}"
            )
        )

    return CommandDefinition(
        name="status",
        category="utility",
        description="Show runtime status",
        execute=execute,
    )


def ping_command() -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        return CommandResult(content="pong")

    return CommandDefinition(name="ping", category="utility", description="Health check", execute=execute)


def help_command(registry: CommandRegistry) -> CommandDefinition:
    async def execute(ctx: CommandContext) -> CommandResult:
        if ctx.args:
            target = registry.get(ctx.args[0].lstrip(COMMAND_PREFIX))
            if target is None:
                return CommandResult(content=f"Unknown command: {ctx.args[0]}", error=True)
            lines = [f"/{target.name} - {target.description}"]
            if target.usage:
                lines.append(f"Usage: {target.usage}")
            if target.aliases:
                lines.append("Aliases: " + ", ".join(f"/{alias}" for alias in target.aliases))
            lines.append(f"Permission: {target.permission}")
            return CommandResult(content="\n".join(lines))

        grouped: dict[str, list[CommandDefinition]] = {}
        for command in registry.all():
            grouped.setdefault(command.category, []).append(command)
        sections = []
        for category, commands in grouped.items():
            items = "\n".join(f"  /{command.name} - {command.description}" for command in commands)
            sections.append(f"{category.capitalize()}:\n{items}")
        return CommandResult(content="\n\n".join(sections))

    return CommandDefinition(
        name="help",
        category="utility",
        description="Show available commands or help for one command",
        usage="/help [command]",
        execute=execute,
    )


def register_builtin_commands(
    registry: CommandRegistry,
    *,
    store: SessionStore,
    start_new_session: Callable[[str], Awaitable[None]],
    get_mode: Callable[[], PermissionMode],
    set_mode: Callable[[PermissionMode], None],
    get_status: Callable[[], RuntimeStatus],
) -> CommandRegistry:
    for command in (
        session_new_command(start_new_session),
        session_info_command(store),
        session_list_command(store),
        session_delete_command(store),
        mode_command(get_mode, set_mode),
        status_command(get_status),
        ping_command(),
        help_command(registry),
    ):
        registry.register(command)
    return registry
