"""Application runtime: one bus, one backend, one agent loop, the channels."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any

from loguru import logger
from rich.console import Console

from claude_pipe.backends import build_backend
from claude_pipe.bus import MessageBus
from claude_pipe.channels.cli import CliChannel, ReadLine
from claude_pipe.channels.manager import ChannelManager
from claude_pipe.config import Settings
from claude_pipe.core.backend import AgentBackend
from claude_pipe.core.commands import CommandHandler, CommandRegistry, RuntimeStatus, register_builtin_commands
from claude_pipe.core.orchestrator import AgentLoop
from claude_pipe.core.session_store import SessionStore
from claude_pipe.core.transcript import TranscriptLogger
from claude_pipe.core.types import TurnUpdate


class AppRuntime:
    """Wires settings into the bus, session store, backend, loop and channels."""

    def __init__(
        self,
        settings: Settings,
        *,
        backend: AgentBackend | None = None,
        read_line: ReadLine | None = None,
        console: Console | None = None,
    ) -> None:
        self.settings = settings
        self.workspace = settings.workspace
        self.bus = MessageBus()
        self.store = SessionStore(settings.resolve_session_store_path())
        self.transcript = TranscriptLogger(
            settings.resolve_transcript_path(),
            enabled=settings.transcript_enabled,
            max_bytes=settings.transcript_max_bytes,
            max_files=settings.transcript_max_files,
        )
        self.backend = backend or build_backend(settings, self.store, self.transcript)

        self.channels = ChannelManager(self.bus)
        self.channels.register(
            CliChannel(
                self.bus,
                sender_id=settings.cli_sender_id,
                chat_id=settings.cli_chat_id,
                allow_from=settings.cli_allow_from,
                read_line=read_line,
                console=console,
            )
        )

        capable = set(self.channels.approval_channels())
        approval_channels = [name for name in settings.approval_channels if name in capable]
        for name in settings.approval_channels:
            if name not in capable:
                logger.warning("runtime.approval_channel.unsupported channel={}", name)

        self.agent = AgentLoop(
            bus=self.bus,
            backend=self.backend,
            workspace=self.workspace,
            approval_channels=approval_channels,
            approval_mode=settings.approval_mode,
            approval_timeout_seconds=settings.approval_timeout_seconds,
            heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
            progress_updates=settings.progress_updates,
            progress_window_seconds=settings.progress_window_seconds,
            summary_prompt_enabled=settings.summary_prompt_enabled,
            summary_prompt_template=settings.summary_prompt_template,
        )
        registry = register_builtin_commands(
            CommandRegistry(),
            store=self.store,
            start_new_session=self.backend.start_new_session,
            get_mode=lambda: self.agent.approval_mode,
            set_mode=self.agent.set_approval_mode,
            get_status=self.status,
        )
        self.agent.commands = CommandHandler(registry, settings.admin_ids)
        self.agent.turn_updates.connect(self._record_update, weak=False)

    def status(self) -> RuntimeStatus:
        return RuntimeStatus(
            provider=self.settings.llm_provider,
            model=self.settings.model,
            workspace=str(self.workspace),
            channels=list(self.channels.enabled_channels()),
        )

    def _record_update(self, sender: Any, *, update: TurnUpdate) -> None:
        self.transcript.log(
            update.conversation_key,
            {"type": "turn_update", "kind": update.kind, "tool_name": update.tool_name, "message": update.message},
        )

    async def run(self) -> None:
        """Serve until the terminal input closes or the task is cancelled."""

        logger.info(
            "runtime.start provider={} model={} workspace={}",
            self.settings.llm_provider,
            self.settings.model,
            self.workspace,
        )
        await self.channels.start()
        agent_task = asyncio.create_task(self.agent.start())
        try:
            await self.channels.wait_closed()
        finally:
            agent_task.cancel()
            with suppress(asyncio.CancelledError):
                await agent_task
            await self.agent.stop()
            await self.channels.stop()
            self.transcript.close()
            logger.info("runtime.stop")
