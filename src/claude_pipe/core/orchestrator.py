"""Turn sequencing: single turns and the plan, approve, execute protocol."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Iterable
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from blinker import Signal
from loguru import logger

from claude_pipe.channels.events import PLAN_KIND, PROGRESS_KIND, InboundMessage, OutboundMessage
from claude_pipe.core.backend import APOLOGY_TEXT, AgentBackend, supports_permission_mode, supports_planning
from claude_pipe.core.commands import CommandHandler
from claude_pipe.core.heartbeat import HEARTBEAT_TEXT, heartbeat
from claude_pipe.core.plan import get_plan_action
from claude_pipe.core.progress import ProgressThrottle
from claude_pipe.core.prompt import build_model_input
from claude_pipe.core.types import ApprovalRequest, PermissionMode, TurnContext, TurnResult, TurnUpdate

if TYPE_CHECKING:
    from claude_pipe.bus import BusProtocol

T = TypeVar("T")

DENIAL_DIRECTIVE = "The user denied the proposed plan. Acknowledge briefly and do not make any changes."
TIMEOUT_TEXT = "No approval received in time. The plan was not executed."
EXECUTING_TEXT = "Approved. Executing the plan..."


class AgentLoop:
    """Pulls inbound messages one at a time and drives the backend.

    A single loop serves every conversation, so turns never overlap. Turn
    updates are logged, sent on ``turn_updates``, and, unless throttled,
    published as progress messages.
    """

    def __init__(
        self,
        *,
        bus: BusProtocol,
        backend: AgentBackend,
        workspace: Path,
        commands: CommandHandler | None = None,
        approval_channels: Iterable[str] = (),
        approval_mode: PermissionMode = "default",
        approval_timeout_seconds: float = 300.0,
        heartbeat_interval_seconds: float = 60.0,
        progress_updates: bool = True,
        progress_window_seconds: float = 5.0,
        summary_prompt_enabled: bool = False,
        summary_prompt_template: str = "",
    ) -> None:
        self.bus = bus
        self.backend = backend
        self.workspace = workspace
        self.commands = commands
        self.approval_channels = frozenset(approval_channels)
        self.approval_timeout_seconds = approval_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.progress_updates = progress_updates
        self.summary_prompt_enabled = summary_prompt_enabled
        self.summary_prompt_template = summary_prompt_template
        self.turn_updates = Signal("claude_pipe.turn_update")
        self._approval_mode: PermissionMode = approval_mode
        self._throttle = ProgressThrottle(progress_window_seconds)
        self._awaiting_approval: set[str] = set()
        self._running = False

    @property
    def approval_mode(self) -> PermissionMode:
        return self._approval_mode

    def set_approval_mode(self, mode: PermissionMode) -> None:
        """Switch the approval policy and, where supported, the backend's default mode."""

        self._approval_mode = mode
        if supports_permission_mode(self.backend):
            self.backend.set_permission_mode(mode)  # type: ignore[attr-defined]
        logger.info("agent.approval_mode.changed mode={}", mode)

    async def start(self) -> None:
        self._running = True
        logger.info("agent.start backend={} approval_mode={}", type(self.backend).__name__, self._approval_mode)
        while self._running:
            inbound = await self.bus.consume_inbound()
            await self.process_message(inbound)

    async def process_once(self) -> None:
        inbound = await self.bus.consume_inbound()
        await self.process_message(inbound)

    async def stop(self) -> None:
        self._running = False
        await self.backend.close_all()
        logger.info("agent.stop")

    async def process_message(self, inbound: InboundMessage) -> None:
        key = inbound.session_id
        logger.info("agent.inbound key={} sender={}", key, inbound.sender_id)
        try:
            await self._handle(inbound, key)
        except Exception:
            logger.exception("agent.message.error key={}", key)
            await self._reply(inbound, APOLOGY_TEXT)
        finally:
            self._throttle.reset(key)
        logger.info("agent.outbound key={}", key)

    async def _handle(self, inbound: InboundMessage, key: str) -> None:
        if self.commands is not None and self.commands.is_command(inbound.content):
            result = await self.commands.execute(inbound.content, inbound.channel, inbound.chat_id, inbound.sender_id)
            if result is not None:
                await self._reply(inbound, result.content, {"kind": "command", "error": result.error})
                return

        model_input = build_model_input(
            inbound.content,
            self.workspace,
            enabled=self.summary_prompt_enabled,
            template=self.summary_prompt_template,
        )
        context = TurnContext(
            workspace=self.workspace,
            channel=inbound.channel,
            chat_id=inbound.chat_id,
            on_update=partial(self._on_update, inbound),
        )

        if not self._plan_first(inbound):
            text = await self._with_heartbeat(inbound, self.backend.run_turn(key, model_input, context))
            await self._reply(inbound, text)
            return

        result: TurnResult = await self._with_heartbeat(
            inbound,
            self.backend.run_plan_turn(key, model_input, context),  # type: ignore[attr-defined]
        )
        if not result.has_plan:
            await self._reply(inbound, result.text)
            return

        action = get_plan_action(result.text, result.tools_used, self._approval_mode)
        logger.info("agent.plan.detected key={} action={} tools={}", key, action, result.tools_used)
        if action == "respond":
            await self._reply(inbound, result.text)
        elif action == "auto_execute":
            await self._reply(inbound, result.text)
            await self._execute(inbound, key, context)
        else:
            await self._ask_approval(inbound, key, result, context)

    def _plan_first(self, inbound: InboundMessage) -> bool:
        if not supports_planning(self.backend):
            return False
        if inbound.channel not in self.approval_channels:
            return False
        return self._approval_mode != "bypassPermissions"

    async def _ask_approval(self, inbound: InboundMessage, key: str, result: TurnResult, context: TurnContext) -> None:
        if key in self._awaiting_approval:
            logger.warning("agent.approval.already_pending key={}", key)
            await self._reply(inbound, result.text)
            return

        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            conversation_key=key,
            plan_text=result.text,
            channel=inbound.channel,
            chat_id=inbound.chat_id,
            sender_id=inbound.sender_id,
        )
        await self._reply(inbound, result.text, {"kind": PLAN_KIND, "approval_request_id": request.id})
        self._awaiting_approval.add(key)
        try:
            await self.bus.publish_approval_request(request)
            logger.info("agent.approval.requested key={} request_id={}", key, request.id)
            decision = await self.bus.wait_for_approval_result(request.id, self.approval_timeout_seconds)
        finally:
            self._awaiting_approval.discard(key)

        if decision is None:
            logger.info("agent.approval.timeout key={} request_id={}", key, request.id)
            await self._reply(inbound, TIMEOUT_TEXT)
            return

        logger.info(
            "agent.approval.decided key={} request_id={} decision={} responder={}",
            key,
            request.id,
            decision.decision,
            decision.responder_id,
        )
        if decision.decision == "approve":
            await self._execute(inbound, key, context)
            return
        text = await self._with_heartbeat(inbound, self.backend.run_turn(key, DENIAL_DIRECTIVE, context))
        await self._reply(inbound, text)

    async def _execute(self, inbound: InboundMessage, key: str, context: TurnContext) -> None:
        await self._reply(inbound, EXECUTING_TEXT)
        text = await self._with_heartbeat(
            inbound,
            self.backend.run_execute_turn(key, context),  # type: ignore[attr-defined]
        )
        await self._reply(inbound, text)

    async def _with_heartbeat(self, inbound: InboundMessage, call: Awaitable[T]) -> T:
        async def send() -> None:
            await self._reply(inbound, HEARTBEAT_TEXT, {"kind": PROGRESS_KIND, "update": "heartbeat"})

        async with heartbeat(self.heartbeat_interval_seconds, send):
            return await call

    async def _on_update(self, inbound: InboundMessage, update: TurnUpdate) -> None:
        logger.info(
            "agent.turn_update key={} kind={} tool={} message={}",
            update.conversation_key,
            update.kind,
            update.tool_name,
            update.message,
        )
        self.turn_updates.send(self, update=update)
        if not self.progress_updates or not self._throttle.should_publish(update):
            return
        await self._reply(
            inbound,
            update.message,
            {"kind": PROGRESS_KIND, "update": update.kind, "tool_name": update.tool_name},
        )

    async def _reply(self, inbound: InboundMessage, content: str, metadata: dict[str, Any] | None = None) -> None:
        await self.bus.publish_outbound(
            OutboundMessage(
                channel=inbound.channel,
                chat_id=inbound.chat_id,
                content=content,
                metadata=dict(metadata or {}),
            )
        )
