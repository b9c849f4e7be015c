"""Local terminal channel."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from loguru import logger
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.text import Text

from claude_pipe.channels.base import BaseChannel, is_sender_allowed
from claude_pipe.channels.events import PLAN_KIND, InboundMessage, OutboundMessage
from claude_pipe.core.types import ApprovalDecision, ApprovalRequest, ApprovalResult

if TYPE_CHECKING:
    from claude_pipe.bus import BusProtocol

APPROVE_WORDS = frozenset({"approve", "approved", "yes", "y"})
DENY_WORDS = frozenset({"deny", "denied", "no", "n"})

ReadLine = Callable[[], Awaitable[str]]


class CliChannel(BaseChannel):
    """Terminal chat with an inline approval prompt.

    While a plan waits for approval, an ``approve`` or ``deny`` line answers
    the oldest pending request instead of starting a new turn.
    """

    name = "cli"
    supports_approval = True

    def __init__(
        self,
        bus: BusProtocol,
        *,
        sender_id: str = "local-user",
        chat_id: str = "local-chat",
        allow_from: Iterable[str] = (),
        read_line: ReadLine | None = None,
        console: Console | None = None,
    ) -> None:
        super().__init__(bus)
        self.sender_id = sender_id
        self.chat_id = chat_id
        self.allow_from = list(allow_from)
        self.console = console or Console()
        self._read_line = read_line or self._prompt
        self._prompt_session: PromptSession[str] | None = None
        self._pending: dict[str, ApprovalRequest] = {}
        self._running = False

    @property
    def pending_approvals(self) -> list[ApprovalRequest]:
        return list(self._pending.values())

    async def _prompt(self) -> str:
        if self._prompt_session is None:
            self._prompt_session = PromptSession()
        with patch_stdout(raw=True):
            return await self._prompt_session.prompt_async("you> ")

    async def start(self) -> None:
        self._running = True
        self.console.print("[bold blue]claude-pipe[/bold blue] CLI channel enabled. Type messages and press Enter.")
        logger.info("cli.start sender={} chat_id={}", self.sender_id, self.chat_id)
        while self._running:
            try:
                line = await self._read_line()
            except (EOFError, KeyboardInterrupt):
                logger.info("cli.closed")
                break
            await self.handle_line(line)

    async def stop(self) -> None:
        self._running = False
        logger.info("cli.stop")

    async def handle_line(self, raw: str) -> None:
        content = raw.strip()
        if not content:
            return

        if self.allow_from and not is_sender_allowed(self.sender_id, self.allow_from):
            logger.warning("cli.denied sender={}", self.sender_id)
            self._print_bot("You are not authorised.")
            return

        decision = self._decision_for(content)
        if decision is not None and self._pending:
            request_id = next(iter(self._pending))
            self._pending.pop(request_id)
            await self.bus.publish_approval_result(
                ApprovalResult(request_id=request_id, decision=decision, responder_id=self.sender_id)
            )
            logger.info("cli.approval.answered request_id={} decision={}", request_id, decision)
            return

        await self.bus.publish_inbound(
            InboundMessage(channel=self.name, sender_id=self.sender_id, chat_id=self.chat_id, content=content)
        )

    async def request_approval(self, request: ApprovalRequest) -> None:
        self._pending[request.id] = request
        self.console.print(Text("Reply 'approve' to run this plan or 'deny' to cancel it.", style="bold magenta"))

    async def send(self, message: OutboundMessage) -> None:
        if message.is_progress:
            self.console.print(Text(f"progress> {message.content}", style="dim"))
            return
        if not message.content.strip():
            return
        if message.metadata.get("kind") == PLAN_KIND:
            self.console.print(Text.assemble(("plan> ", "bold magenta"), message.content))
            return

        # A final reply for this chat settles whatever approval was still on screen.
        for request_id, request in list(self._pending.items()):
            if request.chat_id == message.chat_id:
                self._pending.pop(request_id)
        self._print_bot(message.content)

    def _print_bot(self, content: str) -> None:
        self.console.print(Text.assemble(("bot> ", "bold yellow"), content))

    @staticmethod
    def _decision_for(content: str) -> ApprovalDecision | None:
        lowered = content.lower()
        if lowered in APPROVE_WORDS:
            return "approve"
        if lowered in DENY_WORDS:
            return "deny"
        return None
