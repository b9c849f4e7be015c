"""Shared core dataclasses and type aliases."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

PermissionMode = Literal["default", "plan", "autoEditApprove", "bypassPermissions"]
PlanAction = Literal["respond", "auto_execute", "ask_approval"]
ApprovalDecision = Literal["approve", "deny"]
TurnUpdateKind = Literal[
    "turn_started",
    "tool_call_started",
    "tool_call_finished",
    "tool_call_failed",
    "turn_finished",
]

PERMISSION_MODES: tuple[PermissionMode, ...] = ("default", "plan", "autoEditApprove", "bypassPermissions")


def conversation_key(channel: str, chat_id: str) -> str:
    return f"{channel}:{chat_id}"


@dataclass(frozen=True)
class TurnUpdate:
    """Ephemeral progress event emitted by a backend during one turn."""

    kind: TurnUpdateKind
    conversation_key: str
    message: str
    tool_name: str | None = None
    tool_use_id: str | None = None
    detail: dict[str, Any] | None = None


UpdateCallback = Callable[[TurnUpdate], Awaitable[None]]


@dataclass(frozen=True)
class TurnContext:
    """Per-turn execution context passed to backends."""

    workspace: Path
    channel: str
    chat_id: str
    on_update: UpdateCallback | None = None

    async def publish(self, update: TurnUpdate) -> None:
        if self.on_update is None:
            return
        await self.on_update(update)


@dataclass(frozen=True)
class TurnResult:
    """Outcome of a plan-mode turn."""

    text: str
    has_plan: bool
    tools_used: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ApprovalRequest:
    """A detected plan waiting for a human decision."""

    id: str
    conversation_key: str
    plan_text: str
    channel: str
    chat_id: str
    sender_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class ApprovalResult:
    """Decision for one approval request."""

    request_id: str
    decision: ApprovalDecision
    responder_id: str


@dataclass(frozen=True)
class SessionRecord:
    """Stored backend session identity for one conversation."""

    session_id: str
    updated_at: str
    topic: str | None = None
