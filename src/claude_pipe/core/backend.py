"""Agent backend contract and capability checks."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from claude_pipe.core.types import PermissionMode, TurnContext, TurnResult

APOLOGY_TEXT = "Sorry, I hit an error while processing that request."
NO_RESPONSE_TEXT = "I completed processing but have no response to return."
EXECUTE_DIRECTIVE = "The user approved the plan. Proceed with the implementation."


@runtime_checkable
class AgentBackend(Protocol):
    """What the orchestrator needs from every backend.

    ``run_turn`` never raises: internal failures are logged and turned into
    ``APOLOGY_TEXT``.
    """

    async def run_turn(self, conversation_key: str, text: str, context: TurnContext) -> str: ...

    async def close_all(self) -> None: ...

    async def start_new_session(self, conversation_key: str) -> None: ...


@runtime_checkable
class PlanningBackend(Protocol):
    """Backends able to run a plan-only turn and then execute it."""

    async def run_plan_turn(self, conversation_key: str, text: str, context: TurnContext) -> TurnResult: ...

    async def run_execute_turn(self, conversation_key: str, context: TurnContext) -> str: ...


@runtime_checkable
class PermissionModeBackend(Protocol):
    """Backends whose default permission mode can be switched at runtime."""

    @property
    def permission_mode(self) -> PermissionMode: ...

    def set_permission_mode(self, mode: PermissionMode) -> None: ...


def supports_planning(backend: object) -> bool:
    return isinstance(backend, PlanningBackend)


def supports_permission_mode(backend: object) -> bool:
    return isinstance(backend, PermissionModeBackend)
