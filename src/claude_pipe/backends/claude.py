"""Claude CLI backend driven through ``--output-format stream-json``."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from loguru import logger

from claude_pipe.backends._process import (
    MAX_LINE_BYTES,
    FrameQueue,
    Spawn,
    command_progress_label,
    describe_exit,
    drain_stderr,
    pump_lines,
    stop_process,
)
from claude_pipe.core.backend import APOLOGY_TEXT, EXECUTE_DIRECTIVE, NO_RESPONSE_TEXT
from claude_pipe.core.env_filter import filter_env_for_child
from claude_pipe.core.permissions import apply_permission_mode, current_permission_mode
from claude_pipe.core.plan import detect_plan
from claude_pipe.core.session_store import SessionStoreProtocol
from claude_pipe.core.transcript import TranscriptLogger
from claude_pipe.core.types import PermissionMode, TurnContext, TurnResult, TurnUpdate
from claude_pipe.errors import BackendError, BackendSpawnError

TOPIC_MAX_LENGTH = 80
TOOL_ERROR_MARKER = "<tool_use_error>"


def topic_from_text(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return first_line[:TOPIC_MAX_LENGTH]


def _tool_result_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [block.get("text", "") for block in content if isinstance(block, dict)]
        return "".join(part for part in parts if isinstance(part, str))
    return ""


def tool_result_failed(block: Mapping[str, Any]) -> bool:
    if block.get("is_error") is True:
        return True
    text = _tool_result_text(block.get("content")).strip()
    return text.lower().startswith("error") or TOOL_ERROR_MARKER in text


def tool_started_message(name: str, tool_input: object) -> str:
    if name == "Bash" and isinstance(tool_input, dict) and isinstance(tool_input.get("command"), str):
        return command_progress_label(tool_input["command"])
    return f"Using tool: {name}"


@dataclass
class _StreamTurn:
    """Mutable state of one CLI invocation."""

    conversation_key: str
    session_id: str | None
    response_text: str = ""
    fallback_text: str = ""
    saw_result: bool = False
    result_error: bool = False
    tools_used: list[str] = field(default_factory=list)
    tool_names: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class _Outcome:
    text: str
    failed: bool
    tools_used: list[str]


class ClaudeStreamBackend:
    """Spawns one ``claude`` process per turn and parses its NDJSON stream.

    The base argument list is immutable; every call derives its own list
    with the permission mode it runs under, so plan and execute turns never
    leak their mode into later turns.
    """

    name = "claude"

    def __init__(
        self,
        *,
        command: str,
        base_args: Sequence[str],
        model: str,
        store: SessionStoreProtocol,
        transcript: TranscriptLogger | None = None,
        environ: Mapping[str, str] | None = None,
        spawn: Spawn | None = None,
        stop_grace_seconds: float = 2.0,
    ) -> None:
        self.command = command
        self.model = model
        self.store = store
        self.transcript = transcript or TranscriptLogger.disabled()
        self._base_args: tuple[str, ...] = tuple(base_args)
        self._permission_mode: PermissionMode = current_permission_mode(self._base_args)
        self._environ = environ
        self._spawn: Spawn = spawn or asyncio.create_subprocess_exec
        self._stop_grace_seconds = stop_grace_seconds

    @property
    def permission_mode(self) -> PermissionMode:
        return self._permission_mode

    def set_permission_mode(self, mode: PermissionMode) -> None:
        if mode != self._permission_mode:
            logger.info("claude.permission_mode.changed from={} to={}", self._permission_mode, mode)
        self._permission_mode = mode

    def build_args(self, text: str, *, mode: PermissionMode, session_id: str | None = None) -> list[str]:
        args = apply_permission_mode(self._base_args, mode)
        args.extend(["--model", self.model])
        if session_id:
            args.extend(["--resume", session_id])
        args.append(text)
        return args

    async def run_turn(self, conversation_key: str, text: str, context: TurnContext) -> str:
        outcome = await self._run(conversation_key, text, context, mode=self._permission_mode)
        return outcome.text

    async def run_plan_turn(self, conversation_key: str, text: str, context: TurnContext) -> TurnResult:
        outcome = await self._run(conversation_key, text, context, mode="plan")
        if outcome.failed:
            return TurnResult(text=outcome.text, has_plan=False, tools_used=outcome.tools_used)
        return TurnResult(
            text=outcome.text,
            has_plan=detect_plan(outcome.text, outcome.tools_used),
            tools_used=outcome.tools_used,
        )

    async def run_execute_turn(self, conversation_key: str, context: TurnContext) -> str:
        outcome = await self._run(conversation_key, EXECUTE_DIRECTIVE, context, mode="bypassPermissions")
        return outcome.text

    async def close_all(self) -> None:
        """Nothing to release: every turn owns a short-lived process."""

    async def start_new_session(self, conversation_key: str) -> None:
        self.store.clear(conversation_key)
        logger.info("claude.session.reset key={}", conversation_key)

    def _child_env(self) -> dict[str, str]:
        return filter_env_for_child(self._environ if self._environ is not None else os.environ)

    async def _run(self, key: str, text: str, context: TurnContext, *, mode: PermissionMode) -> _Outcome:
        saved = self.store.get(key)
        turn = _StreamTurn(conversation_key=key, session_id=saved.session_id if saved else None)
        args = self.build_args(text, mode=mode, session_id=turn.session_id)

        await context.publish(TurnUpdate(kind="turn_started", conversation_key=key, message="Working on it..."))
        self.transcript.log(key, {"type": "user", "text": text})
        try:
            return await self._execute(turn, args, text, context)
        except BackendError as exc:
            logger.error("claude.turn.failed key={} error={}", key, exc)
        except Exception:
            logger.exception("claude.turn.error key={}", key)
        return await self._fail(turn, context)

    async def _execute(self, turn: _StreamTurn, args: list[str], text: str, context: TurnContext) -> _Outcome:
        key = turn.conversation_key
        logger.info("claude.spawn.start key={} command={} args={}", key, self.command, args[:-1])
        try:
            proc = await self._spawn(
                self.command,
                *args,
                cwd=str(context.workspace),
                env=self._child_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
            )
        except OSError as exc:
            raise BackendSpawnError(f"failed to start {self.command}: {exc}") from exc

        stderr_task = asyncio.create_task(drain_stderr(proc.stderr, name="claude", conversation_key=key))
        try:
            async with FrameQueue(partial(self._handle_line, turn, context), name="claude") as frames:
                await pump_lines(proc.stdout, frames.submit, name="claude")
                returncode = await proc.wait()
                await frames.drain()
            await stderr_task
        finally:
            if proc.returncode is None:
                await stop_process(proc, grace_seconds=self._stop_grace_seconds)
            if not stderr_task.done():
                stderr_task.cancel()

        if returncode != 0:
            logger.error(
                "claude.process.crashed key={} exit={} saw_result={}",
                key,
                describe_exit(returncode),
                turn.saw_result,
            )
            return await self._fail(turn, context)
        if turn.result_error:
            logger.error(
                "claude.result.rejected key={} exit={} result={}",
                key,
                describe_exit(returncode),
                turn.fallback_text[:500],
            )
            return await self._fail(turn, context)

        if turn.session_id:
            self.store.set(key, turn.session_id, topic_from_text(text))
        logger.info("claude.spawn.exit key={} exit={} tools={}", key, describe_exit(returncode), turn.tools_used)
        await context.publish(TurnUpdate(kind="turn_finished", conversation_key=key, message="Turn finished"))
        reply = turn.response_text or turn.fallback_text or NO_RESPONSE_TEXT
        return _Outcome(text=reply, failed=False, tools_used=list(turn.tools_used))

    async def _fail(self, turn: _StreamTurn, context: TurnContext) -> _Outcome:
        await context.publish(
            TurnUpdate(kind="turn_finished", conversation_key=turn.conversation_key, message="Turn failed")
        )
        return _Outcome(text=APOLOGY_TEXT, failed=True, tools_used=list(turn.tools_used))

    async def _handle_line(self, turn: _StreamTurn, context: TurnContext, line: str) -> None:
        frame = json.loads(line)
        if not isinstance(frame, dict):
            raise ValueError("stream frame is not an object")

        session_id = frame.get("session_id")
        if isinstance(session_id, str) and session_id:
            turn.session_id = session_id

        frame_type = frame.get("type")
        self.transcript.log(turn.conversation_key, {"type": frame_type})
        if frame_type == "assistant":
            await self._on_assistant(turn, context, frame)
        elif frame_type == "user":
            await self._on_tool_results(turn, context, frame)
        elif frame_type == "result":
            turn.saw_result = True
            turn.result_error = bool(frame.get("is_error"))
            result = frame.get("result")
            if isinstance(result, str) and result:
                turn.fallback_text = result

    @staticmethod
    def _content_blocks(frame: Mapping[str, Any]) -> list[dict[str, Any]]:
        message = frame.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    async def _on_assistant(self, turn: _StreamTurn, context: TurnContext, frame: Mapping[str, Any]) -> None:
        blocks = self._content_blocks(frame)
        text = "".join(
            block["text"] for block in blocks if block.get("type") == "text" and isinstance(block.get("text"), str)
        )
        if text:
            turn.response_text = text
            self.transcript.log(turn.conversation_key, {"type": "assistant_text", "text": text})

        for block in blocks:
            if block.get("type") != "tool_use":
                continue
            name = block.get("name")
            if not isinstance(name, str) or not name:
                continue
            tool_use_id = block.get("id") if isinstance(block.get("id"), str) else None
            if tool_use_id:
                turn.tool_names[tool_use_id] = name
            turn.tools_used.append(name)
            await context.publish(
                TurnUpdate(
                    kind="tool_call_started",
                    conversation_key=turn.conversation_key,
                    message=tool_started_message(name, block.get("input")),
                    tool_name=name,
                    tool_use_id=tool_use_id,
                )
            )

    async def _on_tool_results(self, turn: _StreamTurn, context: TurnContext, frame: Mapping[str, Any]) -> None:
        for block in self._content_blocks(frame):
            if block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id") if isinstance(block.get("tool_use_id"), str) else None
            name = turn.tool_names.get(tool_use_id or "", "tool")
            failed = tool_result_failed(block)
            await context.publish(
                TurnUpdate(
                    kind="tool_call_failed" if failed else "tool_call_finished",
                    conversation_key=turn.conversation_key,
                    message=f"Tool failed: {name}" if failed else f"Finished: {name}",
                    tool_name=name,
                    tool_use_id=tool_use_id,
                )
            )
