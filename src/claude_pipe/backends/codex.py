"""Codex backend talking JSON-RPC to ``codex app-server``."""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from claude_pipe import __version__
from claude_pipe.backends._process import (
    MAX_LINE_BYTES,
    FrameQueue,
    Spawn,
    close_stdin,
    command_progress_label,
    describe_exit,
    drain_stderr,
    pump_lines,
    stop_process,
)
from claude_pipe.backends.claude import topic_from_text
from claude_pipe.backends.rpc import METHOD_NOT_FOUND, RpcConnection, RpcNotification, RpcRequest
from claude_pipe.core.backend import APOLOGY_TEXT, NO_RESPONSE_TEXT
from claude_pipe.core.env_filter import filter_env_for_child
from claude_pipe.core.session_store import SessionStoreProtocol
from claude_pipe.core.transcript import TranscriptLogger
from claude_pipe.core.types import TurnContext, TurnUpdate
from claude_pipe.errors import BackendError, BackendSpawnError, RpcConnectionClosedError, RpcError

_FAILED_ITEM_TYPES = frozenset({"commandExecution", "fileChange", "mcpToolCall"})


@dataclass(frozen=True)
class CodexRuntimeOptions:
    """How to launch the app-server and what policy to request."""

    command: str = "codex"
    args: tuple[str, ...] = ("--sandbox", "workspace-write", "--ask-for-approval", "on-failure", "app-server")
    approval_policy: str = "on-failure"
    sandbox: str = "workspace-write"
    model_provider: str | None = None
    api_key_env_var: str = "OPENAI_API_KEY"


def item_tool_name(item: Mapping[str, Any]) -> str | None:
    item_type = item.get("type")
    if item_type == "commandExecution":
        return "exec"
    if item_type == "fileChange":
        return "apply_patch"
    if item_type == "mcpToolCall":
        return f"{item.get('server')}/{item.get('tool')}"
    if item_type == "webSearch":
        return "web_search"
    return None


def _item_command(item: Mapping[str, Any]) -> str:
    command = item.get("command")
    return command if isinstance(command, str) else ""


def item_progress_message(item: Mapping[str, Any]) -> str:
    if item.get("type") == "commandExecution":
        return command_progress_label(_item_command(item))
    return f"Using tool: {item_tool_name(item) or item.get('type')}"


def item_failure_message(item: Mapping[str, Any]) -> str:
    if item.get("type") == "commandExecution":
        return f"Failed: {command_progress_label(_item_command(item))}"
    return f"Tool failed: {item_tool_name(item) or item.get('type')}"


def item_failed(item: Mapping[str, Any]) -> bool:
    return item.get("type") in _FAILED_ITEM_TYPES and item.get("status") == "failed"


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


@dataclass
class _CodexTurn:
    """Mutable state of one app-server runtime."""

    conversation_key: str
    thread_id: str | None
    done: asyncio.Future[None]
    turn_id: str | None = None
    response_text: str = ""
    failed: bool = False
    activity_seen: bool = False
    exit_code: int | None = None
    stopped_by_us: bool = False


def _settle(future: asyncio.Future[None], error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class CodexRpcBackend:
    """Runs each turn in a fresh ``codex app-server`` subprocess.

    The sequence is ``initialize`` → ``thread/start`` or ``thread/resume`` →
    ``turn/start``, then the backend waits for ``turn/completed``. Text is
    accumulated from message deltas.
    """

    name = "codex"

    def __init__(
        self,
        *,
        model: str,
        store: SessionStoreProtocol,
        options: CodexRuntimeOptions | None = None,
        transcript: TranscriptLogger | None = None,
        environ: Mapping[str, str] | None = None,
        spawn: Spawn | None = None,
        exit_grace_seconds: float = 5.0,
    ) -> None:
        self.model = model
        self.store = store
        self.options = options or CodexRuntimeOptions()
        self.transcript = transcript or TranscriptLogger.disabled()
        self._environ = environ
        self._spawn: Spawn = spawn or asyncio.create_subprocess_exec
        self._exit_grace_seconds = exit_grace_seconds

    async def close_all(self) -> None:
        """Nothing to release: each turn owns its app-server process."""

    async def start_new_session(self, conversation_key: str) -> None:
        self.store.clear(conversation_key)
        logger.info("codex.session.reset key={}", conversation_key)

    def _child_env(self) -> dict[str, str]:
        source = self._environ if self._environ is not None else os.environ
        env = filter_env_for_child(source)
        api_key = source.get(self.options.api_key_env_var)
        if api_key and not env.get("OPENAI_API_KEY"):
            env["OPENAI_API_KEY"] = api_key
        return env

    def _thread_params(self, context: TurnContext) -> dict[str, Any]:
        params: dict[str, Any] = {
            "cwd": str(context.workspace),
            "model": self.model,
            "approvalPolicy": self.options.approval_policy,
            "sandbox": self.options.sandbox,
        }
        if self.options.model_provider:
            params["modelProvider"] = self.options.model_provider
        return params

    async def run_turn(self, conversation_key: str, text: str, context: TurnContext) -> str:
        saved = self.store.get(conversation_key)
        await context.publish(
            TurnUpdate(kind="turn_started", conversation_key=conversation_key, message="Working on it...")
        )
        self.transcript.log(conversation_key, {"type": "user", "text": text})
        turn = _CodexTurn(
            conversation_key=conversation_key,
            thread_id=saved.session_id if saved else None,
            done=asyncio.get_running_loop().create_future(),
        )
        try:
            reply = await self._execute(turn, text, context, resume=saved is not None)
        except BackendError as exc:
            logger.error("codex.turn.failed key={} turn={} error={}", conversation_key, turn.turn_id, exc)
            return await self._fail(turn, context)
        except Exception:
            logger.exception("codex.turn.error key={} turn={}", conversation_key, turn.turn_id)
            return await self._fail(turn, context)
        finally:
            # Mark a rejected completion signal as retrieved.
            if turn.done.done() and not turn.done.cancelled():
                turn.done.exception()
        return reply

    async def _execute(self, turn: _CodexTurn, text: str, context: TurnContext, *, resume: bool) -> str:
        key = turn.conversation_key
        logger.info("codex.spawn.start key={} command={} args={}", key, self.options.command, self.options.args)
        try:
            proc = await self._spawn(
                self.options.command,
                *self.options.args,
                cwd=str(context.workspace),
                env=self._child_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=MAX_LINE_BYTES,
            )
        except OSError as exc:
            raise BackendSpawnError(f"failed to start codex app-server: {exc}") from exc
        if proc.stdin is None:
            raise BackendSpawnError("codex app-server started without a stdin pipe")

        async def on_notification(notification: RpcNotification) -> None:
            await self._on_notification(turn, context, notification)

        async def on_server_request(request: RpcRequest) -> Any:
            return self._answer_server_request(turn, request)

        connection = RpcConnection(
            proc.stdin,
            name="codex",
            on_notification=on_notification,
            on_server_request=on_server_request,
        )
        stderr_task = asyncio.create_task(drain_stderr(proc.stderr, name="codex", conversation_key=key))
        try:
            async with FrameQueue(connection.handle_line, name="codex") as frames:
                exit_task = asyncio.create_task(self._watch_exit(proc, frames, connection, turn))
                try:
                    try:
                        await self._request_turn(connection, turn, text, context, resume=resume)
                        await turn.done
                        await frames.drain()
                    finally:
                        await close_stdin(proc)
                    await self._await_exit(proc, exit_task, turn)
                except BaseException:
                    turn.stopped_by_us = True
                    await stop_process(proc, grace_seconds=0)
                    raise
                finally:
                    if not exit_task.done():
                        exit_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await exit_task
            await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

        signalled = turn.exit_code is not None and turn.exit_code < 0 and not turn.stopped_by_us
        if turn.failed or signalled:
            logger.error(
                "codex.turn.failed key={} exit={} turn={}", key, describe_exit(turn.exit_code), turn.turn_id
            )
            return await self._fail(turn, context)

        if turn.thread_id:
            self.store.set(key, turn.thread_id, topic_from_text(text))
        logger.info(
            "codex.spawn.exit key={} exit={} activity_seen={}",
            key,
            describe_exit(turn.exit_code),
            turn.activity_seen,
        )
        await context.publish(TurnUpdate(kind="turn_finished", conversation_key=key, message="Turn finished"))
        if turn.response_text:
            self.transcript.log(key, {"type": "assistant_text", "text": turn.response_text})
        return turn.response_text or NO_RESPONSE_TEXT

    async def _request_turn(
        self,
        connection: RpcConnection,
        turn: _CodexTurn,
        text: str,
        context: TurnContext,
        *,
        resume: bool,
    ) -> None:
        await connection.request(
            "initialize",
            {
                "clientInfo": {"name": "claude-pipe", "title": "claude-pipe", "version": __version__},
                "capabilities": {"experimentalApi": False},
            },
        )
        if resume and turn.thread_id:
            response = await connection.request("thread/resume", {"threadId": turn.thread_id, **self._thread_params(context)})
        else:
            response = await connection.request(
                "thread/start", {**self._thread_params(context), "experimentalRawEvents": False}
            )
        thread_id = _as_str(_as_dict(_as_dict(response).get("thread")).get("id"))
        if not thread_id:
            raise BackendError("codex app-server returned no thread id")
        turn.thread_id = thread_id

        await connection.request(
            "turn/start",
            {
                "threadId": thread_id,
                "input": [
                    {
                        "type": "text",
                        "text": f"Workspace: {context.workspace}\n\n{text}",
                        "text_elements": [],
                    }
                ],
                "cwd": str(context.workspace),
                "model": self.model,
                "approvalPolicy": self.options.approval_policy,
            },
        )

    async def _watch_exit(
        self,
        proc: asyncio.subprocess.Process,
        frames: FrameQueue,
        connection: RpcConnection,
        turn: _CodexTurn,
    ) -> None:
        await pump_lines(proc.stdout, frames.submit, name="codex")
        turn.exit_code = await proc.wait()
        await frames.drain()

        if turn.exit_code == 0:
            _settle(turn.done)
        elif not turn.failed:
            error = RpcConnectionClosedError(f"codex exited with {describe_exit(turn.exit_code)}")
            connection.fail_all(error)
            _settle(turn.done, error)
        connection.fail_all(RpcConnectionClosedError("codex app-server exited"))
        _settle(turn.done)

    async def _await_exit(self, proc: asyncio.subprocess.Process, exit_task: asyncio.Task[None], turn: _CodexTurn) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=self._exit_grace_seconds)
        except TimeoutError:
            logger.warning("codex.exit.timeout key={} grace={}", turn.conversation_key, self._exit_grace_seconds)
            turn.stopped_by_us = True
            await stop_process(proc)
            await exit_task

    async def _fail(self, turn: _CodexTurn, context: TurnContext) -> str:
        await context.publish(
            TurnUpdate(kind="turn_finished", conversation_key=turn.conversation_key, message="Turn failed")
        )
        return APOLOGY_TEXT

    def _answer_server_request(self, turn: _CodexTurn, request: RpcRequest) -> Any:
        key = turn.conversation_key
        params = request.params
        if request.method == "item/commandExecution/requestApproval":
            logger.info(
                "codex.approval.exec.request key={} command={} cwd={}",
                key,
                _as_str(params.get("command")) or "",
                _as_str(params.get("cwd")) or "",
            )
            return {"decision": "accept"}
        if request.method == "item/fileChange/requestApproval":
            logger.info("codex.approval.patch.request key={}", key)
            return {"decision": "accept"}
        if request.method == "item/tool/requestUserInput":
            questions = params.get("questions")
            answers: dict[str, dict[str, list[str]]] = {}
            for question in questions if isinstance(questions, list) else []:
                question_id = _as_str(_as_dict(question).get("id"))
                if question_id:
                    answers[question_id] = {"answers": []}
            return {"answers": answers}

        logger.warning("codex.server_request.unhandled key={} method={}", key, request.method)
        raise RpcError(METHOD_NOT_FOUND, f"unsupported method: {request.method}")

    async def _on_notification(self, turn: _CodexTurn, context: TurnContext, notification: RpcNotification) -> None:
        key = turn.conversation_key
        method = notification.method
        params = notification.params
        self.transcript.log(key, {"type": "rpc_notification", "method": method})

        if method == "thread/started":
            thread_id = _as_str(_as_dict(params.get("thread")).get("id"))
            if thread_id:
                turn.thread_id = thread_id
        elif method == "turn/started":
            turn_id = _as_str(_as_dict(params.get("turn")).get("id"))
            if turn_id:
                turn.turn_id = turn_id
        elif method == "item/agentMessage/delta":
            delta = _as_str(params.get("delta"))
            if delta:
                turn.response_text += delta
        elif method == "item/commandExecution/outputDelta":
            turn.activity_seen = True
        elif method == "item/mcpToolCall/progress":
            turn.activity_seen = True
            await context.publish(
                TurnUpdate(
                    kind="tool_call_started",
                    conversation_key=key,
                    message=_as_str(params.get("message")) or "MCP tool in progress",
                    tool_name="mcp",
                    tool_use_id=_as_str(params.get("itemId")),
                )
            )
        elif method == "item/started":
            item = _as_dict(params.get("item"))
            tool_name = item_tool_name(item)
            if tool_name:
                await context.publish(
                    TurnUpdate(
                        kind="tool_call_started",
                        conversation_key=key,
                        message=item_progress_message(item),
                        tool_name=tool_name,
                        tool_use_id=_as_str(item.get("id")),
                    )
                )
        elif method == "item/completed":
            item = _as_dict(params.get("item"))
            tool_name = item_tool_name(item)
            if tool_name and item_failed(item):
                await context.publish(
                    TurnUpdate(
                        kind="tool_call_failed",
                        conversation_key=key,
                        message=item_failure_message(item),
                        tool_name=tool_name,
                        tool_use_id=_as_str(item.get("id")),
                    )
                )
        elif method == "turn/completed":
            turn_info = _as_dict(params.get("turn"))
            turn.failed = turn_info.get("status") == "failed"
            error_message = _as_str(_as_dict(turn_info.get("error")).get("message"))
            if error_message:
                logger.error("codex.turn.error key={} message={}", key, error_message)
            _settle(turn.done)
        elif method == "error":
            logger.warning("codex.notification.error key={} payload={}", key, params)
