"""Newline-delimited JSON-RPC connection over a subprocess' stdio."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from loguru import logger

from claude_pipe.backends._process import truncate
from claude_pipe.errors import RpcConnectionClosedError, RpcError

METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RpcId = int | str
MessageKind = Literal["response", "request", "notification"]


class LineWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


@dataclass(frozen=True)
class RpcRequest:
    """A request initiated by the server."""

    id: RpcId
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RpcNotification:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


NotificationHandler = Callable[[RpcNotification], Awaitable[None]]
ServerRequestHandler = Callable[[RpcRequest], Awaitable[Any]]


def classify_message(payload: object) -> MessageKind | None:
    """Tell responses, server requests and notifications apart."""

    if not isinstance(payload, dict):
        return None
    has_id = isinstance(payload.get("id"), int | str)
    has_method = isinstance(payload.get("method"), str)
    if has_id and has_method:
        return "request"
    if has_id and ("result" in payload or "error" in payload):
        return "response"
    if has_method and "id" not in payload:
        return "notification"
    return None


def _params(payload: dict[str, Any]) -> dict[str, Any]:
    params = payload.get("params")
    return params if isinstance(params, dict) else {}


class RpcConnection:
    """Client half of a JSON-RPC session over NDJSON lines.

    Outgoing ids increase per connection. Each request parks a future in the
    pending map until its response arrives or ``fail_all`` rejects it.
    Server requests are answered with the handler's return value, or with
    an error object when the handler raises ``RpcError``.
    """

    def __init__(
        self,
        writer: LineWriter,
        *,
        name: str,
        on_notification: NotificationHandler,
        on_server_request: ServerRequestHandler,
    ) -> None:
        self.name = name
        self._writer = writer
        self._on_notification = on_notification
        self._on_server_request = on_server_request
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._closed: BaseException | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def request(self, method: str, params: dict[str, Any]) -> Any:
        if self._closed is not None:
            raise RpcConnectionClosedError(f"{self.name} connection closed: {self._closed}")
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        except RpcConnectionClosedError:
            self._pending.pop(request_id, None)
            raise
        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def respond(self, request_id: RpcId, result: Any) -> None:
        await self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def respond_error(self, request_id: RpcId, code: int, message: str) -> None:
        await self._send({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})

    def fail_all(self, error: BaseException) -> None:
        """Reject every pending request; later requests fail immediately."""

        if self._closed is None:
            self._closed = error
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def handle_line(self, line: str) -> None:
        payload = json.loads(line)
        kind = classify_message(payload)
        if kind == "response":
            self._resolve(payload)
        elif kind == "request":
            await self._answer(RpcRequest(id=payload["id"], method=payload["method"], params=_params(payload)))
        elif kind == "notification":
            await self._on_notification(RpcNotification(method=payload["method"], params=_params(payload)))
        else:
            logger.warning("{}.stdout.unclassified line={}", self.name, truncate(line))

    def _resolve(self, payload: dict[str, Any]) -> None:
        response_id = payload["id"]
        future = self._pending.pop(response_id, None) if isinstance(response_id, int) else None
        if future is None:
            logger.warning("{}.rpc.unmatched_response id={}", self.name, response_id)
            return
        if future.done():
            return
        error = payload.get("error")
        if isinstance(error, dict):
            future.set_exception(RpcError(int(error.get("code", INTERNAL_ERROR)), str(error.get("message", ""))))
        else:
            future.set_result(payload.get("result"))

    async def _answer(self, request: RpcRequest) -> None:
        try:
            result = await self._on_server_request(request)
        except RpcError as exc:
            await self.respond_error(request.id, exc.code, exc.rpc_message)
            return
        await self.respond(request.id, result)

    async def _send(self, message: dict[str, Any]) -> None:
        line = json.dumps(message, ensure_ascii=False)
        logger.debug("{}.stdin line={}", self.name, truncate(line))
        try:
            self._writer.write(f"{line}\n".encode())
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise RpcConnectionClosedError(f"{self.name} stdin closed: {exc}") from exc
