"""Subprocess plumbing shared by the CLI-driven backends."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any, Protocol

from loguru import logger

#: One stream-json frame can carry a whole file; keep the reader limit generous.
MAX_LINE_BYTES = 16 * 1024 * 1024


class Spawn(Protocol):
    def __call__(self, program: str, *args: str, **kwargs: Any) -> Awaitable[asyncio.subprocess.Process]: ...


LineHandler = Callable[[str], Awaitable[None]]


def truncate(value: str, limit: int = 2000) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}...(truncated)"


def describe_exit(returncode: int | None) -> str:
    if returncode is None:
        return "running"
    if returncode < 0:
        try:
            return f"signal {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal {-returncode}"
    return f"code {returncode}"


def command_progress_label(command: str) -> str:
    """Render ``Exec <binary>: "<command>"`` for progress messages."""

    stripped = command.strip()
    first = stripped.split()[0] if stripped else ""
    binary = first.rsplit("/", 1)[-1].lower()
    action = f"Exec {binary}" if binary else "Exec command"
    return f"{action}: {json.dumps(stripped or command)}"


class FrameQueue:
    """Sequential worker that handles stdout lines strictly in arrival order.

    Handler failures are logged and the line is skipped; the worker keeps
    going. ``drain`` waits until every submitted line was handled.
    """

    def __init__(self, handler: LineHandler, *, name: str) -> None:
        self._handler = handler
        self._name = name
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    async def __aenter__(self) -> FrameQueue:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())

    def submit(self, line: str) -> None:
        self._queue.put_nowait(line)

    async def drain(self) -> None:
        await self._queue.join()

    async def close(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def _run(self) -> None:
        while True:
            line = await self._queue.get()
            try:
                await self._handler(line)
            except Exception as exc:
                logger.warning("{}.frame.skipped error={} line={}", self._name, exc, truncate(line, 500))
            finally:
                self._queue.task_done()


async def pump_lines(stream: asyncio.StreamReader | None, on_line: Callable[[str], None], *, name: str) -> None:
    """Feed each non-empty decoded line of ``stream`` to ``on_line`` until EOF."""

    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            logger.warning("{}.stdout.line_too_long limit={}", name, MAX_LINE_BYTES)
            continue
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").strip()
        if line:
            on_line(line)


async def drain_stderr(stream: asyncio.StreamReader | None, *, name: str, conversation_key: str) -> int:
    """Log stderr line by line; return the number of bytes seen."""

    if stream is None:
        return 0
    total = 0
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            continue
        if not raw:
            break
        total += len(raw)
        line = raw.decode("utf-8", errors="replace").strip()
        if line:
            logger.info("{}.stderr key={} line={}", name, conversation_key, truncate(line))
    if total:
        logger.info("{}.stderr.summary key={} bytes={}", name, conversation_key, total)
    return total


async def close_stdin(proc: asyncio.subprocess.Process) -> None:
    stdin = proc.stdin
    if stdin is None or stdin.is_closing():
        return
    stdin.close()
    with contextlib.suppress(BrokenPipeError, ConnectionResetError):
        await stdin.wait_closed()


async def stop_process(proc: asyncio.subprocess.Process, *, grace_seconds: float = 2.0) -> None:
    """Terminate a child, escalating to kill when it ignores SIGTERM."""

    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
