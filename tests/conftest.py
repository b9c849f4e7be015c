from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from claude_pipe.core.types import SessionRecord


class FakeStdin:
    """Collects NDJSON lines written by the client and hands each to a script."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.on_message: Callable[[dict[str, Any]], None] | None = None
        self.on_close: Callable[[], None] | None = None
        self._buffer = b""
        self._closed = False

    def write(self, data: bytes) -> None:
        self._buffer += data
        while b"\n" in self._buffer:
            raw, self._buffer = self._buffer.split(b"\n", 1)
            message = json.loads(raw)
            self.messages.append(message)
            if self.on_message is not None:
                self.on_message(message)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.on_close is not None:
            self.on_close()

    async def wait_closed(self) -> None:
        return None


class FakeProcess:
    """Stand-in for ``asyncio.subprocess.Process`` driven by the test."""

    def __init__(self, *, with_stdin: bool = False) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeStdin() if with_stdin else None
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def emit(self, frame: dict[str, Any]) -> None:
        self.stdout.feed_data((json.dumps(frame) + "\n").encode())

    def emit_raw(self, line: str) -> None:
        self.stdout.feed_data((line + "\n").encode())

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawn:
    def __init__(self, proc: FakeProcess | None = None, error: Exception | None = None) -> None:
        self.proc = proc
        self.error = error
        self.calls: list[tuple[str, list[str], dict[str, Any]]] = []

    async def __call__(self, program: str, *args: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((program, list(args), kwargs))
        if self.error is not None:
            raise self.error
        assert self.proc is not None
        return self.proc

    @property
    def args(self) -> list[str]:
        return self.calls[0][1]


class FakeStore:
    def __init__(self, records: dict[str, SessionRecord] | None = None) -> None:
        self.records = dict(records or {})
        self.set_calls: list[tuple[str, str, str | None]] = []
        self.cleared: list[str] = []

    def get(self, key: str) -> SessionRecord | None:
        return self.records.get(key)

    def set(self, key: str, session_id: str, topic: str | None = None) -> None:
        self.set_calls.append((key, session_id, topic))
        self.records[key] = SessionRecord(session_id=session_id, updated_at="now", topic=topic)

    def clear(self, key: str) -> None:
        self.cleared.append(key)
        self.records.pop(key, None)


@pytest.fixture
def fake_process() -> Callable[..., FakeProcess]:
    return FakeProcess


@pytest.fixture
def fake_spawn() -> type[FakeSpawn]:
    return FakeSpawn


@pytest.fixture
def fake_store() -> type[FakeStore]:
    return FakeStore
