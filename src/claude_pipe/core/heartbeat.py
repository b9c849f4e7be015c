"""Periodic "still working" notices around long backend calls."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable

from loguru import logger

HEARTBEAT_TEXT = "Still working on it..."


async def _beat(interval_seconds: float, send: Callable[[], Awaitable[None]]) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await send()
        except Exception:
            logger.exception("heartbeat.send.error")


@contextlib.asynccontextmanager
async def heartbeat(interval_seconds: float, send: Callable[[], Awaitable[None]]) -> AsyncIterator[asyncio.Task[None]]:
    """Run ``send`` every ``interval_seconds`` while the block is active.

    The timer task is cancelled when the block exits, whether the wrapped
    call returned, raised, or was cancelled.
    """

    task = asyncio.create_task(_beat(interval_seconds, send))
    try:
        yield task
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
