"""Minimal async message bus connecting channels and the agent loop."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from typing import Generic, Protocol, TypeVar

from loguru import logger

from claude_pipe.channels.events import InboundMessage, OutboundMessage
from claude_pipe.core.types import ApprovalRequest, ApprovalResult

T = TypeVar("T")


class BusProtocol(Protocol):
    """Async contract for bus providers used by the agent loop."""

    async def publish_inbound(self, message: InboundMessage) -> None: ...

    async def consume_inbound(self) -> InboundMessage: ...

    async def publish_outbound(self, message: OutboundMessage) -> None: ...

    async def consume_outbound(self) -> OutboundMessage: ...

    async def publish_approval_request(self, request: ApprovalRequest) -> None: ...

    async def consume_approval_request(self) -> ApprovalRequest: ...

    async def publish_approval_result(self, result: ApprovalResult) -> None: ...

    async def wait_for_approval_result(self, request_id: str, timeout_seconds: float) -> ApprovalResult | None: ...


class WaiterQueue(Generic[T]):
    """FIFO buffer plus FIFO list of suspended consumers.

    Each item is delivered exactly once: either handed to the oldest live
    waiter or buffered. All access happens on the event loop thread.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._items: deque[T] = deque()
        self._waiters: deque[asyncio.Future[T]] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def put(self, item: T) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            waiter.set_result(item)
            return
        self._items.append(item)

    async def get(self) -> T:
        if self._items:
            return self._items.popleft()
        waiter: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Handed over just as the consumer was cancelled; keep it at the head.
                self._items.appendleft(waiter.result())
            else:
                with contextlib.suppress(ValueError):
                    self._waiters.remove(waiter)
            raise


class ApprovalResultQueue(WaiterQueue[ApprovalResult]):
    """Approval results with request-id correlated waiters."""

    def __init__(self) -> None:
        super().__init__("approval_results")
        self._matchers: list[tuple[str, asyncio.Future[ApprovalResult]]] = []

    def put(self, item: ApprovalResult) -> None:
        for index, (request_id, future) in enumerate(self._matchers):
            if request_id != item.request_id or future.done():
                continue
            del self._matchers[index]
            future.set_result(item)
            return
        logger.debug("bus.approval_result.unmatched request_id={}", item.request_id)
        super().put(item)

    def take_matching(self, request_id: str) -> ApprovalResult | None:
        for item in self._items:
            if item.request_id == request_id:
                self._items.remove(item)
                return item
        return None

    async def wait_for(self, request_id: str, timeout_seconds: float) -> ApprovalResult | None:
        existing = self.take_matching(request_id)
        if existing is not None:
            return existing

        future: asyncio.Future[ApprovalResult] = asyncio.get_running_loop().create_future()
        entry = (request_id, future)
        self._matchers.append(entry)
        try:
            return await asyncio.wait_for(future, timeout=timeout_seconds)
        except TimeoutError:
            # The result can land in the same loop pass that fires the timeout.
            if future.done() and not future.cancelled():
                return future.result()
            logger.info("bus.approval_result.timeout request_id={} timeout={}", request_id, timeout_seconds)
            return None
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                super().put(future.result())
            raise
        finally:
            with contextlib.suppress(ValueError):
                self._matchers.remove(entry)


class MessageBus:
    """In-memory async bus for inbound, outbound and approval traffic."""

    def __init__(self) -> None:
        self._inbound: WaiterQueue[InboundMessage] = WaiterQueue("inbound")
        self._outbound: WaiterQueue[OutboundMessage] = WaiterQueue("outbound")
        self._approval_requests: WaiterQueue[ApprovalRequest] = WaiterQueue("approval_requests")
        self._approval_results = ApprovalResultQueue()

    async def publish_inbound(self, message: InboundMessage) -> None:
        self._inbound.put(message)

    async def consume_inbound(self) -> InboundMessage:
        return await self._inbound.get()

    async def publish_outbound(self, message: OutboundMessage) -> None:
        self._outbound.put(message)

    async def consume_outbound(self) -> OutboundMessage:
        return await self._outbound.get()

    async def publish_approval_request(self, request: ApprovalRequest) -> None:
        self._approval_requests.put(request)

    async def consume_approval_request(self) -> ApprovalRequest:
        return await self._approval_requests.get()

    async def publish_approval_result(self, result: ApprovalResult) -> None:
        self._approval_results.put(result)

    async def consume_approval_result(self) -> ApprovalResult:
        return await self._approval_results.get()

    async def wait_for_approval_result(self, request_id: str, timeout_seconds: float) -> ApprovalResult | None:
        """Wait for the result of one request; ``None`` when the timeout elapses."""

        return await self._approval_results.wait_for(request_id, timeout_seconds)
