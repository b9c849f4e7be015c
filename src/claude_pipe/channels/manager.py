"""Channel manager."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING

from loguru import logger

from claude_pipe.channels.base import BaseChannel
from claude_pipe.channels.events import OutboundMessage
from claude_pipe.channels.utils import chunk_text

if TYPE_CHECKING:
    from claude_pipe.bus import BusProtocol


class ChannelManager:
    """Own channel lifecycles, outbound dispatch and approval forwarding."""

    def __init__(self, bus: BusProtocol) -> None:
        self.bus = bus
        self._channels: dict[str, BaseChannel] = {}
        self._channel_tasks: list[asyncio.Task[None]] = []
        self._tasks: list[asyncio.Task[None]] = []

    def register(self, channel: BaseChannel) -> None:
        self._channels[channel.name] = channel

    @property
    def channels(self) -> dict[str, BaseChannel]:
        return dict(self._channels)

    def enabled_channels(self) -> Iterable[str]:
        return self._channels.keys()

    def approval_channels(self) -> list[str]:
        return [name for name, channel in self._channels.items() if channel.supports_approval]

    async def start(self) -> None:
        for channel in self._channels.values():
            self._channel_tasks.append(asyncio.create_task(channel.start()))
        self._tasks.extend(self._channel_tasks)
        self._tasks.append(asyncio.create_task(self._dispatch_outbound()))
        self._tasks.append(asyncio.create_task(self._forward_approvals()))
        logger.info("channels.start names={}", list(self._channels))

    async def stop(self) -> None:
        for channel in self._channels.values():
            await channel.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                continue
        self._tasks.clear()
        self._channel_tasks.clear()
        logger.info("channels.stop")

    async def wait_closed(self) -> None:
        """Return once any channel stops reading input."""

        if self._channel_tasks:
            await asyncio.wait(self._channel_tasks, return_when=asyncio.FIRST_COMPLETED)

    async def dispatch_once(self) -> None:
        message = await self.bus.consume_outbound()
        await self.deliver(message)

    async def deliver(self, message: OutboundMessage) -> None:
        channel = self._channels.get(message.channel)
        if channel is None:
            logger.warning("channels.unknown channel={}", message.channel)
            return

        limit = channel.max_message_length
        parts = [message.content]
        if limit is not None and not message.is_progress:
            parts = chunk_text(message.content, limit)
        for part in parts:
            try:
                await channel.send(
                    OutboundMessage(
                        channel=message.channel,
                        chat_id=message.chat_id,
                        content=part,
                        metadata=message.metadata,
                        reply_to_message_id=message.reply_to_message_id,
                    )
                )
            except Exception:
                logger.exception("{}.send.error chat_id={}", channel.name, message.chat_id)
                return

    async def _dispatch_outbound(self) -> None:
        while True:
            await self.dispatch_once()

    async def _forward_approvals(self) -> None:
        while True:
            request = await self.bus.consume_approval_request()
            channel = self._channels.get(request.channel)
            if channel is None or not channel.supports_approval:
                logger.warning("channels.approval.unroutable channel={} request_id={}", request.channel, request.id)
                continue
            try:
                await channel.request_approval(request)
            except Exception:
                logger.exception("{}.approval.error request_id={}", channel.name, request.id)
