"""Base channel interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING

from loguru import logger

from claude_pipe.channels.events import OutboundMessage
from claude_pipe.core.types import ApprovalRequest

if TYPE_CHECKING:
    from claude_pipe.bus import BusProtocol


def is_sender_allowed(sender_id: str, allow_from: Iterable[str]) -> bool:
    """Fail-closed allow-list check: an empty list denies everyone.

    Channels that are open by default must handle the empty case first.
    """

    allowed = set(allow_from)
    if not allowed:
        return False
    return sender_id in allowed


class BaseChannel(ABC):
    """Abstract base class for channel adapters."""

    name: str = "base"
    supports_approval: bool = False
    max_message_length: int | None = None

    def __init__(self, bus: BusProtocol) -> None:
        self.bus = bus

    @abstractmethod
    async def start(self) -> None:
        """Run the channel until it is stopped or its input ends."""

    @abstractmethod
    async def stop(self) -> None:
        """Release channel resources."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        """Deliver one outbound message."""

    async def request_approval(self, request: ApprovalRequest) -> None:
        """Present an approval request; channels with an approval UI override this."""
        logger.warning("{}.approval.unsupported request_id={}", self.name, request.id)
