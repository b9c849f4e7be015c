"""Channel adapters and event models."""

from claude_pipe.channels.base import BaseChannel, is_sender_allowed
from claude_pipe.channels.cli import CliChannel
from claude_pipe.channels.events import InboundMessage, OutboundMessage
from claude_pipe.channels.manager import ChannelManager

__all__ = [
    "BaseChannel",
    "ChannelManager",
    "CliChannel",
    "InboundMessage",
    "OutboundMessage",
    "is_sender_allowed",
]
