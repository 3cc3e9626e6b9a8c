"""
Channels
========

Long-lived messaging integrations that feed inbound text into the agent
and send its replies back.

Every channel implements the same small contract:

    await channel.start(handler)    # handler(IncomingMessage) -> reply text
    channel.is_connected()          # backend link is up right now
    channel.is_running()            # started and not given up
    await channel.send(recipient_id, text)
    await channel.stop()            # no reconnects after this

Channel types:
- whatsapp: WhatsApp Web via a Baileys bridge process
- slack: Slack Socket Mode via Bolt
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


class ChannelError(Exception):
    """A channel operation could not be carried out."""


@dataclass
class IncomingMessage:
    """
    A message received from a channel, normalized across backends.

    Attributes:
        channel_type: "whatsapp", "slack", ...
        channel_name: Configured name of the session it arrived on
        sender_id: Backend-specific sender address (phone number, user id)
        sender_name: Display name when the backend provides one
        text: The message text, trimmed
        timestamp: Epoch milliseconds
        raw: The backend's original payload
    """
    channel_type: str
    channel_name: str
    sender_id: str
    sender_name: str
    text: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    raw: Any = None

    @property
    def conversation_id(self) -> str:
        """One conversation per sender per channel type."""
        return f"{self.channel_type}-{self.sender_id}"


MessageHandler = Callable[[IncomingMessage], Awaitable[str]]


class Channel(ABC):
    """Base class for channel sessions."""

    type: str = ""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def start(self, handler: MessageHandler) -> None:
        """Connect to the backend and begin delivering messages to handler."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and suppress any further reconnects."""

    @abstractmethod
    async def send(self, recipient_id: str, text: str) -> None:
        """Send a text message outside of a reply."""

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    def is_running(self) -> bool:
        ...

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "connected": self.is_connected(),
            "running": self.is_running(),
        }


__all__ = [
    "Channel",
    "ChannelError",
    "IncomingMessage",
    "MessageHandler",
]
