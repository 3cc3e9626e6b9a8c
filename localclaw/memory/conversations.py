"""
Conversation Store
==================

In-memory storage for conversation histories. The store:

- Maps a conversation id to its ordered list of messages
- Lives only in RAM (cleared on restart)
- Never reorders or drops messages; histories only grow
- Hands out one asyncio.Lock per conversation so a turn can do its
  read-modify-write without another turn for the same id interleaving

Conversations for different ids share nothing, so they proceed
concurrently. There is no eviction: a long-lived gateway keeps every
history until it is cleared explicitly.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from localclaw.llm.client import ToolCall


@dataclass
class Message:
    """
    A single message in a conversation.

    Attributes:
        role: "system", "user", "assistant" or "tool"
        content: The message text
        tool_calls: Calls requested by an assistant message
        tool_call_id: On a tool message, the id of the call it answers
        timestamp: When the message was appended
    """
    role: str
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the OpenAI chat message format."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data


class ConversationStore:
    """
    Conversation histories keyed by conversation id.

    Example:
        store = ConversationStore()

        async with store.lock("whatsapp-39333"):
            if not store.exists("whatsapp-39333"):
                store.append("whatsapp-39333", Message("system", prompt))
            store.append("whatsapp-39333", Message("user", "hi"))
            history = store.to_openai_messages("whatsapp-39333")
    """

    def __init__(self):
        self._conversations: dict[str, list[Message]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Get the lock that serializes turns for one conversation."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def exists(self, conversation_id: str) -> bool:
        return bool(self._conversations.get(conversation_id))

    def append(self, conversation_id: str, message: Message) -> None:
        """Append a message, creating the conversation if needed."""
        self._conversations.setdefault(conversation_id, []).append(message)

    def get(self, conversation_id: str) -> list[Message]:
        """Return a copy of the history (oldest first)."""
        return list(self._conversations.get(conversation_id, []))

    def to_openai_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._conversations.get(conversation_id, [])]

    def clear(self, conversation_id: str) -> bool:
        """
        Forget a conversation.

        Returns:
            True if there was anything to clear
        """
        # The lock stays: a turn may still be holding it
        return self._conversations.pop(conversation_id, None) is not None

    def conversation_ids(self) -> list[str]:
        return list(self._conversations)

    def get_message_count(self, conversation_id: str) -> int:
        return len(self._conversations.get(conversation_id, []))
