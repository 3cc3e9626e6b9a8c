"""
Memory System
=============

Two layers:

1. CONVERSATIONS: per-conversation message histories (in-memory)
2. STORE: remembered key-value facts (persisted as JSON), injected into
   the system prompt of each new conversation
"""

from localclaw.memory.conversations import ConversationStore, Message
from localclaw.memory.store import MemoryEntry, MemoryStore

__all__ = ["ConversationStore", "Message", "MemoryEntry", "MemoryStore"]
