"""
Memory Store
============

File-backed key-value memory that survives restarts. Each key holds one
entry; setting a key again replaces it and refreshes its timestamp.

File Structure:
    ~/.localclaw/
    └── memory/
        └── store.json     # List of entries, read and written wholesale

The newest entries are injected into the system prompt of every new
conversation as a "Remembered context" block, so the model starts each
conversation knowing what it was told to remember.
"""

import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

from localclaw.utils.config import MemoryConfig
from localclaw.utils.logger import Logger

logger = Logger("Memory")

# Entries rendered into a new conversation's system prompt
CONTEXT_ENTRY_LIMIT = 20


@dataclass
class MemoryEntry:
    """
    One remembered fact.

    Attributes:
        id: Unique entry id
        key: Lookup key (unique in the store)
        value: The remembered text
        timestamp: Last write, epoch milliseconds
        metadata: Free-form extra data
    """
    id: str
    key: str
    value: str
    timestamp: int
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEntry":
        return cls(
            id=str(data.get("id") or f"mem_{uuid.uuid4().hex[:8]}"),
            key=str(data["key"]),
            value=str(data.get("value", "")),
            timestamp=int(data.get("timestamp", 0)),
            metadata=data.get("metadata") or {},
        )


class MemoryStore:
    """
    Persistent key-value memory.

    Example:
        store = MemoryStore(config.memory)

        store.set("timezone", "Europe/Rome")
        store.get("timezone")        # "Europe/Rome"
        store.search("rome")         # [MemoryEntry(...)]

        print(store.get_context())
        # Remembered context:
        # [timezone]: Europe/Rome
    """

    def __init__(self, config: MemoryConfig):
        """
        Initialize the store and load existing entries.

        Args:
            config: Whether memory is enabled and where it lives
        """
        self.enabled = config.enabled
        self.directory = config.directory
        self.store_file = config.directory / "store.json"
        self._entries: dict[str, MemoryEntry] = {}

        if self.enabled:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        """Read store.json. A corrupt file is reported and treated as empty."""
        if not self.store_file.exists():
            return
        try:
            raw = json.loads(self.store_file.read_text(encoding="utf-8"))
            for item in raw:
                entry = MemoryEntry.from_dict(item)
                self._entries[entry.key] = entry
            logger.info(f"Loaded {len(self._entries)} memory entries")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load memory from {self.store_file}: {e}")

    def _save(self) -> None:
        entries = [asdict(e) for e in self._entries.values()]
        self.store_file.write_text(json.dumps(entries, indent=2), encoding="utf-8")

    def set(self, key: str, value: str, metadata: dict | None = None) -> None:
        """Create or replace the entry for a key and persist the store."""
        if not self.enabled:
            return
        self._entries[key] = MemoryEntry(
            id=f"mem_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            key=key,
            value=value,
            timestamp=int(time.time() * 1000),
            metadata=metadata or {},
        )
        self._save()
        logger.debug(f"Memory set: {key}")

    def get(self, key: str) -> str | None:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        return entry.value if entry else None

    def delete(self, key: str) -> bool:
        if not self.enabled or key not in self._entries:
            return False
        del self._entries[key]
        self._save()
        return True

    def list_entries(self) -> list[MemoryEntry]:
        """All entries, newest first."""
        return sorted(self._entries.values(), key=lambda e: e.timestamp, reverse=True)

    def search(self, query: str) -> list[MemoryEntry]:
        """Case-insensitive substring match on key or value, newest first."""
        needle = query.lower()
        return [
            e for e in self.list_entries()
            if needle in e.key.lower() or needle in e.value.lower()
        ]

    def get_context(self, limit: int = CONTEXT_ENTRY_LIMIT) -> str:
        """
        Render the newest entries for a system prompt.

        Returns:
            "Remembered context:" followed by one "[key]: value" line per
            entry, or "" when memory is disabled or empty
        """
        if not self.enabled or not self._entries:
            return ""
        lines = [f"[{e.key}]: {e.value}" for e in self.list_entries()[:limit]]
        return "Remembered context:\n" + "\n".join(lines)
