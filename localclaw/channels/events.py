"""
Channel Events
==============

Typed events a WhatsApp backend puts on a session's event queue. The
session's consumer task is the only code that reacts to them, so every
state transition happens in one place and in arrival order.
"""

from dataclasses import dataclass, field
from typing import Any

# Close status meaning the linked device was removed from the phone
LOGGED_OUT_STATUS = 401


@dataclass
class ConnectionUpdate:
    """
    Connection status change.

    Attributes:
        connection: "connecting", "open" or "close" (None for QR-only updates)
        status_code: Close status reported by the backend, if any
        reason: Human-readable close reason
        qr: Pairing code to render when the device is not linked yet
        me: The session's own JID once known, e.g. "393331234567:12@s.whatsapp.net"
    """
    connection: str | None = None
    status_code: int | None = None
    reason: str | None = None
    qr: str | None = None
    me: str | None = None

    @property
    def logged_out(self) -> bool:
        return self.status_code == LOGGED_OUT_STATUS


@dataclass
class CredentialsUpdate:
    """The backend's auth state changed and must be persisted."""
    creds: dict[str, Any]


@dataclass
class MessagesUpsert:
    """A batch of inbound (or self-echoed) messages."""
    messages: list[dict[str, Any]] = field(default_factory=list)
    type: str = "notify"


ChannelEvent = ConnectionUpdate | CredentialsUpdate | MessagesUpsert


def parse_event(frame: dict[str, Any]) -> ChannelEvent | None:
    """
    Turn a bridge frame into a typed event.

    Returns:
        The event, or None for frames that aren't session events
    """
    kind = frame.get("event")

    if kind == "connection.update":
        status = frame.get("statusCode")
        if isinstance(status, bool) or not isinstance(status, int):
            status = None
        return ConnectionUpdate(
            connection=frame.get("connection"),
            status_code=status,
            reason=frame.get("reason"),
            qr=frame.get("qr"),
            me=frame.get("me"),
        )

    if kind == "creds.update":
        creds = frame.get("creds")
        return CredentialsUpdate(creds=creds) if isinstance(creds, dict) else None

    if kind == "messages.upsert":
        messages = frame.get("messages")
        if not isinstance(messages, list):
            return None
        return MessagesUpsert(
            messages=[m for m in messages if isinstance(m, dict)],
            type=frame.get("type") or "notify",
        )

    return None
