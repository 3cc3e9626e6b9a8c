"""
WhatsApp Channel
================

A durable WhatsApp session: reconnects with backoff, drops redelivered
messages and echoes of its own sends, and replies through the agent.

State machine:

    disconnected ──start──► connecting ──open──► open
         ▲                      │                  │
         │                    close              close
         │                      ▼                  ▼
         └──── backoff ◄── disconnected ◄──────────┘
                               │
                 logged out / attempts exhausted
                               ▼
                      disconnected + fatal_reason

Every backend callback lands on one asyncio.Queue; a single consumer
task applies the transitions in arrival order. handle_event() is public
so the machine can be driven without a backend.

Reconnect policy:
    attempt n waits min(1000 * 2**n, 60000) ms, for n = 1..10. The
    counter returns to 0 only when the connection opens, even across
    stop() and start(): a restart after exhausting the attempts gets one
    try. A close with status 401 (device unlinked) is never retried. A
    close that arrives while already disconnected is ignored, so a
    bridge's close notice and the socket drop that follows it don't
    schedule two reconnects.

Inbound pipeline, per message:
    missing key/body/jid       -> drop
    fromMe + id we sent        -> drop (consumed once)
    fromMe in an append batch  -> drop (our send, ack not seen yet)
    id already processed       -> drop (redelivery)
    group when DM-only         -> drop
    sender not allowed         -> drop
    no text                    -> drop
    otherwise                  -> composing, agent, paused, reply

Options (channels[].config):
    bridgeUrl                  ws://127.0.0.1:3001
    authDir                    ~/.localclaw/whatsapp/<name>
    allowedSenders             ["393331234567"]; empty allows everyone
    replyOnlyToDirectMessages  false
    dedupMaxSize               1000
    dedupEvictFraction         0.5
"""

import asyncio
import json
import re
import time
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from localclaw.channels import Channel, ChannelError, IncomingMessage, MessageHandler
from localclaw.channels.bridge import DEFAULT_BRIDGE_URL, WhatsAppBridge
from localclaw.channels.dedup import DEFAULT_EVICT_FRACTION, DEFAULT_MAX_SIZE, RecentIds
from localclaw.channels.events import (
    ChannelEvent,
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
)
from localclaw.utils.logger import Logger

logger = Logger("WhatsApp")

MAX_RECONNECT_ATTEMPTS = 10
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 60_000

# Sent messages stay recognizable (and retryable) this long
OUTBOUND_TTL_SECONDS = 5 * 60

USER_JID_SUFFIX = "@s.whatsapp.net"
LID_SUFFIX = "@lid"
_SENDER_SUFFIX = re.compile(r"@(s\.whatsapp\.net|lid)$")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class WhatsAppBackend(Protocol):
    """What the session needs from a connection (the bridge, or a fake)."""

    async def connect(self, creds: dict[str, Any] | None) -> None: ...
    async def send_text(self, jid: str, text: str) -> str | None: ...
    async def send_presence(self, state: str, jid: str) -> None: ...
    async def presence_subscribe(self, jid: str) -> None: ...
    async def close(self) -> None: ...


BackendFactory = Callable[[Callable[[ChannelEvent], None]], WhatsAppBackend]


def backoff_delay_ms(attempt: int) -> int:
    """Reconnect delay for the given (1-based) attempt."""
    return min(BASE_DELAY_MS * 2 ** attempt, MAX_DELAY_MS)


def sender_number(jid: str) -> str:
    """'393331234567@s.whatsapp.net' -> '393331234567'."""
    return _SENDER_SUFFIX.sub("", jid)


def is_direct_jid(jid: str) -> bool:
    return jid.endswith(USER_JID_SUFFIX) or jid.endswith(LID_SUFFIX)


def extract_text(message: dict[str, Any]) -> str:
    """Text of the first populated content field across known message shapes."""
    candidates = (
        message.get("conversation"),
        (message.get("extendedTextMessage") or {}).get("text"),
        (message.get("imageMessage") or {}).get("caption"),
        (message.get("videoMessage") or {}).get("caption"),
    )
    for text in candidates:
        if text:
            return str(text)
    return ""


class WhatsAppChannel(Channel):
    """
    One WhatsApp account.

    Example:
        channel = WhatsAppChannel("personal", {"allowedSenders": ["39333..."]})
        await channel.start(handler)
        channel.describe()   # {"state": "open", "reconnect_attempt": 0, ...}
        await channel.stop()
    """

    type = "whatsapp"

    def __init__(
        self,
        name: str,
        options: dict[str, Any] | None = None,
        backend_factory: BackendFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        home_dir: Path | None = None
    ):
        """
        Initialize the session (no I/O happens until start()).

        Args:
            name: Configured channel name
            options: The channel's config block
            backend_factory: Builds a backend bound to an emit callback;
                defaults to a WhatsAppBridge
            sleep: Backoff sleep, injectable for tests
            home_dir: Base for the default auth directory
        """
        super().__init__(name)
        options = options or {}
        self.log = logger.child(name)

        default_auth = (home_dir or Path.home() / ".localclaw") / "whatsapp" / name
        self.auth_dir = Path(options.get("authDir") or default_auth).expanduser()
        self.bridge_url = options.get("bridgeUrl") or DEFAULT_BRIDGE_URL
        self.allowed_senders = [str(s) for s in options.get("allowedSenders") or []]
        self.direct_only = bool(options.get("replyOnlyToDirectMessages", False))

        max_size = int(options.get("dedupMaxSize", DEFAULT_MAX_SIZE))
        evict_fraction = float(options.get("dedupEvictFraction", DEFAULT_EVICT_FRACTION))

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempt = 0
        self.fatal_reason: str | None = None
        self.own_jid: str | None = None
        self.pending_qr: str | None = None

        self.processed_ids = RecentIds(max_size, evict_fraction=evict_fraction)
        self.self_sent_ids = RecentIds(max_size, ttl=OUTBOUND_TTL_SECONDS, evict_fraction=evict_fraction)
        self.outbound_cache = RecentIds(max_size, ttl=OUTBOUND_TTL_SECONDS, evict_fraction=evict_fraction)

        self._backend_factory = backend_factory or self._bridge_factory
        self._sleep = sleep
        self._handler: MessageHandler | None = None
        self._backend: WhatsAppBackend | None = None
        self._generation = 0
        self._running = False
        self._stopping = False

        self._queue: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reply_tasks: set[asyncio.Task] = set()

    def _bridge_factory(self, emit: Callable[[ChannelEvent], None]) -> WhatsAppBackend:
        return WhatsAppBridge(
            self.bridge_url,
            self.name,
            emit=emit,
            get_message=self.outbound_cache.get,
        )

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self, handler: MessageHandler) -> None:
        """Begin the session. Connection failures are retried, not raised."""
        await self._shutdown_tasks()

        self._handler = handler
        self._stopping = False
        self._running = True
        self.fatal_reason = None

        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume())
        await self._connect()

    async def stop(self) -> None:
        """Close the session. No reconnect is scheduled after this."""
        self._stopping = True
        self._running = False
        self.state = ConnectionState.CLOSING

        await self._shutdown_tasks()
        for task in list(self._reply_tasks):
            task.cancel()
        await asyncio.gather(*self._reply_tasks, return_exceptions=True)
        self._reply_tasks.clear()

        self.state = ConnectionState.DISCONNECTED
        self.log.info("WhatsApp channel stopped")

    async def _shutdown_tasks(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        await self._release_backend()

        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    async def _release_backend(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            try:
                await backend.close()
            except Exception as e:
                self.log.warning(f"Error closing backend: {e}")

    async def _connect(self) -> None:
        await self._release_backend()

        # Events from an older backend are dropped once a new one exists
        self._generation += 1
        generation = self._generation

        def emit(event: ChannelEvent) -> None:
            if generation == self._generation:
                self._queue.put_nowait(event)

        self.state = ConnectionState.CONNECTING
        self.log.info(f"Connecting (attempt {self.reconnect_attempt})")

        backend = self._backend_factory(emit)
        self._backend = backend
        try:
            await backend.connect(self._load_creds())
        except Exception as e:
            self.log.warning(f"Connect failed: {e}")
            emit(ConnectionUpdate(connection="close", reason=str(e)))

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                self.log.error("Error handling event", e)

    # ==========================================================================
    # State machine
    # ==========================================================================

    async def handle_event(self, event: ChannelEvent) -> None:
        """Apply one backend event."""
        if isinstance(event, ConnectionUpdate):
            self._on_connection_update(event)
        elif isinstance(event, CredentialsUpdate):
            self._save_creds(event.creds)
        elif isinstance(event, MessagesUpsert):
            self.log.debug(f"messages.upsert: type={event.type}, count={len(event.messages)}")
            for message in event.messages:
                self._on_message(message, event.type)

    def _on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.me:
            self.own_jid = update.me

        if update.qr:
            self.pending_qr = update.qr
            self.log.info("Scan the QR code with WhatsApp (Settings > Linked Devices):")
            self.log.info(update.qr)

        if update.connection == "connecting":
            self.state = ConnectionState.CONNECTING

        elif update.connection == "open":
            self.state = ConnectionState.OPEN
            self.reconnect_attempt = 0
            self.pending_qr = None
            self.log.info("WhatsApp connected")

        elif update.connection == "close":
            self._on_close(update)

    def _on_close(self, update: ConnectionUpdate) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            self.log.debug("Close while already disconnected, ignoring")
            return

        self.state = ConnectionState.DISCONNECTED
        if self._stopping:
            return

        self.log.warning(
            f"Disconnected: status={update.status_code}, reason={update.reason or 'unknown'}"
        )

        if update.logged_out:
            self.fatal_reason = "logged_out"
            self.log.warning(f"Logged out. Delete {self.auth_dir} and restart to re-link.")
            return

        if self.reconnect_attempt >= MAX_RECONNECT_ATTEMPTS:
            self.fatal_reason = "max_reconnect_attempts"
            self.log.error("Max reconnection attempts reached")
            return

        self.reconnect_attempt += 1
        delay_ms = backoff_delay_ms(self.reconnect_attempt)
        self.log.info(
            f"Reconnecting in {delay_ms / 1000:g}s "
            f"(attempt {self.reconnect_attempt}/{MAX_RECONNECT_ATTEMPTS})"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay_ms))

    async def _reconnect_after(self, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        if self._stopping:
            return
        await self._connect()

    # ==========================================================================
    # Inbound messages
    # ==========================================================================

    def _on_message(self, raw: dict[str, Any], upsert_type: str = "notify") -> None:
        key = raw.get("key") or {}
        body = raw.get("message")
        jid = key.get("remoteJid")
        message_id = key.get("id")

        if not key or not body or not jid:
            self.log.debug("Skipped: missing key, message or jid")
            return

        if key.get("fromMe") and message_id and self.self_sent_ids.consume(message_id):
            self.log.debug(f"Skipped: own message {message_id}")
            return

        # Sends from this session come back as "append", possibly before the send ack
        if key.get("fromMe") and upsert_type == "append":
            self.log.debug(f"Skipped: appended own message {message_id}")
            return

        if not message_id or message_id in self.processed_ids:
            self.log.debug(f"Skipped: duplicate {message_id}")
            return
        self.processed_ids.add(message_id)

        if self.direct_only and not is_direct_jid(jid):
            self.log.debug(f"Skipped: not a direct message ({jid})")
            return

        number = sender_number(jid)
        if self.allowed_senders and number not in self.allowed_senders:
            self.log.info(f"Skipped: sender {number} not in allowedSenders")
            return

        text = extract_text(body).strip()
        if not text:
            return

        timestamp = raw.get("messageTimestamp")
        incoming = IncomingMessage(
            channel_type=self.type,
            channel_name=self.name,
            sender_id=number,
            sender_name=raw.get("pushName") or number,
            text=text,
            timestamp=int(timestamp) * 1000 if timestamp else int(time.time() * 1000),
            raw=raw,
        )

        if self._handler is None:
            return

        task = asyncio.create_task(self._reply(jid, incoming))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    def resolve_reply_jid(self, jid: str) -> str:
        """
        Map a sender address to one that can receive messages.

        LID addresses can't be written to; replies go to the session's own
        phone-number JID with the device part removed.
        """
        if jid.endswith(LID_SUFFIX) and self.own_jid:
            resolved = re.sub(r":.*@", "@", self.own_jid)
            self.log.info(f"Resolved LID {jid} to {resolved}")
            return resolved
        return jid

    async def _reply(self, jid: str, incoming: IncomingMessage) -> None:
        backend = self._backend
        try:
            if backend is not None:
                await backend.presence_subscribe(jid)
                await backend.send_presence("composing", jid)

            response = await self._handler(incoming)

            if self._backend is not None:
                await self._backend.send_presence("paused", jid)

            if response and self._backend is not None:
                reply_jid = self.resolve_reply_jid(jid)
                message_id = await self._backend.send_text(reply_jid, response)
                self.log.info(f"Sent reply to {reply_jid}, id={message_id}")
                if message_id:
                    self.self_sent_ids.add(message_id)
                    self.outbound_cache.add(message_id, response)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error("Error handling WhatsApp message", e)
            if self._backend is not None:
                try:
                    await self._backend.send_presence("paused", jid)
                except Exception as presence_error:
                    self.log.debug(f"Could not clear presence: {presence_error}")

    async def drain(self) -> None:
        """Wait for queued events, a pending reconnect and in-flight replies."""
        while True:
            if self._consumer is not None and not self._queue.empty():
                await asyncio.sleep(0)
                continue
            pending = list(self._reply_tasks)
            if self._reconnect_task is not None and not self._reconnect_task.done():
                pending.append(self._reconnect_task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ==========================================================================
    # Outbound and status
    # ==========================================================================

    async def send(self, recipient_id: str, text: str) -> None:
        if self._backend is None or self.state != ConnectionState.OPEN:
            raise ChannelError("WhatsApp is not connected")
        jid = recipient_id if "@" in recipient_id else f"{recipient_id}{USER_JID_SUFFIX}"
        message_id = await self._backend.send_text(jid, text)
        if message_id:
            self.self_sent_ids.add(message_id)
            self.outbound_cache.add(message_id, text)

    def is_connected(self) -> bool:
        return self.state == ConnectionState.OPEN

    def is_running(self) -> bool:
        return self._running and self.fatal_reason is None

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info.update({
            "state": self.state.value,
            "reconnect_attempt": self.reconnect_attempt,
            "fatal_reason": self.fatal_reason,
            "awaiting_qr_scan": self.pending_qr is not None,
        })
        return info

    # ==========================================================================
    # Credentials
    # ==========================================================================

    @property
    def creds_file(self) -> Path:
        return self.auth_dir / "creds.json"

    def _load_creds(self) -> dict[str, Any] | None:
        if not self.creds_file.exists():
            return None
        try:
            return json.loads(self.creds_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self.log.warning(f"Ignoring unreadable credentials at {self.creds_file}: {e}")
            return None

    def _save_creds(self, creds: dict[str, Any]) -> None:
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        self.creds_file.write_text(json.dumps(creds), encoding="utf-8")
        self.creds_file.chmod(0o600)
        self.log.debug("Credentials saved")
