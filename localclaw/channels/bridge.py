"""
WhatsApp Bridge Client
======================

WebSocket client for the Baileys bridge: a small Node process that owns
the actual WhatsApp Web connection and relays it as JSON frames.

Client -> bridge:
    {"op": "hello", "session": "personal", "creds": {...} | null}
    {"op": "send", "ref": "r1", "jid": "...", "text": "..."}
    {"op": "presence", "jid": "...", "state": "composing" | "paused"}
    {"op": "presence.subscribe", "jid": "..."}
    {"op": "message", "ref": "r2", "id": "...", "text": "..." | null}

Bridge -> client:
    {"event": "connection.update", "connection", "statusCode", "reason", "qr", "me"}
    {"event": "creds.update", "creds": {...}}
    {"event": "messages.upsert", "type", "messages": [...]}
    {"event": "ack", "ref": "r1", "id": "3EB0...", "error": null}
    {"event": "message.retry", "ref": "r2", "id": "3EB0..."}

Session events are handed to the emit callback untouched in order. Acks
resolve the matching send() and retry requests are answered from the
get_message lookup (the session's outbound cache). If the socket drops
without the bridge announcing a close, a close update is emitted so the
session can schedule a reconnect.
"""

import asyncio
import json
import uuid
from typing import Any, Callable

import websockets

from localclaw.channels import ChannelError
from localclaw.channels.events import ChannelEvent, ConnectionUpdate, parse_event
from localclaw.utils.logger import Logger

logger = Logger("WhatsAppBridge")

DEFAULT_BRIDGE_URL = "ws://127.0.0.1:3001"


class WhatsAppBridge:
    """
    One connection to the bridge for one session.

    Example:
        bridge = WhatsAppBridge(url, "personal", emit=queue.put_nowait)
        await bridge.connect(saved_creds)
        message_id = await bridge.send_text("39333...@s.whatsapp.net", "hi")
        await bridge.close()
    """

    def __init__(
        self,
        url: str,
        session: str,
        emit: Callable[[ChannelEvent], None],
        get_message: Callable[[str], str | None] | None = None,
        connect_timeout: float = 10.0,
        ack_timeout: float = 30.0
    ):
        self.url = url
        self.session = session
        self._emit = emit
        self._get_message = get_message
        self.connect_timeout = connect_timeout
        self.ack_timeout = ack_timeout

        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closing = False

    async def connect(self, creds: dict[str, Any] | None) -> None:
        """
        Open the socket and introduce the session.

        Raises:
            ChannelError: If the bridge can't be reached in time
        """
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.url, max_size=None),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise ChannelError(f"Could not reach WhatsApp bridge at {self.url}: {e}") from e

        await self._send_op({"op": "hello", "session": self.session, "creds": creds})
        self._reader = asyncio.create_task(self._read_loop())
        logger.debug(f"Connected to bridge at {self.url}")

    async def _send_op(self, frame: dict[str, Any]) -> None:
        if self._ws is None:
            raise ChannelError("WhatsApp bridge is not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelError(f"WhatsApp bridge connection closed: {e}") from e

    async def _read_loop(self) -> None:
        reason = "bridge connection lost"
        try:
            async for raw in self._ws:
                try:
                    frame = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed frame from bridge")
                    continue
                if isinstance(frame, dict):
                    await self._dispatch(frame)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"bridge connection closed ({e})"
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ChannelError(reason))
            self._pending.clear()

            if not self._closing:
                self._emit(ConnectionUpdate(connection="close", reason=reason))

    async def _dispatch(self, frame: dict[str, Any]) -> None:
        kind = frame.get("event")

        if kind == "ack":
            future = self._pending.pop(str(frame.get("ref")), None)
            if future is None or future.done():
                return
            if frame.get("error"):
                future.set_exception(ChannelError(str(frame["error"])))
            else:
                future.set_result(frame.get("id"))
            return

        if kind == "message.retry":
            message_id = str(frame.get("id") or "")
            text = self._get_message(message_id) if self._get_message else None
            logger.debug(f"Retry requested for {message_id} ({'found' if text else 'missing'})")
            await self._send_op({
                "op": "message", "ref": frame.get("ref"), "id": message_id, "text": text,
            })
            return

        event = parse_event(frame)
        if event is None:
            logger.debug(f"Ignoring bridge frame: {kind}")
            return
        self._emit(event)

    async def send_text(self, jid: str, text: str) -> str | None:
        """
        Send a text message and wait for the bridge's ack.

        Returns:
            The id WhatsApp assigned to the sent message, if reported

        Raises:
            ChannelError: On a bridge-side error, a dropped socket or no ack
        """
        ref = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future

        await self._send_op({"op": "send", "ref": ref, "jid": jid, "text": text})
        try:
            return await asyncio.wait_for(future, timeout=self.ack_timeout)
        except asyncio.TimeoutError as e:
            raise ChannelError(f"No ack from bridge for message to {jid}") from e
        finally:
            self._pending.pop(ref, None)

    async def send_presence(self, state: str, jid: str) -> None:
        await self._send_op({"op": "presence", "jid": jid, "state": state})

    async def presence_subscribe(self, jid: str) -> None:
        await self._send_op({"op": "presence.subscribe", "jid": jid})

    async def close(self) -> None:
        """Close the socket without emitting a close update."""
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing bridge socket: {e}")
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._reader = None
