"""
Slack Channel
=============

A Slack workspace as a channel, over Socket Mode (no public URL needed).

Events handled:
- message (channel_type "im"): direct messages to the bot
- app_mention: @mentions in channels, answered in the thread

Reconnection is owned by the Socket Mode client. The session adds what
Slack doesn't guarantee on its own:
- Redelivery dedup, keyed on client_msg_id (or ts)
- Suppression of the bot's own messages (bot_id, and the ts of each reply)
- The same filters as WhatsApp: DM-only and a sender allow-list
- An "eyes" reaction while the agent is working, removed afterwards

Options (channels[].config):
    botToken                   xoxb-... (or SLACK_BOT_TOKEN)
    appToken                   xapp-... (or SLACK_APP_TOKEN)
    signingSecret              optional (or SLACK_SIGNING_SECRET)
    allowedSenders             ["U0123ABC"]; empty allows everyone
    replyOnlyToDirectMessages  false
"""

import asyncio
import os
import re
import time
from typing import Any

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from localclaw.channels import Channel, ChannelError, IncomingMessage, MessageHandler
from localclaw.channels.dedup import RecentIds
from localclaw.channels.whatsapp import OUTBOUND_TTL_SECONDS
from localclaw.utils.logger import Logger

logger = Logger("Slack")

WORKING_REACTION = "eyes"

# Mentions look like <@U123ABC>
_MENTION = re.compile(r"<@[A-Z0-9]+>")


class SlackChannel(Channel):
    """
    One Slack app installation.

    Example:
        channel = SlackChannel("work", {"botToken": "xoxb-...", "appToken": "xapp-..."})
        await channel.start(handler)
    """

    type = "slack"

    def __init__(self, name: str, options: dict[str, Any] | None = None):
        super().__init__(name)
        options = options or {}
        self.log = logger.child(name)

        self.bot_token = options.get("botToken") or os.getenv("SLACK_BOT_TOKEN", "")
        self.app_token = options.get("appToken") or os.getenv("SLACK_APP_TOKEN", "")
        self.signing_secret = options.get("signingSecret") or os.getenv("SLACK_SIGNING_SECRET")
        self.allowed_senders = [str(s) for s in options.get("allowedSenders") or []]
        self.direct_only = bool(options.get("replyOnlyToDirectMessages", False))

        self.processed_ids = RecentIds()
        self.self_sent_ids = RecentIds(ttl=OUTBOUND_TTL_SECONDS)

        self.app: AsyncApp | None = None
        self.client: AsyncWebClient | None = None
        self._socket_handler: AsyncSocketModeHandler | None = None
        self._handler: MessageHandler | None = None
        self._connected = False
        self._reply_tasks: set[asyncio.Task] = set()

    async def start(self, handler: MessageHandler) -> None:
        """
        Connect over Socket Mode.

        Raises:
            ChannelError: If tokens are missing or Slack rejects them
        """
        if not self.bot_token or not self.app_token:
            raise ChannelError(f"Slack channel '{self.name}' needs botToken and appToken")

        self._handler = handler
        self.app = AsyncApp(token=self.bot_token, signing_secret=self.signing_secret)
        self.app.event("message")(self._on_event)
        self.app.event("app_mention")(self._on_event)
        self.client = self.app.client

        self._socket_handler = AsyncSocketModeHandler(app=self.app, app_token=self.app_token)
        try:
            await self._socket_handler.connect_async()
        except SlackApiError as e:
            raise ChannelError(f"Slack rejected the connection: {e.response['error']}") from e

        self._connected = True
        self.log.info("Slack Socket Mode connected")

    async def stop(self) -> None:
        if self._socket_handler is not None:
            await self._socket_handler.close_async()
            self._socket_handler = None
        for task in list(self._reply_tasks):
            task.cancel()
        await asyncio.gather(*self._reply_tasks, return_exceptions=True)
        self._connected = False
        self.log.info("Slack channel stopped")

    async def _on_event(self, event: dict, client: AsyncWebClient) -> None:
        self.client = client
        self.handle_event(event)

    def handle_event(self, event: dict[str, Any]) -> None:
        """Filter one Slack event and, if it's for us, schedule the reply."""
        if event.get("bot_id") or event.get("subtype"):
            return

        is_direct = event.get("type") == "message" and event.get("channel_type") == "im"
        is_mention = event.get("type") == "app_mention"
        if not is_direct and not is_mention:
            return
        if self.direct_only and not is_direct:
            return

        message_id = event.get("client_msg_id") or event.get("ts")
        if not message_id:
            return
        if self.self_sent_ids.consume(event.get("ts") or ""):
            return
        if message_id in self.processed_ids:
            self.log.debug(f"Skipped: duplicate {message_id}")
            return
        self.processed_ids.add(message_id)

        user_id = event.get("user") or ""
        if self.allowed_senders and user_id not in self.allowed_senders:
            self.log.info(f"Skipped: sender {user_id} not in allowedSenders")
            return

        text = _MENTION.sub("", event.get("text") or "").strip()
        if not text or self._handler is None:
            return

        try:
            timestamp = int(float(event.get("ts") or 0) * 1000)
        except ValueError:
            timestamp = int(time.time() * 1000)

        incoming = IncomingMessage(
            channel_type=self.type,
            channel_name=self.name,
            sender_id=user_id,
            sender_name=user_id,
            text=text,
            timestamp=timestamp or int(time.time() * 1000),
            raw=event,
        )
        thread_ts = None if is_direct else (event.get("thread_ts") or event.get("ts"))

        task = asyncio.create_task(self._reply(event, incoming, thread_ts))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _react(self, method: str, channel: str, ts: str) -> None:
        try:
            await getattr(self.client, method)(channel=channel, timestamp=ts, name=WORKING_REACTION)
        except SlackApiError as e:
            # Needs the reactions:write scope; the reply works without it
            self.log.debug(f"{method} failed: {e.response['error']}")

    async def _reply(self, event: dict, incoming: IncomingMessage, thread_ts: str | None) -> None:
        channel_id = event.get("channel")
        ts = event.get("ts")
        try:
            await self._react("reactions_add", channel_id, ts)
            response = await self._handler(incoming)
            await self._react("reactions_remove", channel_id, ts)

            if response:
                result = await self.client.chat_postMessage(
                    channel=channel_id, text=response, thread_ts=thread_ts
                )
                if result.get("ts"):
                    self.self_sent_ids.add(result["ts"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error("Error handling Slack message", e)

    async def drain(self) -> None:
        while self._reply_tasks:
            await asyncio.gather(*list(self._reply_tasks), return_exceptions=True)

    async def send(self, recipient_id: str, text: str) -> None:
        if self.client is None:
            raise ChannelError("Slack is not connected")
        result = await self.client.chat_postMessage(channel=recipient_id, text=text)
        if result.get("ts"):
            self.self_sent_ids.add(result["ts"])

    def is_connected(self) -> bool:
        return self._connected

    def is_running(self) -> bool:
        return self._connected
