import json

import pytest

from localclaw.channels import ChannelError, IncomingMessage
from localclaw.channels.events import ConnectionUpdate, CredentialsUpdate, MessagesUpsert
from localclaw.channels.whatsapp import (
    MAX_RECONNECT_ATTEMPTS,
    ConnectionState,
    WhatsAppChannel,
    backoff_delay_ms,
    extract_text,
    is_direct_jid,
    sender_number,
)
from tests.conftest import BackendFactory, RecordingSleep

OWN_JID = "393330000000:12@s.whatsapp.net"
USER_JID = "393331112222@s.whatsapp.net"


def wa_message(msg_id, jid=USER_JID, text="hello", from_me=False, body=None):
    return {
        "key": {"remoteJid": jid, "id": msg_id, "fromMe": from_me},
        "message": body if body is not None else {"conversation": text},
        "pushName": "Mario",
        "messageTimestamp": 1_700_000_000,
    }


class Handler:
    def __init__(self, response="got it", error=None):
        self.response = response
        self.error = error
        self.received: list[IncomingMessage] = []

    async def __call__(self, message: IncomingMessage) -> str:
        self.received.append(message)
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def factory():
    return BackendFactory()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def handler():
    return Handler()


def make_channel(tmp_path, factory, sleep, **options):
    options.setdefault("authDir", str(tmp_path / "auth"))
    return WhatsAppChannel("personal", options, backend_factory=factory, sleep=sleep)


async def open_channel(channel, handler):
    await channel.start(handler)
    await channel.handle_event(ConnectionUpdate(connection="open", me=OWN_JID))
    return channel


class TestHelpers:
    def test_backoff_sequence(self):
        """Delays double from 2s and are capped at 60s."""
        assert [backoff_delay_ms(n) for n in range(1, 8)] == [
            2000, 4000, 8000, 16000, 32000, 60000, 60000,
        ]

    def test_sender_number(self):
        assert sender_number(USER_JID) == "393331112222"
        assert sender_number("12345@lid") == "12345"
        assert sender_number("1203630@g.us") == "1203630@g.us"

    def test_direct_jid(self):
        assert is_direct_jid(USER_JID)
        assert is_direct_jid("12345@lid")
        assert not is_direct_jid("1203630@g.us")

    def test_extract_text_shapes(self):
        """The first populated field wins across the known message shapes."""
        assert extract_text({"conversation": "plain"}) == "plain"
        assert extract_text({"extendedTextMessage": {"text": "quoted"}}) == "quoted"
        assert extract_text({"imageMessage": {"caption": "a photo"}}) == "a photo"
        assert extract_text({"videoMessage": {"caption": "a clip"}}) == "a clip"
        assert extract_text({"stickerMessage": {}}) == ""


class TestLifecycle:
    async def test_start_connects_and_open_resets(self, tmp_path, factory, sleep, handler):
        channel = make_channel(tmp_path, factory, sleep)

        await channel.start(handler)
        assert channel.state == ConnectionState.CONNECTING
        assert factory.current.connected_with == [None]

        await channel.handle_event(ConnectionUpdate(connection="open", me=OWN_JID))
        assert channel.is_connected()
        assert channel.is_running()
        assert channel.own_jid == OWN_JID
        await channel.stop()

    async def test_reconnect_backoff_and_reset(self, tmp_path, factory, sleep, handler):
        """Each close waits longer; opening resets the counter."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(ConnectionUpdate(connection="close", status_code=428))
        assert channel.reconnect_attempt == 1
        await channel.drain()
        assert channel.state == ConnectionState.CONNECTING

        await channel.handle_event(ConnectionUpdate(connection="close", status_code=515))
        assert channel.reconnect_attempt == 2
        await channel.drain()

        assert sleep.delays == [2.0, 4.0]
        assert len(factory.backends) == 3

        await channel.handle_event(ConnectionUpdate(connection="open"))
        assert channel.reconnect_attempt == 0
        await channel.stop()

    async def test_restart_keeps_attempt_count_until_open(self, tmp_path, factory, sleep, handler):
        """stop() and start() alone don't reset the counter; only an open does."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)
        await channel.handle_event(ConnectionUpdate(connection="close", status_code=428))
        await channel.drain()
        await channel.handle_event(ConnectionUpdate(connection="close", status_code=428))
        await channel.drain()
        await channel.stop()

        await channel.start(handler)
        assert channel.reconnect_attempt == 2

        await channel.handle_event(ConnectionUpdate(connection="open"))
        assert channel.reconnect_attempt == 0
        await channel.stop()

    async def test_duplicate_close_schedules_one_reconnect(self, tmp_path, factory, sleep, handler):
        """A close that arrives while already disconnected is ignored."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(ConnectionUpdate(connection="close", reason="stream errored"))
        await channel.handle_event(ConnectionUpdate(connection="close", reason="socket dropped"))
        await channel.drain()

        assert channel.reconnect_attempt == 1
        assert sleep.delays == [2.0]
        await channel.stop()

    async def test_logged_out_never_retries(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(ConnectionUpdate(connection="close", status_code=401))
        await channel.drain()

        assert channel.fatal_reason == "logged_out"
        assert channel.state == ConnectionState.DISCONNECTED
        assert sleep.delays == []
        assert not channel.is_running()
        assert channel.describe()["fatal_reason"] == "logged_out"

    async def test_gives_up_after_max_attempts(self, tmp_path, sleep, handler):
        """An unreachable backend is retried 10 times, then reported as fatal."""
        factory = BackendFactory(fail_connect=True)
        channel = make_channel(tmp_path, factory, sleep)

        await channel.start(handler)
        await channel.drain()

        assert channel.fatal_reason == "max_reconnect_attempts"
        assert channel.reconnect_attempt == MAX_RECONNECT_ATTEMPTS
        assert len(sleep.delays) == MAX_RECONNECT_ATTEMPTS
        assert sleep.delays[:3] == [2.0, 4.0, 8.0]
        assert sleep.delays[-1] == 60.0
        assert len(factory.backends) == MAX_RECONNECT_ATTEMPTS + 1
        await channel.stop()

    async def test_stop_suppresses_reconnect(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)
        backend = factory.current

        await channel.stop()
        await channel.handle_event(ConnectionUpdate(connection="close", status_code=428))
        await channel.drain()

        assert backend.closed
        assert sleep.delays == []
        assert not channel.is_running()

    async def test_events_from_replaced_backend_are_dropped(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)
        await channel.handle_event(ConnectionUpdate(connection="close"))
        await channel.drain()
        stale = factory.backends[0]

        stale.emit(ConnectionUpdate(connection="close"))
        await channel.drain()

        assert channel.reconnect_attempt == 1
        assert channel.state == ConnectionState.CONNECTING
        await channel.stop()

    async def test_credentials_persist_across_restarts(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)
        creds = {"me": {"id": OWN_JID}, "registered": True}

        await channel.handle_event(CredentialsUpdate(creds=creds))
        assert json.loads((tmp_path / "auth" / "creds.json").read_text()) == creds

        await channel.stop()
        await channel.start(handler)
        assert factory.current.connected_with == [creds]
        await channel.stop()


class TestInboundMessages:
    async def test_reply_round_trip(self, tmp_path, factory, sleep, handler):
        """An inbound message gets composing, the agent's reply, then paused."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1", text="  hi there ")]))
        await channel.drain()

        message = handler.received[0]
        assert message.text == "hi there"
        assert message.sender_id == "393331112222"
        assert message.sender_name == "Mario"
        assert message.timestamp == 1_700_000_000_000
        assert message.conversation_id == "whatsapp-393331112222"

        backend = factory.current
        assert backend.sent == [(USER_JID, "got it")]
        assert backend.presence == [
            ("subscribe", USER_JID), ("composing", USER_JID), ("paused", USER_JID),
        ]
        await channel.stop()

    async def test_redelivery_is_ignored(self, tmp_path, factory, sleep, handler):
        """The same message id delivered twice reaches the agent once."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1")]))
        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1")]))
        await channel.drain()

        assert len(handler.received) == 1
        assert len(factory.current.sent) == 1
        await channel.stop()

    async def test_own_echo_is_dropped(self, tmp_path, factory, sleep, handler):
        """The echo of a reply we sent is not treated as a new message."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1")]))
        await channel.drain()
        sent_id = "SENT1"
        assert channel.outbound_cache.get(sent_id) == "got it"

        echo = wa_message(sent_id, text="got it", from_me=True)
        await channel.handle_event(MessagesUpsert(messages=[echo]))
        await channel.drain()

        assert len(handler.received) == 1
        await channel.stop()

    async def test_echo_before_send_ack_is_dropped(self, tmp_path, factory, sleep, handler):
        """An appended fromMe message is ours even when its id isn't recorded yet."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        echo = wa_message("NOT-YET-ACKED", text="got it", from_me=True)
        await channel.handle_event(MessagesUpsert(messages=[echo], type="append"))
        await channel.drain()

        assert handler.received == []
        assert factory.current.sent == []
        await channel.stop()

    async def test_self_chat_from_me_is_processed(self, tmp_path, factory, sleep, handler):
        """A fromMe message we didn't send (the user's own self-chat) still counts."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("PHONE1", from_me=True)]))
        await channel.drain()

        assert len(handler.received) == 1
        await channel.stop()

    async def test_lid_sender_replies_to_own_number(self, tmp_path, factory, sleep, handler):
        """Replies to an @lid sender go to the session's phone-number JID."""
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1", jid="98765@lid")]))
        await channel.drain()

        assert handler.received[0].sender_id == "98765"
        assert factory.current.sent == [("393330000000@s.whatsapp.net", "got it")]
        await channel.stop()

    async def test_group_dropped_when_direct_only(self, tmp_path, factory, sleep, handler):
        channel = make_channel(tmp_path, factory, sleep, replyOnlyToDirectMessages=True)
        await open_channel(channel, handler)

        await channel.handle_event(MessagesUpsert(messages=[
            wa_message("G1", jid="1203630@g.us"),
            wa_message("D1"),
        ]))
        await channel.drain()

        assert [m.sender_id for m in handler.received] == ["393331112222"]
        await channel.stop()

    async def test_allowed_senders_filter(self, tmp_path, factory, sleep, handler):
        channel = make_channel(tmp_path, factory, sleep, allowedSenders=["393331112222"])
        await open_channel(channel, handler)

        await channel.handle_event(MessagesUpsert(messages=[
            wa_message("X1", jid="447700900000@s.whatsapp.net"),
            wa_message("A1"),
        ]))
        await channel.drain()

        assert [m.sender_id for m in handler.received] == ["393331112222"]
        await channel.stop()

    async def test_incomplete_and_empty_messages_dropped(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[
            {"key": {"id": "K1"}},
            wa_message("E1", body={}),
            wa_message("E2", text="   "),
            wa_message("S1", body={"stickerMessage": {}}),
        ]))
        await channel.drain()

        assert handler.received == []
        await channel.stop()

    async def test_handler_failure_clears_presence(self, tmp_path, factory, sleep):
        handler = Handler(error=RuntimeError("agent down"))
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1")]))
        await channel.drain()

        backend = factory.current
        assert backend.sent == []
        assert backend.presence[-1] == ("paused", USER_JID)
        await channel.stop()

    async def test_empty_reply_not_sent(self, tmp_path, factory, sleep):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), Handler(response=""))

        await channel.handle_event(MessagesUpsert(messages=[wa_message("M1")]))
        await channel.drain()

        assert factory.current.sent == []
        await channel.stop()

    async def test_dedup_set_is_bounded(self, tmp_path, factory, sleep, handler):
        """The processed-id set evicts its oldest half past the configured size."""
        channel = make_channel(tmp_path, factory, sleep, dedupMaxSize=10)
        await open_channel(channel, handler)

        await channel.handle_event(MessagesUpsert(
            messages=[wa_message(f"M{i}", body={"stickerMessage": {}}) for i in range(11)]
        ))

        assert len(channel.processed_ids) == 6
        assert "M0" not in channel.processed_ids
        assert "M10" in channel.processed_ids
        await channel.stop()


class TestOutbound:
    async def test_send_requires_open_connection(self, tmp_path, factory, sleep, handler):
        channel = make_channel(tmp_path, factory, sleep)
        await channel.start(handler)

        with pytest.raises(ChannelError, match="not connected"):
            await channel.send("393331112222", "hi")
        await channel.stop()

    async def test_send_adds_user_suffix(self, tmp_path, factory, sleep, handler):
        channel = await open_channel(make_channel(tmp_path, factory, sleep), handler)

        await channel.send("393331112222", "ping")

        assert factory.current.sent == [(USER_JID, "ping")]
        assert "SENT1" in channel.self_sent_ids
        await channel.stop()
