"""Tests for the WhatsApp channel: inbound filtering and the outgoing queue."""

from __future__ import annotations

from collections import deque
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_group

from pincer.channels.whatsapp import WhatsAppChannel

CHAT_JID = "group@g.us"


def _make_channel(*, connected: bool = True) -> WhatsAppChannel:
    """Create a WhatsAppChannel without a live neonize client."""
    ch = WhatsAppChannel.__new__(WhatsAppChannel)
    ch._on_message = MagicMock()
    ch._on_chat_metadata = MagicMock()
    ch._registered_groups = lambda: {CHAT_JID: make_group(jid=CHAT_JID)}
    ch._connected = connected
    ch.logged_out = False
    ch._lid_aliases = {}
    ch._outbox = deque()
    ch._draining = False
    ch._client = MagicMock()
    ch._client.send_message = AsyncMock()
    return ch


def _message_event(chat: str, *, text: str = "@pincer hi", from_me: bool = False) -> MagicMock:
    ev = MagicMock()
    ev.Info.ID = "MSG1"
    ev.Info.Timestamp = 1_704_067_200  # 2024-01-01T00:00:00Z
    ev.Info.Pushname = "Alice"
    ev.Info.MessageSource.Chat.Server = chat.split("@")[1]
    ev.Info.MessageSource.IsFromMe = from_me
    ev.Info.MessageSource.Chat._str = chat
    ev.Info.MessageSource.Sender._str = "123@s.whatsapp.net"
    ev.Message.conversation = text
    return ev


def _jid_to_string(jid) -> str:
    return jid._str


class TestInbound:
    def _handle(self, ch: WhatsAppChannel, chat: str, **kwargs) -> None:
        ev = _message_event(chat, **kwargs)
        with patch("pincer.channels.whatsapp.Jid2String", side_effect=_jid_to_string):
            ch._ingest(ev)

    def test_registered_chat_message_delivered(self):
        ch = _make_channel()
        self._handle(ch, CHAT_JID)

        ch._on_chat_metadata.assert_called_once_with(CHAT_JID, "2024-01-01T00:00:00+00:00")
        jid, msg = ch._on_message.call_args.args
        assert jid == CHAT_JID
        assert msg.content == "@pincer hi"
        assert msg.sender_name == "Alice"

    def test_unregistered_chat_only_metadata(self):
        ch = _make_channel()
        self._handle(ch, "other@g.us")

        ch._on_chat_metadata.assert_called_once()
        ch._on_message.assert_not_called()

    def test_own_messages_still_stored(self):
        ch = _make_channel()
        self._handle(ch, CHAT_JID, text="pincer: reply", from_me=True)

        msg = ch._on_message.call_args.args[1]
        assert msg.is_from_me is True

    def test_lid_chat_mapped_to_phone_jid(self):
        ch = _make_channel()
        ch._lid_aliases["999"] = "123@s.whatsapp.net"
        ch._registered_groups = lambda: {"123@s.whatsapp.net": make_group()}
        ev = _message_event("999@lid")
        ev.Info.MessageSource.Chat.User = "999:4"

        with patch("pincer.channels.whatsapp.Jid2String", side_effect=_jid_to_string):
            ch._ingest(ev)

        assert ch._on_message.call_args.args[0] == "123@s.whatsapp.net"

    def test_millisecond_timestamps_normalized(self):
        ch = _make_channel()
        ev = _message_event(CHAT_JID)
        ev.Info.Timestamp = 1_704_067_200_000

        with patch("pincer.channels.whatsapp.Jid2String", side_effect=_jid_to_string):
            ch._ingest(ev)

        assert ch._on_message.call_args.args[1].timestamp == "2024-01-01T00:00:00+00:00"

    def test_status_broadcast_ignored(self):
        ch = _make_channel()
        self._handle(ch, "status@broadcast")

        ch._on_chat_metadata.assert_not_called()


class TestOutgoing:
    async def test_queues_while_disconnected(self):
        ch = _make_channel(connected=False)

        await ch.send_message(CHAT_JID, "pincer: hi")

        assert len(ch._outbox) == 1
        ch._client.send_message.assert_not_awaited()

    async def test_flush_sends_in_order(self):
        ch = _make_channel(connected=False)
        await ch.send_message(CHAT_JID, "one")
        await ch.send_message(CHAT_JID, "two")

        ch._connected = True
        with patch("pincer.channels.whatsapp.to_jid", side_effect=lambda jid: jid):
            await ch._drain_outbox()

        sent = [c.args[1] for c in ch._client.send_message.await_args_list]
        assert sent == ["one", "two"]
        assert not ch._outbox

    async def test_failed_send_requeued(self):
        ch = _make_channel()
        ch._client.send_message.side_effect = RuntimeError("socket closed")

        with patch("pincer.channels.whatsapp.to_jid", side_effect=lambda jid: jid):
            await ch.send_message(CHAT_JID, "hi")

        assert [m.text for m in ch._outbox] == ["hi"]


class TestOwnership:
    @pytest.mark.parametrize("jid", ["group@g.us", "123@s.whatsapp.net"])
    def test_owns_whatsapp_jids(self, jid):
        assert _make_channel().owns_jid(jid)

    def test_does_not_own_other_jids(self):
        assert not _make_channel().owns_jid("C123@slack")

    async def test_reconnect_noop_when_logged_out(self):
        ch = _make_channel(connected=False)
        ch.logged_out = True
        ch._drop_client = AsyncMock()

        await ch.reconnect()

        ch._drop_client.assert_not_awaited()
