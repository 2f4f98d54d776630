"""WhatsApp transport built on neonize's asyncio client.

Inbound: every chat event updates chat metadata (so the main group can
discover and register chats), but only registered chats produce messages.
Outbound: sends made while the socket is down wait in an outbox that is
drained once the connection comes back.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.proto.Neonize_pb2 import JID
from neonize.utils.jid import Jid2String, build_jid

from pincer.config import get_settings
from pincer.db import get_last_group_sync, set_last_group_sync, update_chat_name
from pincer.logger import logger
from pincer.types import NewMessage, RegisteredGroup

METADATA_REFRESH_SECONDS = 86_400
BROADCAST_JID = "status@broadcast"
WA_SERVERS = ("@g.us", "@s.whatsapp.net")


@dataclass
class PendingSend:
    jid: str
    text: str


def to_jid(jid: str) -> JID:
    user, _, server = jid.partition("@")
    return build_jid(user, server)


def _event_time(raw: float) -> str:
    # whatsmeow reports seconds, some builds milliseconds
    seconds = raw / 1000 if raw > 1e10 else raw
    return datetime.fromtimestamp(seconds, tz=UTC).isoformat()


def _message_text(msg) -> str:
    return (
        msg.conversation
        or msg.extendedTextMessage.text
        or msg.imageMessage.caption
        or msg.videoMessage.caption
        or ""
    )


class WhatsAppChannel:
    """Channel implementation for WhatsApp (see ``pincer.types.Channel``)."""

    name = "whatsapp"

    def __init__(
        self,
        on_message: Callable[[str, NewMessage], None],
        on_chat_metadata: Callable[[str, str], None],
        registered_groups: Callable[[], dict[str, RegisteredGroup]],
    ) -> None:
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._registered_groups = registered_groups

        self._connected = False
        self.logged_out = False
        self._lid_aliases: dict[str, str] = {}
        self._outbox: deque[PendingSend] = deque()
        self._draining = False
        self._refresh_task: asyncio.Task[None] | None = None
        self._idle_task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()

        # neonize binds its own loop at import; point both modules at ours
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        store_dir = get_settings().store_dir
        store_dir.mkdir(parents=True, exist_ok=True)
        self._auth_db = str(store_dir / "neonize.db")
        self._client = self._new_client()

    def _new_client(self) -> NewAClient:
        client = NewAClient(self._auth_db)
        client.event(ConnectedEv)(self._on_connected)
        client.event(DisconnectedEv)(self._on_disconnected)
        client.event(LoggedOutEv)(self._on_logged_out)
        client.event(ConnectFailureEv)(self._on_connect_failure)
        client.event(PairStatusEv)(self._on_paired)
        client.event(MessageEv)(self._on_message_event)
        client.event.qr(self._on_qr)
        return client

    # --- neonize event handlers ---

    async def _on_connected(self, _client: NewAClient, _ev: ConnectedEv) -> None:
        self._connected = True
        logger.info("WhatsApp connected")
        self._remember_own_lid()

        asyncio.ensure_future(self._drain_outbox())
        asyncio.ensure_future(self.sync_group_metadata())
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._refresh_metadata_forever())
        self._ready.set()

    async def _on_disconnected(self, _client: NewAClient, _ev: DisconnectedEv) -> None:
        # whatsmeow retries by itself; the app watchdog handles the rest
        self._connected = False
        logger.info("WhatsApp disconnected", outbox=len(self._outbox))

    async def _on_logged_out(self, _client: NewAClient, _ev: LoggedOutEv) -> None:
        self._connected = False
        self.logged_out = True
        logger.critical("WhatsApp session logged out; re-pair the device before restarting")

    async def _on_connect_failure(self, _client: NewAClient, _ev: ConnectFailureEv) -> None:
        self._connected = False
        logger.error("WhatsApp connection attempt failed")

    async def _on_paired(self, _client: NewAClient, ev: PairStatusEv) -> None:
        logger.info("WhatsApp device paired", user=ev.ID.User)

    async def _on_qr(self, _client: NewAClient, _data: bytes) -> None:
        logger.error("WhatsApp is not paired; scan the QR code to link this device")

    async def _on_message_event(self, _client: NewAClient, event: MessageEv) -> None:
        try:
            self._ingest(event)
        except Exception:
            msg_id = getattr(getattr(event, "Info", None), "ID", "?")
            logger.exception("Dropped inbound WhatsApp message", message_id=msg_id)

    # --- inbound ---

    def _remember_own_lid(self) -> None:
        me = self._client.me
        if not me:
            return
        phone, lid = getattr(me, "JID", None), getattr(me, "LID", None)
        if phone and lid and lid.User:
            self._lid_aliases[lid.User] = f"{phone.User}@s.whatsapp.net"

    def _resolve_chat(self, chat: JID) -> str:
        raw = Jid2String(chat)
        if chat.Server == "lid":
            return self._lid_aliases.get(chat.User.split(":")[0], raw)
        return raw

    def _ingest(self, event: MessageEv) -> None:
        info = event.Info
        source = info.MessageSource
        if Jid2String(source.Chat) in ("", BROADCAST_JID):
            return

        chat_jid = self._resolve_chat(source.Chat)
        timestamp = _event_time(info.Timestamp)
        self._on_chat_metadata(chat_jid, timestamp)

        if chat_jid not in self._registered_groups():
            return

        sender = Jid2String(source.Sender)
        # Own replies are kept; message queries drop them by the bot prefix
        self._on_message(
            chat_jid,
            NewMessage(
                id=info.ID,
                chat_jid=chat_jid,
                sender=sender,
                sender_name=info.Pushname or source.Sender.User or sender.split("@")[0],
                content=_message_text(event.Message),
                timestamp=timestamp,
                is_from_me=source.IsFromMe,
            ),
        )

    # --- Channel protocol ---

    async def connect(self) -> None:
        """Connect and wait for the first ConnectedEv."""
        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())
        await self._ready.wait()

    async def reconnect(self) -> None:
        """Replace the client with a fresh one on the same auth store."""
        if self.logged_out:
            return
        logger.info("Reconnecting WhatsApp client")
        await self._drop_client()
        self._ready = asyncio.Event()
        self._client = self._new_client()
        await self.connect()

    async def disconnect(self) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            self._refresh_task = None
        await self._drop_client()

    def is_connected(self) -> bool:
        return self._connected

    def owns_jid(self, jid: str) -> bool:
        return jid.endswith(WA_SERVERS)

    async def send_message(self, jid: str, text: str) -> None:
        if not self._connected:
            self._outbox.append(PendingSend(jid, text))
            logger.info("WhatsApp offline, send queued", jid=jid, outbox=len(self._outbox))
            return
        try:
            await self._client.send_message(to_jid(jid), text)
        except Exception as exc:
            self._outbox.append(PendingSend(jid, text))
            logger.warning("WhatsApp send failed, queued", jid=jid, err=str(exc))
            return
        logger.info("WhatsApp message sent", jid=jid, length=len(text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        from neonize.utils.enum import ChatPresence, ChatPresenceMedia

        state = (
            ChatPresence.CHAT_PRESENCE_COMPOSING if is_typing else ChatPresence.CHAT_PRESENCE_PAUSED
        )
        try:
            await self._client.send_chat_presence(
                to_jid(jid), state, ChatPresenceMedia.CHAT_PRESENCE_MEDIA_TEXT
            )
        except Exception as exc:
            logger.debug("Typing indicator failed", jid=jid, err=str(exc))

    async def sync_group_metadata(self, force: bool = False) -> None:
        """Store the names of all joined groups, at most once a day unless forced."""
        if not force and await self._synced_recently():
            return
        try:
            groups = await self._client.get_joined_groups()
            named = [(Jid2String(g.JID), g.GroupName.Name) for g in groups if g.GroupName.Name]
            for jid, name in named:
                await update_chat_name(jid, name)
            await set_last_group_sync()
        except Exception as exc:
            logger.error("WhatsApp group metadata sync failed", err=str(exc))
            return
        logger.info("WhatsApp group metadata synced", count=len(named))

    # --- internals ---

    async def _drain_outbox(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            if self._outbox:
                logger.info("Draining WhatsApp outbox", count=len(self._outbox))
            # Bounded to the current size: failed sends go to the back
            for _ in range(len(self._outbox)):
                pending = self._outbox.popleft()
                await self.send_message(pending.jid, pending.text)
        finally:
            self._draining = False

    async def _drop_client(self) -> None:
        self._connected = False
        if self._idle_task:
            self._idle_task.cancel()
            self._idle_task = None
        with contextlib.suppress(Exception):
            await self._client.disconnect()

    async def _synced_recently(self) -> bool:
        last = await get_last_group_sync()
        if not last:
            return False
        age = (datetime.now(UTC) - datetime.fromisoformat(last)).total_seconds()
        return age < METADATA_REFRESH_SECONDS

    async def _refresh_metadata_forever(self) -> None:
        while True:
            await asyncio.sleep(METADATA_REFRESH_SECONDS)
            await self.sync_group_metadata()
