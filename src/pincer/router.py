"""Message formatting and outbound routing."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from pincer.config import get_settings

if TYPE_CHECKING:
    from pincer.types import Channel, NewMessage

_INTERNAL_TAG_RE = re.compile(r"<internal>[\s\S]*?</internal>")


def matches_trigger(content: str) -> bool:
    """True if the message addresses the agent (``@name`` at the start)."""
    return bool(get_settings().trigger_pattern.search(content.strip()))


def format_message_time(timestamp: str, timezone: str) -> str:
    """Render an ISO timestamp as ``Mon D hh:mm AM`` in ``timezone``."""
    when = datetime.fromisoformat(timestamp)
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    local = when.astimezone(ZoneInfo(timezone))
    return f"{local:%b} {local.day} {local:%I:%M %p}"


def format_catch_up_prompt(messages: list[NewMessage]) -> str:
    """One line per message, oldest first: ``[Mon D hh:mm AM] sender: text``."""
    tz = get_settings().timezone
    return "\n".join(
        f"[{format_message_time(m.timestamp, tz)}] {m.sender_name}: {m.content}"
        for m in messages
    )


def strip_internal_tags(text: str) -> str:
    """Remove <internal>...</internal> blocks and trim whitespace."""
    return _INTERNAL_TAG_RE.sub("", text).strip()


def format_outbound(raw_text: str) -> str:
    """Strip internal tags and prefix with the assistant name. Empty means don't send."""
    text = strip_internal_tags(raw_text)
    if not text:
        return ""
    return f"{get_settings().agent.name}: {text}"


async def route_outbound(channels: list[Channel], jid: str, text: str) -> None:
    """Find the channel that owns ``jid`` and send a message.

    Disconnected channels still accept the send; they queue until reconnect.
    """
    channel = next((c for c in channels if c.owns_jid(jid)), None)
    if channel is None:
        raise RuntimeError(f"No channel for JID: {jid}")
    await channel.send_message(jid, text)
