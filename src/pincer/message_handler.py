"""Message processing pipeline: trigger matching, catch-up turns and follow-up piping.

Extracted from app.py to keep the orchestrator focused on wiring.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from pincer.config import get_settings
from pincer.db import get_messages_since, get_new_messages
from pincer.logger import logger
from pincer.router import format_catch_up_prompt, format_outbound, matches_trigger
from pincer.utils import IdleTimer

if TYPE_CHECKING:
    from pincer.group_queue import GroupQueue
    from pincer.types import ContainerOutput, NewMessage, RegisteredGroup


class MessageHandlerDeps(Protocol):
    """Dependencies for message processing."""

    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    @property
    def last_agent_timestamp(self) -> dict[str, str]: ...

    # The "seen" cursor for the polling loop (distinct from per-group agent cursors)
    last_timestamp: str

    @property
    def queue(self) -> GroupQueue: ...

    async def save_state(self) -> None: ...

    async def send_to_chat(self, jid: str, text: str) -> None: ...

    async def set_typing(self, jid: str, is_typing: bool) -> None: ...

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_output: Callable[[ContainerOutput], Awaitable[None]] | None = None,
        *,
        is_scheduled_task: bool = False,
    ) -> ContainerOutput: ...


# Newest message timestamp already handed to each chat's live sandbox, either
# in the turn prompt or as a piped follow-up. Cleared when the turn ends.
_delivered: dict[str, str] = {}

_message_loop_lock = asyncio.Lock()
_message_loop_running = False


def _bot_prefix() -> str:
    return f"{get_settings().agent.name}:"


async def on_message(deps: MessageHandlerDeps, msg: NewMessage) -> bool:
    """Run one agent turn for a triggering message.

    Returns False only when the turn ran and failed.
    """
    chat_jid = msg.chat_jid
    group = deps.registered_groups().get(chat_jid)
    if group is None:
        return True

    if not matches_trigger(msg.content):
        return True

    since = deps.last_agent_timestamp.get(chat_jid, "")
    missed = await get_messages_since(chat_jid, since, bot_prefix=_bot_prefix())
    prompt = format_catch_up_prompt(missed)
    if not prompt:
        return True

    logger.info(
        "Processing messages",
        group=group.name,
        message_count=len(missed),
        preview=msg.content[:200],
    )

    s = get_settings()
    idle_timer = IdleTimer(s.idle_timeout, lambda: deps.queue.close_stdin(chat_jid))
    typing = True
    await deps.set_typing(chat_jid, True)
    _delivered[chat_jid] = missed[-1].timestamp

    async def on_output(result: ContainerOutput) -> None:
        nonlocal typing
        if result.result is None:
            return
        if typing:
            typing = False
            await deps.set_typing(chat_jid, False)
        text = format_outbound(result.result)
        if text:
            await deps.send_to_chat(chat_jid, text)
        idle_timer.reset()

    output: ContainerOutput | None = None
    try:
        output = await deps.run_agent(group, prompt, chat_jid, on_output)
    finally:
        idle_timer.cancel()
        _delivered.pop(chat_jid, None)
        if typing:
            await deps.set_typing(chat_jid, False)
        # The cursor advances even when the turn failed, so a failing prompt
        # is not replayed on the next trigger.
        if msg.timestamp > deps.last_agent_timestamp.get(chat_jid, ""):
            deps.last_agent_timestamp[chat_jid] = msg.timestamp
        await deps.save_state()

    if output.status == "error":
        logger.warning("Agent turn failed", group=group.name, error=output.error)
        return False
    return True


async def process_group_messages(deps: MessageHandlerDeps, chat_jid: str) -> bool:
    """GroupQueue entry point: run a turn for the newest pending trigger, if any.

    Every message since the last turn is folded into that one turn.
    """
    group = deps.registered_groups().get(chat_jid)
    if group is None:
        return True

    since = deps.last_agent_timestamp.get(chat_jid, "")
    pending = await get_messages_since(chat_jid, since, bot_prefix=_bot_prefix())
    trigger = next((m for m in reversed(pending) if matches_trigger(m.content)), None)
    if trigger is None:
        return True

    return await on_message(deps, trigger)


async def _pipe_to_live_sandbox(deps: MessageHandlerDeps, chat_jid: str) -> bool:
    """Forward undelivered messages to the chat's live sandbox as one follow-up."""
    since = max(
        deps.last_agent_timestamp.get(chat_jid, ""),
        _delivered.get(chat_jid, ""),
    )
    pending = await get_messages_since(chat_jid, since, bot_prefix=_bot_prefix())
    if not pending:
        return True

    if not deps.queue.send_message(chat_jid, format_catch_up_prompt(pending)):
        return False

    logger.debug("Piped messages to active container", chat_jid=chat_jid, count=len(pending))
    newest = pending[-1].timestamp
    if chat_jid in _delivered:
        _delivered[chat_jid] = newest

    previous = deps.last_agent_timestamp.get(chat_jid, "")
    deps.last_agent_timestamp[chat_jid] = max(previous, newest)
    try:
        await deps.save_state()
    except Exception:
        deps.last_agent_timestamp[chat_jid] = previous
        raise
    return True


async def poll_once(deps: MessageHandlerDeps) -> int:
    """One tick of the message loop. Returns the number of new messages seen."""
    jids = list(deps.registered_groups().keys())
    messages, new_timestamp = await get_new_messages(
        jids, deps.last_timestamp, bot_prefix=_bot_prefix()
    )
    if not messages:
        return 0

    logger.info("New messages", count=len(messages))

    # Advance "seen" cursor immediately
    deps.last_timestamp = new_timestamp
    await deps.save_state()

    messages_by_group: dict[str, list[NewMessage]] = {}
    for msg in messages:
        messages_by_group.setdefault(msg.chat_jid, []).append(msg)

    for group_jid, group_messages in messages_by_group.items():
        if not any(matches_trigger(m.content) for m in group_messages):
            continue

        if deps.queue.has_live_sandbox(group_jid) and await _pipe_to_live_sandbox(
            deps, group_jid
        ):
            continue

        deps.queue.enqueue_message_check(group_jid)

    return len(messages)


async def start_message_loop(deps: MessageHandlerDeps) -> None:
    """Poll for new messages every ``intervals.message_poll`` seconds.

    A second call while the loop is running is a no-op.
    """
    global _message_loop_running
    async with _message_loop_lock:
        if _message_loop_running:
            logger.debug("Message loop already running, skipping duplicate start")
            return
        _message_loop_running = True

    s = get_settings()
    logger.info(f"Pincer running (trigger: @{s.agent.name})")

    try:
        while True:
            try:
                await poll_once(deps)
            except Exception:
                logger.exception("Error in message loop")
            await asyncio.sleep(s.intervals.message_poll)
    finally:
        _message_loop_running = False
