"""PincerApp: owns the runtime state and wires the subsystems together.

The app itself satisfies the dependency protocols of the message handler,
the task scheduler and the IPC watcher, so each subsystem sees only the
slice of state it needs.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pincer import message_handler
from pincer.config import get_settings
from pincer.container_runner import (
    run_container_agent,
    write_groups_snapshot,
    write_tasks_snapshot,
)
from pincer.db import (
    GROUP_SYNC_JID,
    close_database,
    get_all_chats,
    get_all_registered_groups,
    get_all_sessions,
    get_all_tasks,
    get_router_state,
    get_tasks_for_group,
    init_database,
    set_registered_group,
    set_router_state,
    set_session,
    store_chat_metadata,
    store_message,
)
from pincer.group_queue import GroupQueue
from pincer.ipc import start_ipc_watcher
from pincer.logger import logger
from pincer.router import route_outbound
from pincer.runtime import get_runtime
from pincer.task_scheduler import start_scheduler_loop
from pincer.types import Channel, ContainerInput, ContainerOutput, NewMessage, RegisteredGroup
from pincer.utils import create_background_task


class PincerApp:
    """Main application class."""

    def __init__(self) -> None:
        self.last_timestamp: str = ""
        self.sessions: dict[str, str] = {}
        self.groups: dict[str, RegisteredGroup] = {}
        self.last_agent_timestamp: dict[str, str] = {}
        self.queue: GroupQueue = GroupQueue()
        self.channels: list[Channel] = []
        self._shutting_down = False
        self._stopped = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    def registered_groups(self) -> dict[str, RegisteredGroup]:
        return self.groups

    # --- state persistence ---

    async def load_state(self) -> None:
        """Restore cursors, sessions and groups saved by a previous run."""
        self.last_timestamp = await get_router_state("last_timestamp") or ""
        raw_cursors = await get_router_state("last_agent_timestamp") or "{}"
        try:
            cursors = json.loads(raw_cursors)
        except json.JSONDecodeError:
            cursors = None
        if not isinstance(cursors, dict):
            logger.warning("Stored agent cursors unreadable, starting fresh")
            cursors = {}
        self.last_agent_timestamp = cursors
        self.sessions = await get_all_sessions()
        self.groups = await get_all_registered_groups()
        logger.info("State loaded", groups=len(self.groups), sessions=len(self.sessions))

    async def save_state(self) -> None:
        for key, value in (
            ("last_timestamp", self.last_timestamp),
            ("last_agent_timestamp", json.dumps(self.last_agent_timestamp)),
        ):
            await set_router_state(key, value)

    # --- group management ---

    async def register_group(self, group: RegisteredGroup) -> None:
        """Start answering in *group*'s chat; persisted so it survives restarts."""
        self.groups[group.jid] = group
        await set_registered_group(group)

        (get_settings().groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered", jid=group.jid, name=group.name, folder=group.folder)

    async def get_available_groups(self) -> list[dict[str, Any]]:
        """Known chats for the agent, most recent activity first."""
        available = []
        for chat in await get_all_chats():
            if chat["jid"] == GROUP_SYNC_JID:
                continue
            available.append(
                {
                    "jid": chat["jid"],
                    "name": chat["name"],
                    "lastActivity": chat["last_message_time"],
                    "isRegistered": chat["jid"] in self.groups,
                }
            )
        return available

    # --- agent runs ---

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_output: Callable[[ContainerOutput], Awaitable[None]] | None = None,
        *,
        is_scheduled_task: bool = False,
    ) -> ContainerOutput:
        """Run one sandbox for *group*. Shared by chat turns and scheduled tasks."""
        is_main = group.is_main

        # Update snapshots for the sandbox to read
        # A non-main group only ever sees its own tasks
        tasks = await get_all_tasks() if is_main else await get_tasks_for_group(group.folder)
        write_tasks_snapshot(group.folder, is_main, [t.to_snapshot_dict() for t in tasks])
        write_groups_snapshot(group.folder, is_main, await self.get_available_groups())

        async def on_session(session_id: str) -> None:
            self.sessions[group.folder] = session_id
            await set_session(group.folder, session_id)

        output = await run_container_agent(
            group=group,
            input_data=ContainerInput(
                prompt=prompt,
                session_id=self.sessions.get(group.folder),
                group_folder=group.folder,
                chat_jid=chat_jid,
                is_main=is_main,
                is_scheduled_task=is_scheduled_task,
                agent_core=get_settings().agent.core,
                secrets=get_settings().secret_env(),
            ),
            on_process=lambda proc, name: self.queue.register_process(
                chat_jid, proc, name, group.folder
            ),
            on_output=on_output,
            on_session=on_session,
        )

        if output.status == "error":
            logger.error("Container agent error", group=group.name, error=output.error)
        return output

    async def process_group_messages(self, chat_jid: str) -> bool:
        return await message_handler.process_group_messages(self, chat_jid)

    # --- channels ---

    async def send_to_chat(self, jid: str, text: str) -> None:
        await route_outbound(self.channels, jid, text)

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        for channel in self.channels:
            if channel.owns_jid(jid) and hasattr(channel, "set_typing"):
                await channel.set_typing(jid, is_typing)

    async def _on_inbound(self, msg: NewMessage) -> None:
        await store_message(msg)

    async def _channel_watchdog(self) -> None:
        """Reconnect dropped channels. A logged-out channel stops the service."""
        interval = get_settings().intervals.channel_watchdog
        while not self._shutting_down:
            await asyncio.sleep(interval)
            try:
                await self.check_channels()
            except Exception:
                logger.exception("Channel watchdog failed")

    async def check_channels(self) -> None:
        for channel in self.channels:
            if channel.is_connected():
                continue
            if getattr(channel, "logged_out", False):
                logger.critical("Channel logged out, shutting down", channel=channel.name)
                await self.shutdown("logged_out")
                return
            logger.warning("Channel disconnected, reconnecting", channel=channel.name)
            await channel.reconnect()

    # --- startup recovery ---

    async def recover_pending_messages(self) -> None:
        """Queue a turn for any group with triggering messages left from a crash."""
        for chat_jid in self.groups:
            self.queue.enqueue_message_check(chat_jid)

    # --- lifecycle ---

    async def shutdown(self, reason: str) -> None:
        """Stop live sandboxes, disconnect channels and close the database."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutting down", reason=reason)

        # Hard exit if graceful shutdown hangs
        asyncio.get_running_loop().call_later(30, lambda: os._exit(1))

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        await self.queue.shutdown()
        for channel in self.channels:
            await channel.disconnect()
        await close_database()
        self._stopped.set()

    async def _connect_whatsapp(self) -> None:
        from pincer.channels.whatsapp import WhatsAppChannel

        whatsapp = WhatsAppChannel(
            on_message=lambda _jid, msg: create_background_task(
                self._on_inbound(msg), name="store-message"
            ),
            on_chat_metadata=lambda jid, ts: create_background_task(
                store_chat_metadata(jid, ts), name="store-chat-metadata"
            ),
            registered_groups=self.registered_groups,
        )
        self.channels.append(whatsapp)
        await whatsapp.connect()

    async def run(self) -> None:
        """Main entry point: startup sequence, then run until a shutdown signal."""
        runtime = get_runtime()
        runtime.ensure_running()
        runtime.stop_orphans()

        await init_database()
        logger.info("Database initialized")
        await self.load_state()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: create_background_task(self.shutdown(s.name), name="shutdown"),
            )

        await self._connect_whatsapp()

        if not self.groups:
            logger.warning(
                "No groups registered. Use `pincer register JID NAME FOLDER` to add one."
            )

        self.queue.set_process_messages_fn(self.process_group_messages)
        self._tasks = [
            create_background_task(start_scheduler_loop(self), name="scheduler"),
            create_background_task(start_ipc_watcher(self), name="ipc-watcher"),
            create_background_task(message_handler.start_message_loop(self), name="messages"),
            create_background_task(self._channel_watchdog(), name="channel-watchdog"),
        ]
        await self.recover_pending_messages()

        await self._stopped.wait()
        logger.info("Stopped", at=datetime.now(UTC).isoformat())
