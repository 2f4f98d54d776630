"""Shared host-side records and the Channel protocol.

``ContainerInput`` and ``ContainerOutput`` mirror ``agent_runner.models``
field for field; the two sides share only the JSON wire format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

ScheduleType = Literal["cron", "interval", "once"]
TaskStatus = Literal["active", "paused", "completed"]
RunStatus = Literal["success", "error"]


@dataclass
class RegisteredGroup:
    """A chat the agent answers in.

    ``folder`` names both ``groups/<folder>`` and the group's IPC namespace.
    """

    jid: str
    name: str
    folder: str
    trigger: str  # shown to users, e.g. "@pincer"; matching uses Settings.trigger_pattern
    added_at: str = ""
    is_main: bool = False


@dataclass
class NewMessage:
    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str  # ISO 8601 UTC
    is_from_me: bool | None = None


@dataclass
class ScheduledTask:
    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: TaskStatus = "active"
    created_at: str = ""

    def to_snapshot_dict(self) -> dict[str, str | None]:
        """Row of ``current_tasks.json`` as the sandbox's list_tasks tool reads it."""
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "next_run": self.next_run,
        }


@dataclass
class TaskRunLog:
    task_id: str
    run_at: str
    duration_ms: float
    status: RunStatus
    result: str | None = None
    error: str | None = None


@dataclass
class ContainerInput:
    """Turn request written to the sandbox's stdin."""

    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    is_scheduled_task: bool = False
    agent_core: str = "claude"
    secrets: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class ContainerOutput:
    """One framed result block read from the sandbox's stdout."""

    status: RunStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@runtime_checkable
class Channel(Protocol):
    """A chat transport.

    Transports may also provide ``async set_typing(jid, is_typing)``,
    ``async sync_group_metadata(force=False)`` and a ``logged_out`` flag.
    Callers check for them with ``hasattr``/``getattr``. ``logged_out``
    means the session was revoked and reconnecting cannot help.
    """

    name: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def reconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    def owns_jid(self, jid: str) -> bool: ...

    async def send_message(self, jid: str, text: str) -> None: ...
