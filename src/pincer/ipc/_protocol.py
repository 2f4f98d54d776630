"""IPC envelope definitions and validation.

Sandbox→host files are validated here before anything acts on them.
``messages/`` files carry chat text; ``tasks/`` files carry one of the
task-mutation envelopes below, discriminated by their ``type`` field.
Anything malformed raises EnvelopeError and the watcher quarantines it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from pincer.utils import validate_schedule

_FOLDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_RESERVED_FOLDERS = frozenset({"errors", "global"})


class EnvelopeError(ValueError):
    """An IPC file that is malformed or not allowed for its sender."""


@dataclass(frozen=True)
class MessageEnvelope:
    chat_jid: str
    text: str


@dataclass(frozen=True)
class ScheduleTask:
    target_jid: str
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str


@dataclass(frozen=True)
class PauseTask:
    task_id: str


@dataclass(frozen=True)
class ResumeTask:
    task_id: str


@dataclass(frozen=True)
class CancelTask:
    task_id: str


@dataclass(frozen=True)
class RegisterGroup:
    jid: str
    name: str
    folder: str
    trigger: str


TaskEnvelope = ScheduleTask | PauseTask | ResumeTask | CancelTask | RegisterGroup


def _require_str(data: dict[str, Any], *keys: str) -> str:
    """First non-empty string among ``keys`` (later keys are aliases)."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    raise EnvelopeError(f"missing field {keys[0]!r}")


def parse_message_envelope(data: Any) -> MessageEnvelope:
    if not isinstance(data, dict):
        raise EnvelopeError("envelope must be a JSON object")
    if data.get("type") != "message":
        raise EnvelopeError(f"unexpected message type {data.get('type')!r}")
    return MessageEnvelope(
        chat_jid=_require_str(data, "chatJid", "chatId"),
        text=_require_str(data, "text"),
    )


def is_valid_folder(folder: str) -> bool:
    return bool(_FOLDER_RE.match(folder)) and folder not in _RESERVED_FOLDERS


def parse_task_envelope(data: Any) -> TaskEnvelope:
    """Validate a ``tasks/`` file into its envelope type."""
    if not isinstance(data, dict):
        raise EnvelopeError("envelope must be a JSON object")

    match data.get("type"):
        case "schedule_task":
            schedule_type = _require_str(data, "schedule_type")
            schedule_value = _require_str(data, "schedule_value")
            try:
                validate_schedule(schedule_type, schedule_value)
            except ValueError as exc:
                raise EnvelopeError(str(exc)) from exc
            return ScheduleTask(
                target_jid=_require_str(data, "targetJid", "chatJid"),
                prompt=_require_str(data, "prompt"),
                schedule_type=schedule_type,  # type: ignore[arg-type]
                schedule_value=schedule_value,
            )
        case "pause_task":
            return PauseTask(task_id=_require_str(data, "taskId"))
        case "resume_task":
            return ResumeTask(task_id=_require_str(data, "taskId"))
        case "cancel_task":
            return CancelTask(task_id=_require_str(data, "taskId"))
        case "register_group":
            folder = _require_str(data, "folder")
            if not is_valid_folder(folder):
                raise EnvelopeError(f"invalid folder name {folder!r}")
            return RegisterGroup(
                jid=_require_str(data, "jid"),
                name=_require_str(data, "name"),
                folder=folder,
                trigger=_require_str(data, "trigger"),
            )
        case other:
            raise EnvelopeError(f"unknown task type {other!r}")
