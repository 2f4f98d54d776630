"""File-based IPC between host and sandboxes."""

from pincer.ipc._deps import IpcDeps
from pincer.ipc._protocol import (
    CancelTask,
    EnvelopeError,
    MessageEnvelope,
    PauseTask,
    RegisterGroup,
    ResumeTask,
    ScheduleTask,
    TaskEnvelope,
    is_valid_folder,
    parse_message_envelope,
    parse_task_envelope,
)
from pincer.ipc._watcher import process_ipc_pass, start_ipc_watcher
from pincer.ipc._write import write_ipc_close_sentinel, write_ipc_message

__all__ = [
    "CancelTask",
    "EnvelopeError",
    "IpcDeps",
    "MessageEnvelope",
    "PauseTask",
    "RegisterGroup",
    "ResumeTask",
    "ScheduleTask",
    "TaskEnvelope",
    "is_valid_folder",
    "parse_message_envelope",
    "parse_task_envelope",
    "process_ipc_pass",
    "start_ipc_watcher",
    "write_ipc_close_sentinel",
    "write_ipc_message",
]
