"""IPC file writing: follow-up messages and the close sentinel.

The write side of the host→sandbox channel. The sandbox polls its
``/workspace/ipc/input`` directory (``data/ipc/<folder>/input`` on the
host) and consumes files in name order.

All writes use atomic rename (tmp → final) so the sandbox never sees a
partially-written file.
"""

from __future__ import annotations

from pathlib import Path

from pincer.config import get_settings
from pincer.utils import ipc_filename, write_json_atomic

CLOSE_SENTINEL = "_close"


def ipc_input_dir(group_folder: str) -> Path:
    """Return the IPC input directory for a group, creating it if needed."""
    d = get_settings().data_dir / "ipc" / group_folder / "input"
    d.mkdir(parents=True, exist_ok=True)
    return d


def write_ipc_message(group_folder: str, text: str) -> Path:
    """Queue a follow-up message for the group's live sandbox."""
    path = ipc_input_dir(group_folder) / ipc_filename()
    write_json_atomic(path, {"type": "message", "text": text})
    return path


def write_ipc_close_sentinel(group_folder: str) -> None:
    """Write the ``_close`` sentinel. Writing it twice is the same as once."""
    (ipc_input_dir(group_folder) / CLOSE_SENTINEL).touch(exist_ok=True)
