"""File-based IPC watcher.

Polls ``data/ipc/<group>/messages`` and ``data/ipc/<group>/tasks`` on a
fixed interval. Within a pass, files are handled in filename order. A file
is deleted once handled and moved to ``data/ipc/errors/`` if anything about
it fails, so every envelope is consumed exactly once and one bad file never
blocks the ones after it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import secrets
from datetime import UTC, datetime
from pathlib import Path

from pincer import task_scheduler
from pincer.config import get_settings
from pincer.db import get_task_by_id
from pincer.ipc._deps import IpcDeps
from pincer.ipc._protocol import (
    CancelTask,
    EnvelopeError,
    PauseTask,
    RegisterGroup,
    ResumeTask,
    ScheduleTask,
    TaskEnvelope,
    parse_message_envelope,
    parse_task_envelope,
)
from pincer.logger import logger
from pincer.types import RegisteredGroup

_ipc_watcher_lock = asyncio.Lock()
_ipc_watcher_running = False


def _move_to_error_dir(ipc_base_dir: Path, source_group: str, file_path: Path) -> None:
    """Move a failed IPC file to errors/ as ``<group>-<name>``, never replacing an earlier one.

    If the move fails the file is deleted instead so it is not handled twice.
    """
    error_dir = ipc_base_dir / "errors"
    target = error_dir / f"{source_group}-{file_path.name}"
    if target.exists():
        target = target.with_name(f"{target.stem}-{secrets.token_hex(3)}{target.suffix}")
    try:
        error_dir.mkdir(parents=True, exist_ok=True)
        file_path.rename(target)
    except OSError as exc:
        logger.error("IPC quarantine failed, dropping file", file=file_path.name, err=str(exc))
        with contextlib.suppress(OSError):
            file_path.unlink()


def _json_files(directory: Path) -> list[Path]:
    if not directory.exists():
        return []
    return sorted(f for f in directory.iterdir() if f.suffix == ".json" and f.is_file())


async def _process_message_file(
    file_path: Path,
    source_group: str,
    is_main: bool,
    ipc_base_dir: Path,
    deps: IpcDeps,
) -> None:
    try:
        envelope = parse_message_envelope(json.loads(file_path.read_text()))
        target_group = deps.registered_groups().get(envelope.chat_jid)
        if not (is_main or (target_group and target_group.folder == source_group)):
            raise EnvelopeError(f"{source_group} may not message {envelope.chat_jid}")

        await deps.send_to_chat(
            envelope.chat_jid, f"{get_settings().agent.name}: {envelope.text}"
        )
        logger.info(
            "IPC message sent",
            chat_jid=envelope.chat_jid,
            source_group=source_group,
        )
        file_path.unlink()
    except Exception as exc:
        logger.error(
            "Error processing IPC message",
            file=file_path.name,
            source_group=source_group,
            err=str(exc),
        )
        _move_to_error_dir(ipc_base_dir, source_group, file_path)


async def _process_task_file(
    file_path: Path,
    source_group: str,
    is_main: bool,
    ipc_base_dir: Path,
    deps: IpcDeps,
) -> None:
    try:
        envelope = parse_task_envelope(json.loads(file_path.read_text()))
        await apply_task_envelope(envelope, source_group, is_main, deps)
        file_path.unlink()
    except Exception as exc:
        logger.error(
            "Error processing IPC task",
            file=file_path.name,
            source_group=source_group,
            err=str(exc),
        )
        _move_to_error_dir(ipc_base_dir, source_group, file_path)


async def _authorized_task_id(task_id: str, source_group: str, is_main: bool) -> str:
    task = await get_task_by_id(task_id)
    if task is None:
        raise EnvelopeError(f"unknown task {task_id}")
    if not is_main and task.group_folder != source_group:
        raise EnvelopeError(f"{source_group} may not modify task {task_id}")
    return task.id


async def apply_task_envelope(
    envelope: TaskEnvelope,
    source_group: str,
    is_main: bool,
    deps: IpcDeps,
) -> None:
    """Authorize and apply one validated task envelope. Raises EnvelopeError if refused."""
    match envelope:
        case ScheduleTask():
            target = deps.registered_groups().get(envelope.target_jid)
            if target is None:
                raise EnvelopeError(f"target {envelope.target_jid} is not registered")
            if not is_main and target.folder != source_group:
                raise EnvelopeError(f"{source_group} may not schedule for {target.folder}")
            task = await task_scheduler.schedule_task(
                group_folder=target.folder,
                chat_jid=envelope.target_jid,
                prompt=envelope.prompt,
                schedule_type=envelope.schedule_type,
                schedule_value=envelope.schedule_value,
            )
            logger.info(
                "Task created via IPC",
                task_id=task.id,
                source_group=source_group,
                target_folder=target.folder,
            )

        case PauseTask(task_id=task_id):
            await task_scheduler.pause_task(
                await _authorized_task_id(task_id, source_group, is_main)
            )

        case ResumeTask(task_id=task_id):
            await task_scheduler.resume_task(
                await _authorized_task_id(task_id, source_group, is_main)
            )

        case CancelTask(task_id=task_id):
            await task_scheduler.cancel_task(
                await _authorized_task_id(task_id, source_group, is_main)
            )

        case RegisterGroup():
            if not is_main:
                raise EnvelopeError(f"{source_group} may not register groups")
            await deps.register_group(
                RegisteredGroup(
                    jid=envelope.jid,
                    name=envelope.name,
                    folder=envelope.folder,
                    trigger=envelope.trigger,
                    added_at=datetime.now(UTC).isoformat(),
                    is_main=envelope.folder == get_settings().groups.main_folder,
                )
            )


async def process_ipc_pass(ipc_base_dir: Path, deps: IpcDeps) -> int:
    """Handle every pending IPC file once. Returns the number of files seen."""
    processed = 0
    try:
        group_folders = sorted(
            f.name for f in ipc_base_dir.iterdir() if f.is_dir() and f.name != "errors"
        )
    except OSError as exc:
        logger.error("Error reading IPC base directory", err=str(exc))
        return 0

    main_folders = {g.folder for g in deps.registered_groups().values() if g.is_main}

    for source_group in group_folders:
        is_main = source_group in main_folders
        group_dir = ipc_base_dir / source_group

        try:
            for file_path in _json_files(group_dir / "messages"):
                await _process_message_file(file_path, source_group, is_main, ipc_base_dir, deps)
                processed += 1
        except OSError as exc:
            logger.error(
                "Error reading IPC messages directory",
                err=str(exc),
                source_group=source_group,
            )

        try:
            for file_path in _json_files(group_dir / "tasks"):
                await _process_task_file(file_path, source_group, is_main, ipc_base_dir, deps)
                processed += 1
        except OSError as exc:
            logger.error(
                "Error reading IPC tasks directory",
                err=str(exc),
                source_group=source_group,
            )

    return processed


async def start_ipc_watcher(deps: IpcDeps) -> None:
    """Start the IPC polling loop. A second call while running is a no-op."""
    global _ipc_watcher_running
    async with _ipc_watcher_lock:
        if _ipc_watcher_running:
            logger.debug("IPC watcher already running, skipping duplicate start")
            return
        _ipc_watcher_running = True

    s = get_settings()
    ipc_base_dir = s.data_dir / "ipc"
    ipc_base_dir.mkdir(parents=True, exist_ok=True)
    logger.info("IPC watcher started", interval=s.intervals.ipc_poll)

    try:
        while True:
            try:
                await process_ipc_pass(ipc_base_dir, deps)
            except Exception:
                logger.exception("IPC pass failed")
            await asyncio.sleep(s.intervals.ipc_poll)
    finally:
        _ipc_watcher_running = False
