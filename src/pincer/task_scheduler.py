"""Fires scheduled tasks when they come due.

Every ``scheduler.poll_interval`` seconds the loop asks the database for
active tasks whose ``next_run`` has passed. Each one has its schedule moved
forward immediately (a ``once`` task is marked completed) and is then queued
on the GroupQueue, so it never overlaps a chat turn in the same group.

The create/pause/resume/cancel helpers at the end back the IPC task envelopes.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from pincer import db
from pincer.config import get_settings
from pincer.logger import logger
from pincer.router import format_outbound
from pincer.types import ContainerOutput, RegisteredGroup, ScheduledTask, ScheduleType, TaskRunLog
from pincer.utils import IdleTimer, compute_first_run, compute_next_run, generate_task_id

if TYPE_CHECKING:
    from pincer.group_queue import GroupQueue


class SchedulerDependencies(Protocol):
    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    @property
    def queue(self) -> GroupQueue: ...

    async def send_to_chat(self, jid: str, text: str) -> None: ...

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_output: Callable[[ContainerOutput], Awaitable[None]] | None = None,
        *,
        is_scheduled_task: bool = False,
    ) -> ContainerOutput: ...


_loop_guard = asyncio.Lock()
_loop_active = False


async def start_scheduler_loop(deps: SchedulerDependencies) -> None:
    """Sweep for due tasks forever. Only one loop runs; later calls return at once."""
    global _loop_active
    async with _loop_guard:
        if _loop_active:
            logger.debug("Scheduler loop already running")
            return
        _loop_active = True

    logger.info("Scheduler loop started", poll_interval=get_settings().scheduler.poll_interval)
    try:
        while True:
            try:
                await sweep_due_tasks(deps)
            except Exception:
                logger.exception("Scheduler sweep failed")
            await asyncio.sleep(get_settings().scheduler.poll_interval)
    finally:
        _loop_active = False


async def sweep_due_tasks(
    deps: SchedulerDependencies, *, now: datetime | None = None
) -> list[str]:
    """Queue every task due at *now* (default: the current time); returns their ids."""
    now = now or datetime.now(UTC)
    due = await db.get_due_tasks(now.isoformat())
    if due:
        logger.info("Due tasks found", count=len(due))

    queued: list[str] = []
    for candidate in due:
        # An earlier iteration's side effects may have paused or removed it
        task = await db.get_task_by_id(candidate.id)
        if task is None or task.status != "active":
            continue
        await _advance_schedule(task, now)
        deps.queue.enqueue_task(task.chat_jid, task.id, _runner_for(task, deps))
        queued.append(task.id)
    return queued


def _runner_for(task: ScheduledTask, deps: SchedulerDependencies) -> Callable[[], Awaitable[None]]:
    async def run() -> None:
        await _run_scheduled_agent(task, deps)

    return run


async def _advance_schedule(task: ScheduledTask, fired_at: datetime) -> None:
    """Set the task's next firing, or complete it, before the run is queued."""
    if task.schedule_type == "once":
        await db.update_task(task.id, {"next_run": None, "status": "completed"})
        return
    try:
        following = compute_next_run(
            task.schedule_type, task.schedule_value, get_settings().timezone, now=fired_at
        )
    except ValueError as exc:
        # Left active, an unparseable schedule would be due on every sweep
        logger.error("Stored schedule is invalid, pausing", task_id=task.id, err=str(exc))
        await db.update_task(task.id, {"status": "paused"})
        return
    await db.update_task(task.id, {"next_run": following})


async def _record_run(
    task: ScheduledTask, started: float, result: str | None, error: str | None
) -> None:
    await db.log_task_run(
        TaskRunLog(
            task_id=task.id,
            run_at=datetime.now(UTC).isoformat(),
            duration_ms=(time.monotonic() - started) * 1000,
            status="error" if error else "success",
            result=result,
            error=error,
        )
    )


def _summary(result: str | None, error: str | None) -> str:
    if error:
        return f"Error: {error}"
    return result[:200] if result else "Completed"


async def _run_scheduled_agent(task: ScheduledTask, deps: SchedulerDependencies) -> None:
    """Run the task's prompt in its group's sandbox and record the outcome.

    Output is sent to the task's chat as it streams. A run whose group is no
    longer registered is logged as an error without spawning anything.
    """
    started = time.monotonic()
    log = logger.bind(task_id=task.id, group_folder=task.group_folder)
    group = next(
        (g for g in deps.registered_groups().values() if g.folder == task.group_folder), None
    )
    if group is None:
        log.error("Task group is not registered")
        await _record_run(task, started, None, f"Group not found: {task.group_folder}")
        return

    log.info("Running scheduled task")
    latest: str | None = None
    error: str | None = None
    # Nobody sends follow-ups to a task run; close the sandbox once it goes quiet
    idle = IdleTimer(get_settings().idle_timeout, lambda: deps.queue.close_stdin(task.chat_jid))

    async def forward(block: ContainerOutput) -> None:
        nonlocal latest, error
        if block.result:
            latest = block.result
            if text := format_outbound(block.result):
                await deps.send_to_chat(task.chat_jid, text)
            idle.reset()
        if block.status == "error":
            error = block.error or "Unknown error"

    try:
        final = await deps.run_agent(
            group, task.prompt, task.chat_jid, forward, is_scheduled_task=True
        )
    except Exception as exc:
        error = str(exc)
        log.error("Scheduled task raised", err=error)
    else:
        if final.status == "error":
            error = error or final.error or "Agent returned error"
        log.info("Scheduled task finished", duration_ms=(time.monotonic() - started) * 1000)
    finally:
        idle.cancel()

    await _record_run(task, started, latest, error)
    await db.update_task_after_run(task.id, _summary(latest, error))


# --- task management, called from the IPC watcher ---


async def schedule_task(
    *,
    group_folder: str,
    chat_jid: str,
    prompt: str,
    schedule_type: ScheduleType,
    schedule_value: str,
) -> ScheduledTask:
    """Store a new active task. A malformed schedule raises ValueError and stores nothing."""
    task = ScheduledTask(
        id=generate_task_id(),
        group_folder=group_folder,
        chat_jid=chat_jid,
        prompt=prompt,
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        next_run=compute_first_run(schedule_type, schedule_value, get_settings().timezone),
        created_at=datetime.now(UTC).isoformat(),
    )
    await db.create_task(asdict(task))
    logger.info(
        "Task scheduled", task_id=task.id, group_folder=group_folder, next_run=task.next_run
    )
    return task


async def pause_task(task_id: str) -> None:
    await db.update_task(task_id, {"status": "paused"})
    logger.info("Task paused", task_id=task_id)


async def resume_task(task_id: str) -> None:
    """Set a paused task active again; a recurring task without ``next_run`` gets one."""
    task = await db.get_task_by_id(task_id)
    if task is None:
        return
    changes: dict[str, str | None] = {"status": "active"}
    if task.schedule_type != "once" and task.next_run is None:
        changes["next_run"] = compute_next_run(
            task.schedule_type, task.schedule_value, get_settings().timezone
        )
    await db.update_task(task_id, changes)
    logger.info("Task resumed", task_id=task_id)


async def cancel_task(task_id: str) -> None:
    await db.delete_task(task_id)
    logger.info("Task cancelled", task_id=task_id)
