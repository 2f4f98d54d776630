"""Runs sandbox work one group at a time, under a global concurrency cap.

Each group has at most one job in flight: either a message check (run the
registered ``process_messages`` callback) or a scheduled task. Work arriving
while a group is busy, or while every slot is taken, is parked on the group.
When a job ends the group's own backlog goes first (messages before tasks,
since a person is waiting), then groups parked on the cap in FIFO order.

Jobs are started with ``asyncio.ensure_future``, which does not run any of the
coroutine before returning. Slot accounting is therefore done synchronously
in ``_start`` and undone in the job's ``finally``.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from pincer.config import get_settings
from pincer.container_runner import graceful_stop
from pincer.ipc import write_ipc_close_sentinel, write_ipc_message
from pincer.logger import logger

ProcessMessagesFn = Callable[[str], Awaitable[bool]]
TaskFn = Callable[[], Awaitable[None]]


@dataclass
class QueuedTask:
    id: str
    fn: TaskFn


@dataclass
class GroupState:
    busy: bool = False
    messages_waiting: bool = False
    tasks_waiting: deque[QueuedTask] = field(default_factory=deque)
    # Set by register_process while a sandbox runs for the group
    process: asyncio.subprocess.Process | None = None
    container_name: str | None = None
    folder: str | None = None

    def sandbox_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def free(self) -> None:
        self.busy = False
        self.process = None
        self.container_name = None
        self.folder = None


class GroupQueue:
    """Per-group serialization with FIFO admission under ``container.max_concurrent``.

    Failures inside a job are logged and not retried; the next inbound
    message or scheduler sweep triggers fresh work.
    """

    def __init__(self) -> None:
        self._groups: dict[str, GroupState] = {}
        self._running = 0
        self._parked: deque[str] = deque()
        self._process_messages: ProcessMessagesFn | None = None
        self._closed = False

    def set_process_messages_fn(self, fn: ProcessMessagesFn) -> None:
        self._process_messages = fn

    @property
    def active_count(self) -> int:
        return self._running

    def _state(self, group_jid: str) -> GroupState:
        return self._groups.setdefault(group_jid, GroupState())

    def _at_capacity(self) -> bool:
        return self._running >= get_settings().container.max_concurrent

    def _park(self, group_jid: str) -> None:
        if group_jid not in self._parked:
            self._parked.append(group_jid)

    # --- admission ---

    def enqueue_message_check(self, group_jid: str) -> None:
        """Process the group's pending messages now, or as soon as it can run."""
        if self._closed:
            return
        state = self._state(group_jid)
        if state.busy or self._at_capacity():
            state.messages_waiting = True
            if not state.busy:
                self._park(group_jid)
            logger.debug("Message check deferred", group_jid=group_jid, running=self._running)
            return
        self._start(group_jid, self._message_job(group_jid))

    def enqueue_task(self, group_jid: str, task_id: str, fn: TaskFn) -> None:
        """Run a scheduled task for the group. A task id already waiting is not added twice."""
        if self._closed:
            return
        state = self._state(group_jid)
        if any(t.id == task_id for t in state.tasks_waiting):
            logger.debug("Task already waiting", group_jid=group_jid, task_id=task_id)
            return
        task = QueuedTask(task_id, fn)
        if state.busy or self._at_capacity():
            state.tasks_waiting.append(task)
            if not state.busy:
                self._park(group_jid)
            logger.debug("Task deferred", group_jid=group_jid, task_id=task_id)
            return
        self._start(group_jid, self._task_job(group_jid, task))

    def _start(self, group_jid: str, job: Awaitable[None]) -> None:
        self._state(group_jid).busy = True
        self._running += 1
        asyncio.ensure_future(job)

    # --- jobs ---

    async def _message_job(self, group_jid: str) -> None:
        try:
            if self._process_messages is not None:
                await self._process_messages(group_jid)
        except Exception:
            logger.exception("Message processing failed", group_jid=group_jid)
        finally:
            self._finish(group_jid)

    async def _task_job(self, group_jid: str, task: QueuedTask) -> None:
        try:
            await task.fn()
        except Exception:
            logger.exception("Scheduled task failed", group_jid=group_jid, task_id=task.id)
        finally:
            self._finish(group_jid)

    def _finish(self, group_jid: str) -> None:
        self._state(group_jid).free()
        self._running -= 1
        if self._closed:
            return
        if not self._start_backlog(group_jid):
            self._admit_parked()

    def _start_backlog(self, group_jid: str) -> bool:
        state = self._state(group_jid)
        if state.messages_waiting:
            state.messages_waiting = False
            self._start(group_jid, self._message_job(group_jid))
            return True
        if state.tasks_waiting:
            self._start(group_jid, self._task_job(group_jid, state.tasks_waiting.popleft()))
            return True
        return False

    def _admit_parked(self) -> None:
        while self._parked and not self._at_capacity():
            group_jid = self._parked.popleft()
            if not self._state(group_jid).busy:
                self._start_backlog(group_jid)

    # --- live sandbox ---

    def register_process(
        self,
        group_jid: str,
        proc: asyncio.subprocess.Process | None,
        container_name: str,
        group_folder: str | None = None,
    ) -> None:
        """Attach the running sandbox so follow-ups, close and shutdown can reach it."""
        state = self._state(group_jid)
        state.process = proc
        state.container_name = container_name
        if group_folder:
            state.folder = group_folder

    def is_active(self, group_jid: str) -> bool:
        return self._state(group_jid).busy

    def has_live_sandbox(self, group_jid: str) -> bool:
        state = self._state(group_jid)
        return state.busy and state.folder is not None and state.sandbox_alive()

    def send_message(self, group_jid: str, text: str) -> bool:
        """Hand ``text`` to the group's running sandbox as a follow-up turn.

        Returns False when there is no live sandbox or the write fails; the
        caller then queues a fresh message check instead.
        """
        if not self.has_live_sandbox(group_jid):
            return False
        folder = self._state(group_jid).folder
        try:
            write_ipc_message(folder, text)
        except OSError as exc:
            logger.warning("Follow-up write failed", group_jid=group_jid, err=str(exc))
            return False
        return True

    def close_stdin(self, group_jid: str) -> None:
        """Tell the group's sandbox to exit after its current turn."""
        state = self._state(group_jid)
        if not (state.busy and state.folder):
            return
        try:
            write_ipc_close_sentinel(state.folder)
        except OSError as exc:
            logger.warning("Close sentinel write failed", group_jid=group_jid, err=str(exc))

    async def shutdown(self) -> None:
        """Refuse new work and stop every running sandbox."""
        self._closed = True
        live = [
            (state.process, state.container_name)
            for state in self._groups.values()
            if state.container_name and state.sandbox_alive()
        ]
        logger.info("GroupQueue shutting down", running=self._running, containers=len(live))
        if live:
            await asyncio.gather(
                *(graceful_stop(proc, name) for proc, name in live), return_exceptions=True
            )
