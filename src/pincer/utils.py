"""Helpers shared across the host: schedule math, ids, file writes and timers."""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from croniter import croniter

from pincer.logger import logger
from pincer.types import ScheduleType


def _epoch_ms() -> int:
    return time.time_ns() // 1_000_000


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write *data* as JSON so that readers see either nothing or the whole file.

    The content goes to ``<name>.json.tmp`` first, which ``*.json`` globs skip,
    and is then renamed into place. Parent directories are created.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_suffix(".json.tmp")
    staging.write_text(json.dumps(data, indent=indent))
    staging.rename(path)


def ipc_filename() -> str:
    """``<13-digit epoch ms>-<6 hex>.json``; names sort in creation order."""
    return f"{_epoch_ms():013d}-{secrets.token_hex(3)}.json"


def generate_task_id() -> str:
    return f"task-{_epoch_ms()}-{secrets.token_hex(3)}"


def _check_cron(value: str) -> None:
    if not croniter.is_valid(value):
        raise ValueError(f"Invalid cron expression: {value}")


def _check_interval(value: str) -> None:
    try:
        ms = int(value)
    except ValueError:
        raise ValueError(f"Invalid interval: {value}") from None
    if ms <= 0:
        raise ValueError(f"Interval must be positive, got {ms}")


def _check_once(value: str) -> None:
    try:
        datetime.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Invalid timestamp: {value}") from None


_SCHEDULE_CHECKS: dict[str, Callable[[str], None]] = {
    "cron": _check_cron,
    "interval": _check_interval,
    "once": _check_once,
}


def validate_schedule(schedule_type: str, schedule_value: str) -> None:
    """Raise ValueError unless *schedule_value* is valid for *schedule_type*."""
    check = _SCHEDULE_CHECKS.get(schedule_type)
    if check is None:
        raise ValueError(f"Unknown schedule type: {schedule_type}")
    check(schedule_value)


def compute_next_run(
    schedule_type: ScheduleType,
    schedule_value: str,
    timezone: str,
    *,
    now: datetime | None = None,
) -> str | None:
    """Next firing strictly after *now* for a recurring schedule, as UTC ISO-8601.

    UTC strings compare correctly as text, which the due-task query relies
    on. Cron expressions are evaluated in *timezone*. ``once`` schedules
    have no next run and give None.
    """
    if schedule_type == "once":
        return None
    validate_schedule(schedule_type, schedule_value)
    now = now or datetime.now(UTC)
    if schedule_type == "cron":
        following = croniter(schedule_value, now.astimezone(ZoneInfo(timezone))).get_next(datetime)
    else:
        following = now + timedelta(milliseconds=int(schedule_value))
    return following.astimezone(UTC).isoformat()


def compute_first_run(
    schedule_type: ScheduleType,
    schedule_value: str,
    timezone: str,
    *,
    now: datetime | None = None,
) -> str:
    """``next_run`` for a task being created. Naive ``once`` times are local to *timezone*."""
    validate_schedule(schedule_type, schedule_value)
    if schedule_type != "once":
        first = compute_next_run(schedule_type, schedule_value, timezone, now=now)
        assert first is not None
        return first
    at = datetime.fromisoformat(schedule_value)
    if at.tzinfo is None:
        at = at.replace(tzinfo=ZoneInfo(timezone))
    return at.astimezone(UTC).isoformat()


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """``asyncio.create_task`` for fire-and-forget work; a failure is logged, not lost."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_report_failure)
    return task


def _report_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled() or task.exception() is None:
        return
    # Done callbacks run outside any except block, so pass the exception explicitly
    logger.error("Background task failed", task_name=task.get_name(), exc_info=task.exception())


class IdleTimer:
    """Calls *callback* once *timeout* seconds pass without a ``reset``.

    Sandbox runs reset it on every output block; when it fires the sandbox is
    sent the close sentinel.
    """

    def __init__(self, timeout: float, callback: Callable[[], None]) -> None:
        self._timeout = timeout
        self._callback = callback
        self._loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = None

    def reset(self) -> None:
        self.cancel()
        self._handle = self._loop.call_later(self._timeout, self._callback)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
