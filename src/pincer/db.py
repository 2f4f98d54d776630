"""Persistence on a single aiosqlite connection.

The connection is module state: ``init_database()`` opens
``store/messages.db`` at startup, ``_init_test_database()`` swaps in an
in-memory database for tests. Every write commits immediately.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from pincer.config import get_settings
from pincer.types import NewMessage, RegisteredGroup, ScheduledTask, TaskRunLog

GROUP_SYNC_JID = "__group_sync__"  # row in chats that stamps the last metadata sync

_db: aiosqlite.Connection | None = None

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS chats (
    jid TEXT PRIMARY KEY,
    name TEXT,
    last_message_time TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT,
    chat_jid TEXT,
    sender TEXT,
    sender_name TEXT,
    content TEXT,
    timestamp TEXT,
    is_from_me INTEGER,
    PRIMARY KEY (id, chat_jid),
    FOREIGN KEY (chat_jid) REFERENCES chats(jid)
);
CREATE INDEX IF NOT EXISTS idx_messages_chat_ts ON messages(chat_jid, timestamp);
CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(timestamp);

CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_folder TEXT NOT NULL,
    chat_jid TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    next_run TEXT,
    last_run TEXT,
    last_result TEXT,
    status TEXT DEFAULT 'active',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON scheduled_tasks(status, next_run);

CREATE TABLE IF NOT EXISTS task_run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    run_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error TEXT,
    FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
);
CREATE INDEX IF NOT EXISTS idx_run_logs_task ON task_run_logs(task_id, run_at);

CREATE TABLE IF NOT EXISTS router_state (key TEXT PRIMARY KEY, value TEXT NOT NULL);

CREATE TABLE IF NOT EXISTS sessions (
    group_folder TEXT PRIMARY KEY,
    session_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS registered_groups (
    jid TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    folder TEXT NOT NULL UNIQUE,
    trigger_pattern TEXT NOT NULL,
    added_at TEXT NOT NULL,
    is_main INTEGER DEFAULT 0
);
"""

_MESSAGE_COLUMNS = "id, chat_jid, sender, sender_name, content, timestamp, is_from_me"
_TASK_UPDATABLE = frozenset({"prompt", "schedule_type", "schedule_value", "next_run", "status"})


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


def _conn() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized; call init_database() first")
    return _db


async def _open(target: str) -> None:
    global _db
    if _db is not None:
        await _db.close()
    _db = await aiosqlite.connect(target)
    _db.row_factory = aiosqlite.Row
    await _db.executescript(_SCHEMA)


async def init_database(path: Path | None = None) -> None:
    path = path or get_settings().store_dir / "messages.db"
    path.parent.mkdir(parents=True, exist_ok=True)
    await _open(str(path))


async def _init_test_database() -> None:
    await _open(":memory:")


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _write(sql: str, params: Iterable[Any] = ()) -> None:
    db = _conn()
    await db.execute(sql, tuple(params))
    await db.commit()


async def _rows(sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
    cursor = await _conn().execute(sql, tuple(params))
    return list(await cursor.fetchall())


async def _row(sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
    cursor = await _conn().execute(sql, tuple(params))
    return await cursor.fetchone()


def _now() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


async def store_chat_metadata(chat_jid: str, timestamp: str, name: str | None = None) -> None:
    """Record activity in a chat. The stored activity time only moves forward."""
    name_update = "name = excluded.name," if name else ""
    await _write(
        f"""
        INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
        ON CONFLICT(jid) DO UPDATE SET
            {name_update}
            last_message_time = MAX(last_message_time, excluded.last_message_time)
        """,
        (chat_jid, name or chat_jid, timestamp),
    )


async def update_chat_name(chat_jid: str, name: str) -> None:
    """Set a chat's display name; an existing chat keeps its activity time."""
    await _write(
        """
        INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)
        ON CONFLICT(jid) DO UPDATE SET name = excluded.name
        """,
        (chat_jid, name, _now()),
    )


async def get_all_chats() -> list[dict[str, str]]:
    rows = await _rows(
        "SELECT jid, name, last_message_time FROM chats ORDER BY last_message_time DESC"
    )
    return [dict(r) for r in rows]


async def get_last_group_sync() -> str | None:
    row = await _row("SELECT last_message_time FROM chats WHERE jid = ?", (GROUP_SYNC_JID,))
    return row["last_message_time"] if row else None


async def set_last_group_sync() -> None:
    await _write(
        "INSERT OR REPLACE INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)",
        (GROUP_SYNC_JID, GROUP_SYNC_JID, _now()),
    )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


async def store_message(msg: NewMessage) -> None:
    """Insert a message. A transport re-delivering the same id changes nothing."""
    await _write(
        f"INSERT OR IGNORE INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (
            msg.id,
            msg.chat_jid,
            msg.sender,
            msg.sender_name,
            msg.content,
            msg.timestamp,
            int(bool(msg.is_from_me)),
        ),
    )


def _to_message(row: aiosqlite.Row) -> NewMessage:
    return NewMessage(
        id=row["id"],
        chat_jid=row["chat_jid"],
        sender=row["sender"],
        sender_name=row["sender_name"],
        content=row["content"],
        timestamp=row["timestamp"],
        is_from_me=bool(row["is_from_me"]),
    )


# Case-sensitive, unlike LIKE, so "Pincer: hi" from a person is kept
_NOT_BOT_ECHO = "(? = '' OR substr(content, 1, length(?)) != ?)"


def _echo_args(prefix: str | None) -> tuple[str, str, str]:
    return (prefix or "",) * 3


async def get_new_messages(
    jids: list[str], last_timestamp: str, bot_prefix: str | None = None
) -> tuple[list[NewMessage], str]:
    """Messages in any of ``jids`` newer than ``last_timestamp``.

    Returns them oldest first (insertion order on equal timestamps) along
    with the newest timestamp among them, which becomes the caller's cursor.
    Content starting with ``bot_prefix`` is skipped: those are our own
    replies echoed back by the transport.
    """
    if not jids:
        return [], last_timestamp
    marks = ",".join("?" * len(jids))
    rows = await _rows(
        f"""
        SELECT {_MESSAGE_COLUMNS} FROM messages
        WHERE timestamp > ? AND chat_jid IN ({marks})
          AND {_NOT_BOT_ECHO}
        ORDER BY timestamp, rowid
        """,
        (last_timestamp, *jids, *_echo_args(bot_prefix)),
    )
    messages = [_to_message(r) for r in rows]
    newest = max((m.timestamp for m in messages), default=last_timestamp)
    return messages, max(newest, last_timestamp)


async def get_messages_since(
    chat_jid: str, since_timestamp: str, bot_prefix: str | None = None
) -> list[NewMessage]:
    """One chat's messages strictly after ``since_timestamp``, oldest first."""
    rows = await _rows(
        f"""
        SELECT {_MESSAGE_COLUMNS} FROM messages
        WHERE chat_jid = ? AND timestamp > ? AND {_NOT_BOT_ECHO}
        ORDER BY timestamp, rowid
        """,
        (chat_jid, since_timestamp, *_echo_args(bot_prefix)),
    )
    return [_to_message(r) for r in rows]


# ---------------------------------------------------------------------------
# Scheduled tasks
# ---------------------------------------------------------------------------


def _to_task(row: aiosqlite.Row) -> ScheduledTask:
    return ScheduledTask(**{k: row[k] for k in row.keys()})


async def create_task(task: dict[str, Any]) -> None:
    await _write(
        """
        INSERT INTO scheduled_tasks (id, group_folder, chat_jid, prompt, schedule_type,
                                     schedule_value, next_run, status, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            task["id"],
            task["group_folder"],
            task["chat_jid"],
            task["prompt"],
            task["schedule_type"],
            task["schedule_value"],
            task.get("next_run"),
            task.get("status", "active"),
            task["created_at"],
        ),
    )


async def get_task_by_id(task_id: str) -> ScheduledTask | None:
    row = await _row("SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,))
    return _to_task(row) if row else None


async def get_tasks_for_group(group_folder: str) -> list[ScheduledTask]:
    rows = await _rows(
        "SELECT * FROM scheduled_tasks WHERE group_folder = ? ORDER BY created_at DESC",
        (group_folder,),
    )
    return [_to_task(r) for r in rows]


async def get_all_tasks() -> list[ScheduledTask]:
    rows = await _rows("SELECT * FROM scheduled_tasks ORDER BY created_at DESC")
    return [_to_task(r) for r in rows]


async def update_task(task_id: str, updates: dict[str, Any]) -> None:
    """Update the given columns. Keys outside the updatable set are ignored."""
    changes = {k: v for k, v in updates.items() if k in _TASK_UPDATABLE}
    if not changes:
        return
    assignments = ", ".join(f"{k} = ?" for k in changes)
    await _write(
        f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?",
        (*changes.values(), task_id),
    )


async def delete_task(task_id: str) -> None:
    db = _conn()
    await db.execute("DELETE FROM task_run_logs WHERE task_id = ?", (task_id,))
    await db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    await db.commit()


async def get_due_tasks(now: str | None = None) -> list[ScheduledTask]:
    """Active tasks whose ``next_run`` is at or before ``now``, soonest first."""
    rows = await _rows(
        """
        SELECT * FROM scheduled_tasks
        WHERE status = 'active' AND next_run IS NOT NULL AND next_run <= ?
        ORDER BY next_run
        """,
        (now or _now(),),
    )
    return [_to_task(r) for r in rows]


async def update_task_after_run(task_id: str, last_result: str) -> None:
    # next_run is advanced by the sweep when the task fires, not here
    await _write(
        "UPDATE scheduled_tasks SET last_run = ?, last_result = ? WHERE id = ?",
        (_now(), last_result, task_id),
    )


async def log_task_run(log: TaskRunLog) -> None:
    await _write(
        """
        INSERT INTO task_run_logs (task_id, run_at, duration_ms, status, result, error)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (log.task_id, log.run_at, int(log.duration_ms), log.status, log.result, log.error),
    )


async def get_task_run_logs(task_id: str) -> list[TaskRunLog]:
    rows = await _rows(
        """
        SELECT task_id, run_at, duration_ms, status, result, error FROM task_run_logs
        WHERE task_id = ? ORDER BY run_at, id
        """,
        (task_id,),
    )
    return [TaskRunLog(**dict(r)) for r in rows]


# ---------------------------------------------------------------------------
# Router state and sessions
# ---------------------------------------------------------------------------


async def get_router_state(key: str) -> str | None:
    row = await _row("SELECT value FROM router_state WHERE key = ?", (key,))
    return row["value"] if row else None


async def set_router_state(key: str, value: str) -> None:
    await _write("INSERT OR REPLACE INTO router_state (key, value) VALUES (?, ?)", (key, value))


async def set_session(group_folder: str, session_id: str) -> None:
    await _write(
        "INSERT OR REPLACE INTO sessions (group_folder, session_id) VALUES (?, ?)",
        (group_folder, session_id),
    )


async def get_all_sessions() -> dict[str, str]:
    rows = await _rows("SELECT group_folder, session_id FROM sessions")
    return {r["group_folder"]: r["session_id"] for r in rows}


# ---------------------------------------------------------------------------
# Registered groups
# ---------------------------------------------------------------------------


async def set_registered_group(group: RegisteredGroup) -> None:
    await _write(
        """
        INSERT OR REPLACE INTO registered_groups
            (jid, name, folder, trigger_pattern, added_at, is_main)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (group.jid, group.name, group.folder, group.trigger, group.added_at, int(group.is_main)),
    )


async def get_all_registered_groups() -> dict[str, RegisteredGroup]:
    rows = await _rows("SELECT * FROM registered_groups ORDER BY added_at")
    return {
        r["jid"]: RegisteredGroup(
            jid=r["jid"],
            name=r["name"],
            folder=r["folder"],
            trigger=r["trigger_pattern"],
            added_at=r["added_at"],
            is_main=bool(r["is_main"]),
        )
        for r in rows
    }
