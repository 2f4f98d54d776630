"""Stdio MCP server exposing the pincer IPC tools to the agent.

Standalone process launched by the agent core. Reads its context from
PINCER_* environment variables and writes envelope files that the host's
IPC watcher picks up from /workspace/ipc.
"""

from __future__ import annotations

import json
import os
import secrets
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from croniter import croniter
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import CallToolResult, TextContent, Tool

IPC_DIR = Path("/workspace/ipc")


@dataclass(frozen=True)
class ToolContext:
    chat_jid: str
    group_folder: str
    is_main: bool

    @classmethod
    def from_env(cls) -> ToolContext:
        return cls(
            chat_jid=os.environ.get("PINCER_CHAT_JID", ""),
            group_folder=os.environ.get("PINCER_GROUP_FOLDER", ""),
            is_main=os.environ.get("PINCER_IS_MAIN") == "1",
        )


def write_ipc_file(directory: Path, data: dict[str, Any]) -> str:
    """Write an IPC file atomically (temp file + rename). Returns the file name."""
    name = f"{time.time_ns() // 1_000_000:013d}-{secrets.token_hex(3)}.json"
    final = directory / name
    staging = final.with_suffix(".json.tmp")
    directory.mkdir(parents=True, exist_ok=True)
    staging.write_text(json.dumps(data, indent=2))
    staging.rename(final)
    return name


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _error(text: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)


def schedule_error(schedule_type: str, schedule_value: str) -> str | None:
    """Human-readable problem with a schedule, or None if it is valid."""
    match schedule_type:
        case "cron":
            if not croniter.is_valid(schedule_value):
                return (
                    f'Invalid cron: "{schedule_value}". Use format like '
                    '"0 9 * * *" (daily 9am) or "*/5 * * * *" (every 5 min).'
                )
        case "interval":
            try:
                ms = int(schedule_value)
            except (ValueError, TypeError):
                ms = 0
            if ms <= 0:
                return (
                    f'Invalid interval: "{schedule_value}". Must be positive '
                    'milliseconds (e.g., "300000" for 5 min).'
                )
        case "once":
            try:
                datetime.fromisoformat(schedule_value)
            except (ValueError, TypeError):
                return (
                    f'Invalid timestamp: "{schedule_value}". Use ISO 8601 format '
                    'like "2026-02-01T15:30:00".'
                )
        case _:
            return f'Invalid schedule_type: "{schedule_type}". Use cron, interval or once.'
    return None


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


def handle_send_message(ctx: ToolContext, arguments: dict[str, Any]) -> list[TextContent]:
    write_ipc_file(
        IPC_DIR / "messages",
        {
            "type": "message",
            "chatJid": ctx.chat_jid,
            "text": arguments["text"],
            "groupFolder": ctx.group_folder,
            "timestamp": _now_iso(),
        },
    )
    return _text("Message sent.")


def handle_schedule_task(
    ctx: ToolContext, arguments: dict[str, Any]
) -> list[TextContent] | CallToolResult:
    prompt = arguments.get("prompt")
    if not prompt:
        return _error('Tasks require a "prompt" field.')

    schedule_type = arguments.get("schedule_type", "")
    schedule_value = str(arguments.get("schedule_value", ""))
    problem = schedule_error(schedule_type, schedule_value)
    if problem:
        return _error(problem)

    # Only the main group may schedule for another chat
    target_jid = (arguments.get("target_group_jid") if ctx.is_main else None) or ctx.chat_jid

    filename = write_ipc_file(
        IPC_DIR / "tasks",
        {
            "type": "schedule_task",
            "prompt": prompt,
            "schedule_type": schedule_type,
            "schedule_value": schedule_value,
            "targetJid": target_jid,
            "createdBy": ctx.group_folder,
            "timestamp": _now_iso(),
        },
    )
    return _text(f"Task scheduled ({filename}): {schedule_type} - {schedule_value}")


def handle_list_tasks(ctx: ToolContext) -> list[TextContent]:
    snapshot = IPC_DIR / "current_tasks.json"
    try:
        rows = json.loads(snapshot.read_text()) if snapshot.exists() else []
    except (OSError, json.JSONDecodeError) as exc:
        return _text(f"Error reading tasks: {exc}")

    if not ctx.is_main:
        rows = [row for row in rows if row.get("groupFolder") == ctx.group_folder]
    if not rows:
        return _text("No scheduled tasks found.")

    lines = ["Scheduled tasks:"]
    for row in rows:
        schedule = f"{row['schedule_type']}: {row['schedule_value']}"
        lines.append(
            f"- [{row['id']}] {row['prompt'][:50]}... ({schedule}) "
            f"- {row['status']}, next: {row.get('next_run') or 'N/A'}"
        )
    return _text("\n".join(lines))


def handle_task_action(ctx: ToolContext, action: str, task_id: str) -> list[TextContent]:
    """Write a pause/resume/cancel envelope and return confirmation."""
    write_ipc_file(
        IPC_DIR / "tasks",
        {
            "type": action,
            "taskId": task_id,
            "groupFolder": ctx.group_folder,
            "timestamp": _now_iso(),
        },
    )
    verb = {"pause_task": "pause", "resume_task": "resume", "cancel_task": "cancellation"}[action]
    return _text(f"Task {task_id} {verb} requested.")


def handle_register_group(
    ctx: ToolContext, arguments: dict[str, Any]
) -> list[TextContent] | CallToolResult:
    if not ctx.is_main:
        return _error("Only the main group can register new groups.")

    write_ipc_file(
        IPC_DIR / "tasks",
        {
            "type": "register_group",
            "jid": arguments["jid"],
            "name": arguments["name"],
            "folder": arguments["folder"],
            "trigger": arguments["trigger"],
            "timestamp": _now_iso(),
        },
    )
    return _text(
        f'Group "{arguments["name"]}" registered. It will start receiving messages immediately.'
    )


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

server = Server("pincer")

_TASK_ID_SCHEMA = {
    "type": "object",
    "properties": {"task_id": {"type": "string", "description": "The task ID"}},
    "required": ["task_id"],
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="send_message",
            description=(
                "Send a message to the chat immediately while you're still running. "
                "Use this for progress updates or to send several messages."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "text": {"type": "string", "description": "The message text to send"},
                },
                "required": ["text"],
            },
        ),
        Tool(
            name="schedule_task",
            description=(
                "Schedule a recurring or one-time task. The task runs a full agent "
                "turn with the given prompt and its output is sent to the chat.\n\n"
                "SCHEDULE VALUE FORMAT (all times are LOCAL timezone):\n"
                '- cron: standard cron expression (e.g. "0 9 * * *" for daily at 9am)\n'
                '- interval: milliseconds between runs (e.g. "3600000" for 1 hour)\n'
                '- once: local time WITHOUT "Z" suffix (e.g. "2026-02-01T15:30:00")'
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string", "description": "What the agent should do"},
                    "schedule_type": {"type": "string", "enum": ["cron", "interval", "once"]},
                    "schedule_value": {"type": "string"},
                    "target_group_jid": {
                        "type": "string",
                        "description": "Main group only: chat to run the task for",
                    },
                },
                "required": ["prompt", "schedule_type", "schedule_value"],
            },
        ),
        Tool(
            name="list_tasks",
            description=(
                "List scheduled tasks. The main group sees all tasks; "
                "other groups see only their own."
            ),
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="pause_task",
            description="Pause a scheduled task. It will not run until resumed.",
            inputSchema=_TASK_ID_SCHEMA,
        ),
        Tool(name="resume_task", description="Resume a paused task.", inputSchema=_TASK_ID_SCHEMA),
        Tool(
            name="cancel_task",
            description="Cancel and delete a scheduled task.",
            inputSchema=_TASK_ID_SCHEMA,
        ),
        Tool(
            name="register_group",
            description=(
                "Register a chat group so the agent responds there. Main group only. "
                "Find the JID in /workspace/ipc/available_groups.json. "
                'The folder name should be lowercase with hyphens (e.g. "family-chat").'
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "jid": {"type": "string", "description": "The chat JID"},
                    "name": {"type": "string", "description": "Display name"},
                    "folder": {"type": "string", "description": "Folder for group files"},
                    "trigger": {"type": "string", "description": 'Trigger (e.g. "@pincer")'},
                },
                "required": ["jid", "name", "folder", "trigger"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent] | CallToolResult:
    ctx = ToolContext.from_env()
    match name:
        case "send_message":
            return handle_send_message(ctx, arguments)
        case "schedule_task":
            return handle_schedule_task(ctx, arguments)
        case "list_tasks":
            return handle_list_tasks(ctx)
        case "pause_task" | "resume_task" | "cancel_task":
            return handle_task_action(ctx, name, arguments["task_id"])
        case "register_group":
            return handle_register_group(ctx, arguments)
        case _:
            return _text(f"Unknown tool: {name}")


async def run_server() -> None:
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


if __name__ == "__main__":
    import asyncio

    asyncio.run(run_server())
