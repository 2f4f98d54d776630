"""Claude engine core, backed by ``ClaudeSDKClient``.

One client is connected in ``start`` and reused for every turn of the
sandbox's life, so follow-up prompts continue the same session. A PreCompact
hook copies the session transcript to ``conversations/`` in the group
workspace before the engine compacts it.
"""

from __future__ import annotations

import json
import re
import sys
from collections.abc import AsyncIterator, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    HookContext,
    HookMatcher,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

from ..core import AgentCoreConfig, AgentEvent

CONVERSATIONS_DIR = Path("/workspace/group/conversations")
ARCHIVE_MESSAGE_LIMIT = 2000

_BUILTIN_TOOLS = (
    "Bash Read Write Edit Glob Grep WebSearch WebFetch Task TodoWrite NotebookEdit"
).split()
ALLOWED_TOOLS = [*_BUILTIN_TOOLS, "mcp__pincer__*"]


def _log(message: str) -> None:
    print(f"[claude-core] {message}", file=sys.stderr, flush=True)


# --- transcript archive ---


def _sanitize_filename(summary: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", summary.lower()).strip("-")[:50]


def _entry_text(entry: dict[str, Any]) -> tuple[str, str] | None:
    """(role, text) for one transcript entry, or None when it carries no chat text."""
    message = entry.get("message")
    parts = message.get("content") if isinstance(message, dict) else None
    if not parts:
        return None
    kind = entry.get("type")
    if kind == "user":
        if isinstance(parts, str):
            return "user", parts
        return "user", "".join(part.get("text", "") for part in parts)
    if kind == "assistant" and isinstance(parts, list):
        return "assistant", "".join(p.get("text", "") for p in parts if p.get("type") == "text")
    return None


def parse_transcript(content: str) -> list[dict[str, str]]:
    """User and assistant text from a JSONL session transcript. Bad lines are skipped."""
    messages: list[dict[str, str]] = []
    for raw_line in filter(str.strip, content.splitlines()):
        try:
            entry = json.loads(raw_line)
        except json.JSONDecodeError:
            continue
        found = _entry_text(entry)
        if found and found[1]:
            messages.append({"role": found[0], "content": found[1]})
    return messages


def format_transcript_markdown(messages: list[dict[str, str]], title: str | None = None) -> str:
    out = [f"# {title or 'Conversation'}", "", f"Archived: {datetime.now():%b %d, %I:%M %p}", ""]
    out += ["---", ""]
    for message in messages:
        who = "User" if message["role"] == "user" else "Assistant"
        body = message["content"]
        if len(body) > ARCHIVE_MESSAGE_LIMIT:
            body = body[:ARCHIVE_MESSAGE_LIMIT] + "..."
        out += [f"**{who}**: {body}", ""]
    return "\n".join(out)


def _session_summary(session_id: str, transcript_path: Path) -> str | None:
    """Summary the engine recorded for *session_id* in ``sessions-index.json``, if any."""
    index_file = transcript_path.parent / "sessions-index.json"
    if not index_file.exists():
        return None
    try:
        entries = json.loads(index_file.read_text()).get("entries", [])
    except (OSError, json.JSONDecodeError) as exc:
        _log(f"Unreadable sessions index: {exc}")
        return None
    return next((e.get("summary") for e in entries if e.get("sessionId") == session_id), None)


async def archive_before_compact(
    input_data: dict[str, Any],
    tool_use_id: str | None,
    context: HookContext,
) -> dict[str, Any]:
    transcript = Path(input_data.get("transcript_path") or "")
    if not transcript.is_file():
        _log("PreCompact: no transcript to archive")
        return {}

    try:
        messages = parse_transcript(transcript.read_text())
        if messages:
            summary = _session_summary(input_data.get("session_id", ""), transcript)
            now = datetime.now()
            slug = _sanitize_filename(summary) if summary else f"conversation-{now:%H%M}"
            CONVERSATIONS_DIR.mkdir(parents=True, exist_ok=True)
            target = CONVERSATIONS_DIR / f"{now:%Y-%m-%d}-{slug}.md"
            target.write_text(format_transcript_markdown(messages, summary))
            _log(f"Archived {len(messages)} messages to {target}")
    except OSError as exc:
        _log(f"Transcript archive failed: {exc}")
    return {}


# --- SDK message translation ---


def _block_event(block: Any) -> AgentEvent | None:
    if isinstance(block, TextBlock):
        return AgentEvent("text", {"text": block.text})
    if isinstance(block, ThinkingBlock):
        return AgentEvent("thinking", {"thinking": block.thinking})
    if isinstance(block, ToolUseBlock):
        return AgentEvent("tool_use", {"tool_name": block.name, "tool_input": block.input})
    if isinstance(block, ToolResultBlock):
        return AgentEvent(
            "tool_result", {"tool_use_id": block.tool_use_id, "is_error": block.is_error}
        )
    return None


def _result_event(message: ResultMessage) -> AgentEvent:
    return AgentEvent(
        "result",
        {
            "subtype": message.subtype,
            "is_error": message.is_error,
            "num_turns": message.num_turns,
            "total_cost_usd": message.total_cost_usd,
        },
    )


class ClaudeAgentCore:
    def __init__(self, config: AgentCoreConfig) -> None:
        self.config = config
        self._client: ClaudeSDKClient | None = None
        self._session_id: str | None = config.session_id

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def _options(self) -> ClaudeAgentOptions:
        appended = self.config.system_prompt_append
        return ClaudeAgentOptions(
            cwd=self.config.cwd,
            resume=self.config.session_id,
            system_prompt=(
                {"type": "preset", "preset": "claude_code", "append": appended}
                if appended
                else None
            ),
            allowed_tools=ALLOWED_TOOLS,
            permission_mode="bypassPermissions",
            setting_sources=["project", "user"],
            mcp_servers=self.config.mcp_servers,
            # Secrets go to the engine subprocess, never to os.environ
            env=dict(self.config.env),
            hooks={"PreCompact": [HookMatcher(hooks=[archive_before_compact])]},
        )

    async def start(self) -> None:
        client = ClaudeSDKClient(self._options())
        await client.connect()
        self._client = client

    def _translate(self, message: Any) -> Iterator[AgentEvent]:
        if isinstance(message, SystemMessage):
            sid = message.data.get("session_id") if message.subtype == "init" else None
            if sid:
                self._session_id = sid
                _log(f"Session initialized: {sid}")
            yield AgentEvent("system", {"subtype": message.subtype})
        elif isinstance(message, AssistantMessage):
            yield from filter(None, map(_block_event, message.content))
        elif isinstance(message, ResultMessage):
            self._session_id = message.session_id or self._session_id
            yield _result_event(message)

    async def query(self, prompt: str) -> AsyncIterator[AgentEvent]:
        if self._client is None:
            raise RuntimeError("ClaudeAgentCore.query called before start()")

        _log(f"Query on session {self._session_id or 'new'}")
        await self._client.query(prompt)
        seen = 0
        async for message in self._client.receive_response():
            seen += 1
            for event in self._translate(message):
                yield event
        _log(f"Query finished after {seen} messages")

    async def stop(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            _log(f"Client disconnect failed: {exc}")
