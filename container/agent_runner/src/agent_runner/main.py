"""Pincer agent runner: runs inside the sandbox container.

Input protocol:
  Stdin: Full ContainerInput JSON (read until EOF)
  IPC:   Follow-up messages written as JSON files to /workspace/ipc/input/
         Sentinel: /workspace/ipc/input/_close signals session end

Stdout protocol:
  Each result is wrapped in OUTPUT_START_MARKER / OUTPUT_END_MARKER pairs,
  one JSON line between them. Everything else goes to stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import sys
from pathlib import Path
from typing import TextIO

from .core import AgentCore, AgentCoreConfig
from .models import ContainerInput, ContainerOutput, InputParseError
from .registry import create_agent_core

IPC_INPUT_DIR = Path("/workspace/ipc/input")
CLOSE_SENTINEL = "_close"
IPC_POLL_SECONDS = 0.5

# The image entrypoint stages stdin here; it holds secrets
STAGED_INPUT_FILE = Path("/tmp/input.json")
GLOBAL_CLAUDE_MD = Path("/workspace/global/CLAUDE.md")
GROUP_CWD = "/workspace/group"

OUTPUT_START_MARKER = "---PINCER_OUTPUT_START---"
OUTPUT_END_MARKER = "---PINCER_OUTPUT_END---"

SCHEDULED_TASK_PREFIX = (
    "[SCHEDULED TASK - The following message was sent automatically "
    "and is not coming directly from the user or group.]\n\n"
)


class EngineError(RuntimeError):
    """The agent core failed while running a turn."""


def log(message: str) -> None:
    print(f"[agent-runner] {message}", file=sys.stderr, flush=True)


def write_output(output: ContainerOutput) -> None:
    """Emit one framed result block on stdout and flush it."""
    frame = (OUTPUT_START_MARKER, json.dumps(output.to_dict()), OUTPUT_END_MARKER)
    sys.stdout.write("\n".join(frame) + "\n")
    sys.stdout.flush()


# --- follow-up input ---


def _remove(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def should_close() -> bool:
    """True once the host has written the close sentinel, which is consumed."""
    sentinel = IPC_INPUT_DIR / CLOSE_SENTINEL
    if not sentinel.exists():
        return False
    _remove(sentinel)
    return True


def _follow_up_text(path: Path) -> str | None:
    try:
        envelope = json.loads(path.read_text())
    except (OSError, ValueError) as exc:
        log(f"Unreadable input file {path.name}: {exc}")
        return None
    if isinstance(envelope, dict) and envelope.get("type") == "message" and envelope.get("text"):
        return envelope["text"]
    log(f"Ignoring input file {path.name}: not a message envelope")
    return None


def drain_ipc_input() -> list[str]:
    """Take every queued follow-up in file-name order, deleting each file, good or bad."""
    try:
        IPC_INPUT_DIR.mkdir(parents=True, exist_ok=True)
        queued = sorted(p for p in IPC_INPUT_DIR.iterdir() if p.suffix == ".json")
    except OSError as exc:
        log(f"Cannot list input directory: {exc}")
        return []

    texts = []
    for path in queued:
        text = _follow_up_text(path)
        _remove(path)
        if text:
            texts.append(text)
    return texts


async def wait_for_ipc_message() -> str | None:
    """Block until follow-ups arrive (returned newline-joined) or the sentinel does (None)."""
    while not should_close():
        if texts := drain_ipc_input():
            return "\n".join(texts)
        await asyncio.sleep(IPC_POLL_SECONDS)
    return None


# --- startup ---


def read_input(stream: TextIO) -> ContainerInput:
    """Read stdin to EOF and parse it. Raises InputParseError."""
    try:
        data = json.loads(stream.read())
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InputParseError(f"invalid JSON: {exc}") from exc
    finally:
        with contextlib.suppress(FileNotFoundError):
            STAGED_INPUT_FILE.unlink()
    return ContainerInput.from_dict(data)


def build_initial_prompt(container_input: ContainerInput) -> str:
    """The first turn's prompt, with any follow-ups that arrived before startup appended."""
    parts = [container_input.prompt]
    if container_input.is_scheduled_task:
        parts[0] = SCHEDULED_TASK_PREFIX + parts[0]
    early = drain_ipc_input()
    if early:
        log(f"Folding {len(early)} early follow-ups into the first prompt")
    return "\n".join(parts + early)


def build_core_config(container_input: ContainerInput) -> AgentCoreConfig:
    system_prompt_append = None
    if not container_input.is_main and GLOBAL_CLAUDE_MD.exists():
        system_prompt_append = GLOBAL_CLAUDE_MD.read_text()

    return AgentCoreConfig(
        cwd=GROUP_CWD,
        group_folder=container_input.group_folder,
        chat_jid=container_input.chat_jid,
        is_main=container_input.is_main,
        session_id=container_input.session_id,
        system_prompt_append=system_prompt_append,
        mcp_servers={
            "pincer": {
                "command": sys.executable,
                "args": ["-m", "agent_runner.ipc_mcp"],
                "env": {
                    "PINCER_CHAT_JID": container_input.chat_jid,
                    "PINCER_GROUP_FOLDER": container_input.group_folder,
                    "PINCER_IS_MAIN": "1" if container_input.is_main else "0",
                },
            },
        },
        env=dict(container_input.secrets),
    )


# --- turn loop ---


async def run_turn(core: AgentCore, prompt: str) -> str | None:
    """Run one query. Returns the concatenated text, or None if there was none."""
    parts: list[str] = []
    try:
        async for event in core.query(prompt):
            if event.type == "text":
                parts.append(event.data.get("text", ""))
            else:
                log(f"[{event.type}] {json.dumps(event.data, default=str)[:200]}")
    except Exception as exc:
        raise EngineError(str(exc)) from exc
    return "".join(parts) or None


async def run_turn_loop(core: AgentCore, prompt: str) -> None:
    """Turn, then wait for follow-ups, until the close sentinel appears."""
    while True:
        result = await run_turn(core, prompt)
        write_output(
            ContainerOutput(status="success", result=result, new_session_id=core.session_id)
        )

        if should_close():
            log("Close sentinel consumed after turn, exiting")
            return

        # Session update so the host can persist it while we wait
        write_output(ContainerOutput(status="success", result=None, new_session_id=core.session_id))

        log("Turn ended, waiting for next IPC message...")
        next_message = await wait_for_ipc_message()
        if next_message is None:
            log("Close sentinel received, exiting")
            return

        log(f"Got new message ({len(next_message)} chars), starting new turn")
        prompt = next_message


async def main() -> int:
    try:
        container_input = read_input(sys.stdin)
    except InputParseError as exc:
        write_output(ContainerOutput(status="error", error=f"Failed to parse input: {exc}"))
        return 1
    log(f"Received input for group: {container_input.group_folder}")

    # Clean up a stale _close sentinel from a previous run
    IPC_INPUT_DIR.mkdir(parents=True, exist_ok=True)
    with contextlib.suppress(FileNotFoundError):
        (IPC_INPUT_DIR / CLOSE_SENTINEL).unlink()

    prompt = build_initial_prompt(container_input)

    core: AgentCore | None = None
    try:
        core = create_agent_core(container_input.agent_core, build_core_config(container_input))
        await core.start()
        await run_turn_loop(core, prompt)
    except Exception as exc:
        log(f"Agent error: {exc}")
        write_output(
            ContainerOutput(
                status="error",
                new_session_id=core.session_id if core else container_input.session_id,
                error=str(exc),
            )
        )
        return 1
    finally:
        if core is not None:
            await core.stop()
    return 0
