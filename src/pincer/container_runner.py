"""Runs one sandboxed agent process for a group and collects its results.

The turn request (secrets included) goes to the sandbox on stdin, which is
then closed. Results come back on stdout as JSON blocks wrapped in the
``OUTPUT_START_MARKER``/``OUTPUT_END_MARKER`` pair and are forwarded as they
arrive. Follow-up prompts and the close sentinel use the IPC input directory
instead (see ``pincer.ipc``).
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pincer.config import Settings, get_settings
from pincer.logger import logger
from pincer.runtime import CONTAINER_PREFIX, get_runtime
from pincer.types import ContainerInput, ContainerOutput, RegisteredGroup, VolumeMount

OnProcess = Callable[[asyncio.subprocess.Process, str], Any]
OnOutput = Callable[[ContainerOutput], Awaitable[None]]
OnSession = Callable[[str], Awaitable[None]]

_READ_CHUNK = 8192
_STOP_GRACE_SECONDS = 15.0
# The idle close path should always fire before the hard timeout does
_HARD_TIMEOUT_MARGIN = 30.0


class SandboxBusyError(RuntimeError):
    """Another sandbox already owns this group folder."""


class SpawnError(RuntimeError):
    """The runtime CLI could not be executed."""


_live_folders: set[str] = set()


def is_sandbox_live(folder: str) -> bool:
    return folder in _live_folders


# --- wire format ---


def _input_to_dict(input_data: ContainerInput, *, include_secrets: bool = True) -> dict[str, Any]:
    """Stdin document for the sandbox. Optional keys are left out when at their defaults."""
    doc: dict[str, Any] = {
        key: getattr(input_data, key) for key in ("prompt", "group_folder", "chat_jid", "is_main")
    }
    optional = {
        "session_id": input_data.session_id,
        "is_scheduled_task": input_data.is_scheduled_task or None,
        "agent_core": None if input_data.agent_core == "claude" else input_data.agent_core,
        "secrets": dict(input_data.secrets) if include_secrets and input_data.secrets else None,
    }
    doc.update({key: value for key, value in optional.items() if value is not None})
    return doc


def _parse_container_output(json_str: str) -> ContainerOutput:
    data = json.loads(json_str)
    if not isinstance(data, dict):
        raise ValueError(f"output block is not an object: {type(data).__name__}")
    status = data.get("status")
    if status not in ("success", "error"):
        raise ValueError(f"invalid status: {status!r}")
    return ContainerOutput(
        status=status,
        result=data.get("result"),
        new_session_id=data.get("new_session_id") or data.get("newSessionId"),
        error=data.get("error"),
    )


def extract_output_blocks(buffer: str) -> tuple[list[str], str]:
    """Split every complete marker-framed block off the front of *buffer*.

    Returns the stripped payloads and whatever is left over. An unterminated
    block is left in the remainder whole. Without any start marker only a
    short tail survives, long enough to hold a start marker cut by a read.
    """
    start, end = Settings.OUTPUT_START_MARKER, Settings.OUTPUT_END_MARKER
    payloads: list[str] = []
    rest = buffer
    while (begin := rest.find(start)) != -1:
        finish = rest.find(end, begin)
        if finish == -1:
            return payloads, rest[begin:]
        payloads.append(rest[begin + len(start) : finish].strip())
        rest = rest[finish + len(end) :]
    tail = len(start) - 1
    return payloads, rest[-tail:] if len(rest) > tail else rest


# --- container invocation ---


def _build_volume_mounts(group: RegisteredGroup, is_main: bool) -> list[VolumeMount]:
    """Mounts for one run, creating host directories that must exist."""
    s = get_settings()
    workspace = s.groups_dir / group.folder
    engine_state = s.data_dir / "sessions" / group.folder / ".claude"
    ipc_root = s.data_dir / "ipc" / group.folder
    for directory in (
        workspace,
        engine_state,
        *(ipc_root / sub for sub in ("messages", "tasks", "input")),
    ):
        directory.mkdir(parents=True, exist_ok=True)

    mounts = [VolumeMount(str(workspace), "/workspace/group")]
    shared = s.groups_dir / "global"
    if not is_main and shared.exists():
        mounts.append(VolumeMount(str(shared), "/workspace/global", readonly=True))
    mounts.append(VolumeMount(str(engine_state), "/home/agent/.claude"))
    mounts.append(VolumeMount(str(ipc_root), "/workspace/ipc"))

    # Host checkout of the runner overrides the copy baked into the image
    runner_src = s.project_root / "container" / "agent_runner" / "src"
    if runner_src.exists():
        mounts.append(VolumeMount(str(runner_src), "/app/src", readonly=True))
    return mounts


def _mount_flag(mount: VolumeMount) -> list[str]:
    if mount.readonly:
        spec = f"type=bind,source={mount.host_path},target={mount.container_path},readonly"
        return ["--mount", spec]
    return ["-v", f"{mount.host_path}:{mount.container_path}"]


def _build_container_args(mounts: list[VolumeMount], container_name: str) -> list[str]:
    """Arguments after the runtime CLI name, e.g. ``docker <args>``."""
    args = ["run", "-i", "--rm", "--name", container_name]
    for mount in mounts:
        args += _mount_flag(mount)
    return [*args, get_settings().container.image]


async def _spawn(container_args: list[str]) -> asyncio.subprocess.Process:
    pipe = asyncio.subprocess.PIPE
    try:
        return await asyncio.create_subprocess_exec(
            get_runtime().cli, *container_args, stdin=pipe, stdout=pipe, stderr=pipe
        )
    except OSError as exc:
        raise SpawnError(f"Spawn failed: {exc}") from exc


def _container_name(folder: str) -> str:
    slug = "".join(ch if ch.isalnum() or ch == "-" else "-" for ch in folder)
    return f"{CONTAINER_PREFIX}{slug}-{time.time_ns() // 1_000_000}"


async def graceful_stop(proc: asyncio.subprocess.Process, container_name: str) -> None:
    """Ask the runtime to stop *container_name*; kill the CLI process if that fails or hangs."""
    try:
        stopper = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            "stop",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await asyncio.wait_for(stopper.wait(), timeout=_STOP_GRACE_SECONDS)
        return
    except TimeoutError:
        logger.warning("Container did not stop in time, killing", container=container_name)
    except Exception as exc:
        logger.exception("Container stop failed, killing", container=container_name, err=str(exc))
    proc.kill()


# --- run state ---


@dataclass
class _Capture:
    """Bounded copy of one output stream, kept for the run log."""

    name: str
    limit: int
    text: str = ""
    truncated: bool = False

    def add(self, chunk: str, group_name: str) -> None:
        if self.truncated:
            return
        room = self.limit - len(self.text)
        self.text += chunk[:room]
        if len(chunk) > room:
            self.truncated = True
            logger.warning(
                "Container output capped", stream=self.name, group=group_name, size=len(self.text)
            )


@dataclass
class _SandboxRun:
    group: RegisteredGroup
    input_data: ContainerInput
    settings: Settings
    on_output: OnOutput | None
    on_session: OnSession | None
    container_name: str
    mounts: list[VolumeMount]
    args: list[str]
    started: float = field(default_factory=time.monotonic)
    stdout: _Capture = field(init=False)
    stderr: _Capture = field(init=False)
    session_id: str | None = field(init=False)
    blocks: int = 0
    last: ContainerOutput | None = None
    timed_out: bool = False
    _timer: asyncio.TimerHandle | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        limit = self.settings.container.max_output_size
        self.stdout = _Capture("stdout", limit)
        self.stderr = _Capture("stderr", limit)
        self.session_id = self.input_data.session_id

    @property
    def hard_timeout(self) -> float:
        s = self.settings
        return max(s.container_timeout, s.idle_timeout + _HARD_TIMEOUT_MARGIN)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000

    def arm_timer(self, proc: asyncio.subprocess.Process) -> None:
        """(Re)start the hard timeout. Every parsed block pushes it back."""
        self.disarm_timer()
        self._timer = asyncio.get_running_loop().call_later(
            self.hard_timeout, self._expire, proc
        )

    def disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _expire(self, proc: asyncio.subprocess.Process) -> None:
        self.timed_out = True
        logger.error(
            "Container hit hard timeout, stopping",
            group=self.group.name,
            container=self.container_name,
        )
        asyncio.ensure_future(graceful_stop(proc, self.container_name))

    async def feed_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        pending = ""
        while chunk := await proc.stdout.read(_READ_CHUNK):
            text = chunk.decode(errors="replace")
            self.stdout.add(text, self.group.name)
            payloads, pending = extract_output_blocks(pending + text)
            for payload in payloads:
                await self._deliver(payload, proc)

    async def feed_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while chunk := await proc.stderr.read(_READ_CHUNK):
            text = chunk.decode(errors="replace")
            for line in filter(None, text.strip().splitlines()):
                logger.debug(line, container=self.group.folder)
            self.stderr.add(text, self.group.name)

    async def _deliver(self, payload: str, proc: asyncio.subprocess.Process) -> None:
        try:
            output = _parse_container_output(payload)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Unparseable output block", group=self.group.name, err=str(exc))
            return

        self.blocks += 1
        self.arm_timer(proc)
        fresh = output.new_session_id
        if fresh and fresh != self.session_id:
            self.session_id = fresh
            # Persist the session before anything downstream sees the result
            if self.on_session is not None:
                await self.on_session(fresh)
        if not fresh:
            output.new_session_id = self.session_id
        self.last = output

        if output.status == "error":
            logger.error("Sandbox reported error", group=self.group.name, err=output.error)
        if self.on_output is None:
            return
        try:
            await self.on_output(output)
        except Exception:
            logger.exception("Output handler failed", group=self.group.name)

    def outcome(self, exit_code: int | None) -> ContainerOutput:
        """Map how the process ended onto the value ``run_container_agent`` returns."""
        log = logger.bind(group=self.group.name, container=self.container_name)
        duration_ms = round(self.elapsed_ms)

        if self.timed_out and self.blocks:
            log.info("Timed out after producing output", duration_ms=duration_ms)
            return ContainerOutput(status="success", new_session_id=self.session_id)
        if self.timed_out:
            log.error("Timed out without output", duration_ms=duration_ms)
            return ContainerOutput(
                status="error", error=f"Container timed out after {self.hard_timeout:.0f}s"
            )

        last = self.last
        if exit_code != 0 and not (last is not None and last.status == "success"):
            if last is not None:
                return last
            log.error("Container failed", code=exit_code, duration_ms=duration_ms)
            return ContainerOutput(
                status="error",
                new_session_id=self.session_id,
                error=f"Container exited with code {exit_code}: {self.stderr.text[-200:]}",
            )

        log.info(
            "Container finished",
            duration_ms=duration_ms,
            blocks=self.blocks,
            session_id=self.session_id,
        )
        return last or ContainerOutput(status="success", new_session_id=self.session_id)

    def write_log(self, exit_code: int | None) -> Path:
        """Write ``logs/container-<ts>.log`` under the group folder, secrets redacted."""
        logs_dir = self.settings.groups_dir / self.group.folder / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(UTC)
        path = logs_dir / f"container-{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}.log"

        title = f"=== Container Run Log{' (TIMEOUT)' if self.timed_out else ''} ==="
        header = {
            "Timestamp": now.isoformat(),
            "Group": self.group.name,
            "Container": self.container_name,
            "IsMain": self.input_data.is_main,
            "Duration": f"{self.elapsed_ms:.0f}ms",
            "Exit Code": exit_code,
            "Output Blocks": self.blocks,
            "Stdout Truncated": self.stdout.truncated,
            "Stderr Truncated": self.stderr.truncated,
        }
        sections = [title, *(f"{k}: {v}" for k, v in header.items()), ""]

        verbose = os.environ.get("LOG_LEVEL", "").lower() in ("debug", "trace")
        if verbose or exit_code != 0 or self.timed_out:
            sections += [
                "=== Input ===",
                json.dumps(_input_to_dict(self.input_data, include_secrets=False), indent=2),
                f"Secrets: {sorted(self.input_data.secrets)}",
                "",
                "=== Container Args ===",
                " ".join(self.args),
                "",
                "=== Mounts ===",
                *(f"{m.host_path} -> {m.container_path}{_ro(m)}" for m in self.mounts),
                "",
            ]
            for capture in (self.stderr, self.stdout):
                cut = " (TRUNCATED)" if capture.truncated else ""
                sections += [f"=== {capture.name.capitalize()}{cut} ===", capture.text, ""]
        else:
            sections += [
                "=== Input Summary ===",
                f"Prompt length: {len(self.input_data.prompt)} chars",
                f"Session ID: {self.input_data.session_id or 'new'}",
                "",
                "=== Mounts ===",
                *(f"{m.container_path}{_ro(m)}" for m in self.mounts),
                "",
            ]

        text = "\n".join(sections)
        for secret in filter(None, self.input_data.secrets.values()):
            text = text.replace(secret, "[REDACTED]")
        path.write_text(text)
        return path


def _ro(mount: VolumeMount) -> str:
    return " (ro)" if mount.readonly else ""


# --- entry point ---


async def run_container_agent(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_process: OnProcess,
    on_output: OnOutput | None = None,
    on_session: OnSession | None = None,
) -> ContainerOutput:
    """Run one sandbox for *group* to completion.

    ``on_process(proc, container_name)`` is called once the process exists.
    Every output block is awaited through ``on_output`` in order; a new
    session id reaches ``on_session`` before the block carrying it reaches
    ``on_output``.

    Returns the last block the sandbox produced (with the newest session id
    filled in), or an error output when the sandbox could not run or failed.
    Only one sandbox per group folder runs at a time; a second call while
    one is live returns an error without spawning.
    """
    if is_sandbox_live(group.folder):
        exc = SandboxBusyError(f"sandbox already running for {group.folder}")
        logger.error("Refusing to spawn sandbox", group=group.name, err=str(exc))
        return ContainerOutput(status="error", error=str(exc))

    _live_folders.add(group.folder)
    try:
        return await _drive(group, input_data, on_process, on_output, on_session)
    finally:
        _live_folders.discard(group.folder)


async def _drive(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_process: OnProcess,
    on_output: OnOutput | None,
    on_session: OnSession | None,
) -> ContainerOutput:
    mounts = _build_volume_mounts(group, input_data.is_main)
    name = _container_name(group.folder)
    run = _SandboxRun(
        group=group,
        input_data=input_data,
        settings=get_settings(),
        on_output=on_output,
        on_session=on_session,
        container_name=name,
        mounts=mounts,
        args=_build_container_args(mounts, name),
    )
    logger.info(
        "Spawning container agent",
        group=group.name,
        container=name,
        mounts=len(mounts),
        is_main=input_data.is_main,
        resume=input_data.session_id is not None,
    )

    try:
        proc = await _spawn(run.args)
    except SpawnError as exc:
        logger.error("Container spawn failed", container=name, err=str(exc))
        return ContainerOutput(status="error", error=str(exc))
    on_process(proc, name)

    # The sandbox reads stdin to EOF before starting
    assert proc.stdin is not None
    proc.stdin.write(json.dumps(_input_to_dict(input_data)).encode())
    try:
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.warning("Container closed stdin early", container=name)
    proc.stdin.close()

    run.arm_timer(proc)
    try:
        await asyncio.gather(run.feed_stdout(proc), run.feed_stderr(proc))
        exit_code = await proc.wait()
    except BaseException:
        # The folder is released on return, so the sandbox must be gone first
        logger.exception("Container run aborted, stopping sandbox", container=name)
        await graceful_stop(proc, name)
        await proc.wait()
        raise
    finally:
        run.disarm_timer()

    run.write_log(exit_code)
    return run.outcome(exit_code)


# --- snapshots read by the sandbox's MCP tools ---


def _ipc_dir(folder: str) -> Path:
    path = get_settings().data_dir / "ipc" / folder
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_tasks_snapshot(folder: str, is_main: bool, tasks: list[dict[str, Any]]) -> None:
    """``current_tasks.json``: every task for main, otherwise the group's own."""
    visible = tasks if is_main else [t for t in tasks if t.get("groupFolder") == folder]
    (_ipc_dir(folder) / "current_tasks.json").write_text(json.dumps(visible, indent=2))


def write_groups_snapshot(folder: str, is_main: bool, groups: list[dict[str, Any]]) -> None:
    """``available_groups.json``. Non-main groups get an empty list."""
    payload = {"groups": groups if is_main else [], "lastSync": datetime.now(UTC).isoformat()}
    (_ipc_dir(folder) / "available_groups.json").write_text(json.dumps(payload, indent=2))
