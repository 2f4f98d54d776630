"""Framework-agnostic agent core protocol.

The turn loop in ``main`` only talks to an ``AgentCore``: start it, feed it
prompts, read its events, stop it. Which LLM framework sits behind it is
chosen by name through ``registry.create_agent_core``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

EventType = Literal["text", "thinking", "tool_use", "tool_result", "system", "result"]


@dataclass
class AgentCoreConfig:
    cwd: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    system_prompt_append: str | None = None
    mcp_servers: dict[str, Any] = field(default_factory=dict)
    # Credentials for the engine process only; never exported to os.environ
    env: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class AgentEvent:
    """One event streamed out of a query.

    Only ``text`` events make up the turn's result; the rest are diagnostic.
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AgentCore(Protocol):
    async def start(self) -> None: ...

    def query(self, prompt: str) -> AsyncIterator[AgentEvent]: ...

    async def stop(self) -> None: ...

    @property
    def session_id(self) -> str | None: ...
