"""Container I/O models: dataclasses for the stdin/stdout protocol.

ContainerInput: parsed from JSON on stdin at container start.
ContainerOutput: serialized to JSON on stdout, wrapped in output markers.

These are the sandbox-side equivalents of the host-side types in
``pincer.types``. They share the wire format but are defined independently
so the image has no dependency on the host package.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any


class InputParseError(ValueError):
    """Stdin did not hold a usable ContainerInput document."""


@dataclass
class ContainerInput:
    """Parsed input received from the host via stdin JSON."""

    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    is_scheduled_task: bool = False
    agent_core: str = "claude"
    secrets: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Any) -> ContainerInput:
        """Create from a JSON-parsed dict, ignoring unknown keys."""
        if not isinstance(data, dict):
            raise InputParseError("input must be a JSON object")
        known = {f.name for f in dataclasses.fields(cls)}
        try:
            parsed = cls(**{k: v for k, v in data.items() if k in known})
        except TypeError as exc:
            raise InputParseError(str(exc)) from exc
        if not isinstance(parsed.prompt, str) or not parsed.group_folder:
            raise InputParseError("prompt and group_folder are required")
        secrets = parsed.secrets or {}
        if not isinstance(secrets, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in secrets.items()
        ):
            raise InputParseError("secrets must map names to strings")
        parsed.secrets = {k: v for k, v in secrets.items() if v}
        return parsed


@dataclass
class ContainerOutput:
    """One result block sent to the host via stdout JSON."""

    status: str
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": self.status, "result": self.result}
        if self.new_session_id:
            d["new_session_id"] = self.new_session_id
        if self.error:
            d["error"] = self.error
        return d
