"""Dependencies the IPC watcher needs from the app."""

from __future__ import annotations

from typing import Protocol

from pincer.types import RegisteredGroup


class IpcDeps(Protocol):
    def registered_groups(self) -> dict[str, RegisteredGroup]: ...

    async def send_to_chat(self, jid: str, text: str) -> None: ...

    async def register_group(self, group: RegisteredGroup) -> None: ...
