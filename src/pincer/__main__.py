"""Entry point for `python -m pincer` / `pincer`.

Subcommands:
    pincer                          Run the service (default)
    pincer build                    Build the sandbox image
    pincer register JID NAME FOLDER Register a chat group
    pincer groups                   List registered groups
"""

from __future__ import annotations

import argparse
import asyncio
import os
import subprocess
import sys
from datetime import UTC, datetime


def _run() -> None:
    from pincer.app import PincerApp

    app = PincerApp()
    asyncio.run(app.run())


def _build() -> None:
    from pincer.config import get_settings
    from pincer.runtime import get_runtime

    s = get_settings()
    runtime = get_runtime()
    container_dir = s.project_root / "container"

    if not (container_dir / "Dockerfile").exists():
        print(f"Error: No Dockerfile at {container_dir / 'Dockerfile'}", file=sys.stderr)
        sys.exit(1)

    print(f"Building {s.container.image} with {runtime.cli}...")
    env = {**os.environ, "DOCKER_BUILDKIT": "1"}
    result = subprocess.run(
        [runtime.cli, "build", "-t", s.container.image, "."],
        cwd=str(container_dir),
        env=env,
    )
    sys.exit(result.returncode)


async def _register(jid: str, name: str, folder: str) -> None:
    from pincer.config import get_settings
    from pincer.db import close_database, init_database, set_registered_group
    from pincer.ipc import is_valid_folder
    from pincer.types import RegisteredGroup

    if not is_valid_folder(folder):
        print(f"Error: invalid folder name {folder!r}", file=sys.stderr)
        sys.exit(2)

    s = get_settings()
    await init_database()
    try:
        group = RegisteredGroup(
            jid=jid,
            name=name,
            folder=folder,
            trigger=f"@{s.agent.name}",
            added_at=datetime.now(UTC).isoformat(),
            is_main=folder == s.groups.main_folder,
        )
        await set_registered_group(group)
    finally:
        await close_database()
    (s.groups_dir / folder / "logs").mkdir(parents=True, exist_ok=True)
    print(f"Registered {name} ({jid}) -> groups/{folder}{' [main]' if group.is_main else ''}")


async def _list_groups() -> None:
    from pincer.db import close_database, get_all_registered_groups, init_database

    await init_database()
    try:
        groups = await get_all_registered_groups()
    finally:
        await close_database()
    if not groups:
        print("No groups registered.")
        return
    for g in groups.values():
        marker = "\t[main]" if g.is_main else ""
        print(f"{g.jid}\t{g.name}\t{g.folder}{marker}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pincer",
        description="Chat-driven agent sandboxes",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the service (default)")
    sub.add_parser("build", help="Build the sandbox image")
    reg = sub.add_parser("register", help="Register a chat group")
    reg.add_argument("jid", help="Chat id, e.g. 1234567890-123@g.us")
    reg.add_argument("name", help="Display name")
    reg.add_argument("folder", help="Folder under groups/ (main group uses groups.main_folder)")
    sub.add_parser("groups", help="List registered groups")

    args = parser.parse_args()

    match args.command:
        case "build":
            _build()
        case "register":
            asyncio.run(_register(args.jid, args.name, args.folder))
        case "groups":
            asyncio.run(_list_groups())
        case _:
            _run()


if __name__ == "__main__":
    main()
