"""Which container CLI runs sandboxes: Apple Container (``container``) or Docker.

Both take the same ``run -i --rm --name ... -v ... image`` arguments, so the
host only needs the binary name. Startup also uses this module to check the
runtime is up and to stop sandboxes a crashed host left behind.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Literal

from pincer.config import get_settings
from pincer.logger import logger

CONTAINER_PREFIX = "pincer-"
_CLI_TIMEOUT = 30


def _ok(cmd: list[str]) -> bool:
    try:
        subprocess.run(cmd, capture_output=True, check=True)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False
    return True


def _apple_running_ids(listing: str) -> list[str]:
    """Container ids from ``container ls --format json`` whose status is running."""
    ids = []
    for entry in json.loads(listing or "[]"):
        if entry.get("status") == "running":
            ids.append(entry.get("configuration", {}).get("id", ""))
    return ids


@dataclass(frozen=True)
class ContainerRuntime:
    name: Literal["apple", "docker"]
    cli: str

    @property
    def is_apple(self) -> bool:
        return self.name == "apple"

    def ensure_running(self) -> None:
        """Raise RuntimeError unless the runtime responds. Apple's service is started on demand."""
        if not self.is_apple:
            if not _ok(["docker", "info"]):
                raise RuntimeError(
                    "Docker is required but not running. Start with: sudo systemctl start docker"
                )
            return

        if _ok(["container", "system", "status"]):
            return
        logger.info("Apple Container system is down, starting it")
        try:
            subprocess.run(
                ["container", "system", "start"],
                capture_output=True,
                check=True,
                timeout=_CLI_TIMEOUT,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            raise RuntimeError("Apple Container system is required but failed to start") from exc
        logger.info("Apple Container system started")

    def list_running_containers(self, prefix: str = CONTAINER_PREFIX) -> list[str]:
        if self.is_apple:
            cmd = ["container", "ls", "--format", "json"]
        else:
            cmd = ["docker", "ps", "--format", "{{.Names}}"]
        try:
            stdout = subprocess.run(cmd, capture_output=True, text=True).stdout
            names = _apple_running_ids(stdout) if self.is_apple else stdout.split()
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Could not list containers", runtime=self.name, err=str(exc))
            return []
        return [name for name in names if name.startswith(prefix)]

    def stop_orphans(self) -> list[str]:
        """Stop every ``pincer-`` container still running, returning their names."""
        orphans = self.list_running_containers()
        for name in orphans:
            try:
                subprocess.run([self.cli, "stop", name], capture_output=True, timeout=_CLI_TIMEOUT)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("Orphan stop failed", container=name, err=str(exc))
        if orphans:
            logger.info("Stopped orphaned containers", count=len(orphans), names=orphans)
        return orphans


APPLE = ContainerRuntime(name="apple", cli="container")
DOCKER = ContainerRuntime(name="docker", cli="docker")


def detect_runtime() -> ContainerRuntime:
    """``container.runtime`` setting, then ``CONTAINER_RUNTIME``, then the platform.

    On macOS Apple Container wins when installed. Otherwise Docker is used
    when on PATH, falling back to the platform default.
    """
    choice = get_settings().container.runtime or os.environ.get("CONTAINER_RUNTIME", "")
    forced = {"apple": APPLE, "docker": DOCKER}.get(choice.lower())
    if forced is not None:
        return forced

    on_mac = sys.platform == "darwin"
    if on_mac and shutil.which("container"):
        return APPLE
    if shutil.which("docker"):
        return DOCKER
    return APPLE if on_mac else DOCKER


_runtime: ContainerRuntime | None = None


def get_runtime() -> ContainerRuntime:
    global _runtime
    if _runtime is None:
        _runtime = detect_runtime()
        logger.info("Container runtime selected", name=_runtime.name, cli=_runtime.cli)
    return _runtime
