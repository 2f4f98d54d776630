"""Looks up agent cores by the name given in ``ContainerInput.agent_core``.

Built-in cores are listed as ``module:Class`` strings and only imported when
first asked for, so an image without a core's SDK still runs the others.
Installed packages can add cores under the ``pincer.agent_cores`` entry-point
group::

    [project.entry-points."pincer.agent_cores"]
    mycore = "my_package.core:MyAgentCore"
"""

from __future__ import annotations

import importlib
import sys
from importlib.metadata import entry_points

from .core import AgentCore, AgentCoreConfig

ENTRY_POINT_GROUP = "pincer.agent_cores"

_LAZY: dict[str, str] = {"claude": "agent_runner.cores.claude:ClaudeAgentCore"}
_loaded: dict[str, type] = {}


def register_core(name: str, cls: type) -> None:
    _loaded[name] = cls


def list_cores() -> list[str]:
    return sorted(_LAZY.keys() | _loaded.keys())


def _core_class(name: str) -> type:
    if name not in _loaded and name in _LAZY:
        module_path, attr = _LAZY[name].split(":")
        register_core(name, getattr(importlib.import_module(module_path), attr))
    try:
        return _loaded[name]
    except KeyError:
        raise KeyError(
            f"Unknown agent core {name!r}. Available cores: {', '.join(list_cores())}"
        ) from None


def create_agent_core(name: str, config: AgentCoreConfig) -> AgentCore:
    """Instantiate core *name*.

    Raises KeyError for an unknown name and TypeError when the class does not
    implement the ``AgentCore`` protocol.
    """
    core = _core_class(name)(config)
    if not isinstance(core, AgentCore):
        raise TypeError(f"Core {name!r} does not satisfy AgentCore protocol")
    return core


def _load_entry_points() -> None:
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            register_core(ep.name, ep.load())
        except Exception as exc:
            print(f"[agent-runner] Skipping core {ep.name!r}: {exc}", file=sys.stderr)


_load_entry_points()
