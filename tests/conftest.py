"""Fixtures and builders shared by the host test-suite."""

from __future__ import annotations

from functools import cached_property

import pytest

from pincer.config import Settings
from pincer.types import NewMessage, RegisteredGroup

# Derived Settings attributes (paths, timeouts, timezone) are cached
# properties; tests pin them by writing straight into the instance dict.
_DERIVED = frozenset(
    name for name, attr in vars(Settings).items() if isinstance(attr, cached_property)
)


def make_settings(**overrides) -> Settings:
    """Build Settings from code defaults only, never reading config.toml or .env.

    Section overrides go through ``model_construct``; derived attributes such
    as ``data_dir`` or ``idle_timeout`` are pinned directly::

        make_settings(data_dir=tmp_path, container=ContainerConfig(max_concurrent=2))
    """
    pinned = {"timezone": "UTC"}
    pinned.update({k: overrides.pop(k) for k in list(overrides) if k in _DERIVED})
    settings = Settings.model_construct(**overrides)
    settings.__dict__.update(pinned)
    return settings


def make_group(
    *,
    jid: str = "group@g.us",
    name: str = "Test Group",
    folder: str = "test-group",
    trigger: str = "@pincer",
    is_main: bool = False,
) -> RegisteredGroup:
    return RegisteredGroup(jid, name, folder, trigger, "2024-01-01T00:00:00.000Z", is_main)


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    monkeypatch.setattr("pincer.config._settings", make_settings())


@pytest.fixture(autouse=True)
def _clear_module_state():
    from pincer import container_runner, message_handler

    def clear():
        container_runner._live_folders.clear()
        message_handler._delivered.clear()

    clear()
    yield
    clear()


@pytest.fixture
async def db():
    """In-memory database, closed after the test."""
    from pincer import db as db_module

    await db_module._init_test_database()
    yield db_module
    await db_module.close_database()


@pytest.fixture
def make_msg():
    """Returns a ``NewMessage`` builder; every field has a default."""

    def build(**fields) -> NewMessage:
        values = {
            "id": "1",
            "chat_jid": "group@g.us",
            "sender": "123@s.whatsapp.net",
            "sender_name": "Alice",
            "content": "hello",
            "timestamp": "2024-01-01T00:00:00.000Z",
            "is_from_me": None,
        }
        values.update(fields)
        return NewMessage(**values)

    return build
