"""Tests for PincerApp wiring: state, group registry, agent runs and channels."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_group, make_settings
from pydantic import SecretStr

from pincer.app import PincerApp
from pincer.config import SecretsConfig
from pincer.db import GROUP_SYNC_JID
from pincer.types import ContainerOutput


@pytest.fixture
def app() -> PincerApp:
    return PincerApp()


class TestState:
    async def test_save_and_load_round_trip(self, app, db):
        app.last_timestamp = "2024-01-01T00:00:05Z"
        app.last_agent_timestamp = {"a@g.us": "2024-01-01T00:00:03Z"}
        await app.save_state()
        await db.set_session("main", "s1")

        fresh = PincerApp()
        await fresh.load_state()

        assert fresh.last_timestamp == "2024-01-01T00:00:05Z"
        assert fresh.last_agent_timestamp == {"a@g.us": "2024-01-01T00:00:03Z"}
        assert fresh.sessions == {"main": "s1"}

    async def test_corrupt_agent_cursors_reset(self, app, db):
        await db.set_router_state("last_agent_timestamp", "{not json")

        await app.load_state()

        assert app.last_agent_timestamp == {}


class TestGroups:
    async def test_register_group_persists_and_creates_folder(self, app, db, tmp_path):
        group = make_group(jid="fam@g.us", folder="family")
        s = make_settings(groups_dir=tmp_path / "groups")

        with patch("pincer.app.get_settings", return_value=s):
            await app.register_group(group)

        assert app.registered_groups() == {"fam@g.us": group}
        assert await db.get_all_registered_groups() == {"fam@g.us": group}
        assert (tmp_path / "groups" / "family" / "logs").is_dir()

    async def test_available_groups_newest_first(self, app, db):
        await db.store_chat_metadata("old@g.us", "2024-01-01T00:00:00Z")
        await db.store_chat_metadata("new@g.us", "2024-03-01T00:00:00Z")
        await db.store_chat_metadata("mid@g.us", "2024-02-01T00:00:00Z")
        await db.set_last_group_sync()
        app.groups = {"mid@g.us": make_group(jid="mid@g.us")}

        groups = await app.get_available_groups()

        assert [g["jid"] for g in groups] == ["new@g.us", "mid@g.us", "old@g.us"]
        assert GROUP_SYNC_JID not in {g["jid"] for g in groups}
        assert [g["isRegistered"] for g in groups] == [False, True, False]
        assert groups[0]["lastActivity"] == "2024-03-01T00:00:00Z"


class TestRunAgent:
    async def test_builds_input_and_persists_session(self, app, db, tmp_path):
        group = make_group(jid="fam@g.us", folder="family")
        app.groups = {group.jid: group}
        app.sessions = {"family": "old-session"}
        s = make_settings(
            data_dir=tmp_path / "data",
            secrets=SecretsConfig(anthropic_api_key=SecretStr("sk-test")),
        )

        async def fake_run(group, input_data, on_process, on_output=None, on_session=None):
            await on_session("new-session")
            return ContainerOutput(status="success", new_session_id="new-session")

        runner = AsyncMock(side_effect=fake_run)
        with (
            patch("pincer.app.get_settings", return_value=s),
            patch("pincer.container_runner.get_settings", return_value=s),
            patch("pincer.app.run_container_agent", runner),
        ):
            output = await app.run_agent(group, "prompt", group.jid, is_scheduled_task=True)

        assert output.status == "success"
        input_data = runner.await_args.kwargs["input_data"]
        assert input_data.session_id == "old-session"
        assert input_data.is_scheduled_task is True
        assert input_data.secrets == {"ANTHROPIC_API_KEY": "sk-test"}
        assert input_data.agent_core == "claude"

        assert app.sessions["family"] == "new-session"
        assert (await db.get_all_sessions())["family"] == "new-session"

        ipc = tmp_path / "data" / "ipc" / "family"
        assert json.loads((ipc / "current_tasks.json").read_text()) == []
        assert json.loads((ipc / "available_groups.json").read_text())["groups"] == []

    @pytest.mark.parametrize(
        ("is_main", "visible"), [(False, ["t-own"]), (True, ["t-other", "t-own"])]
    )
    async def test_tasks_snapshot_scoped_to_group(self, app, db, tmp_path, is_main, visible):
        for task_id, folder in (("t-own", "family"), ("t-other", "work")):
            await db.create_task(
                {
                    "id": task_id,
                    "group_folder": folder,
                    "chat_jid": f"{folder}@g.us",
                    "prompt": "p",
                    "schedule_type": "interval",
                    "schedule_value": "60000",
                    "next_run": None,
                    "status": "active",
                    "created_at": "2024-01-01T00:00:00Z",
                }
            )
        group = make_group(jid="fam@g.us", folder="family", is_main=is_main)
        s = make_settings(data_dir=tmp_path / "data")
        runner = AsyncMock(return_value=ContainerOutput("success"))

        with (
            patch("pincer.app.get_settings", return_value=s),
            patch("pincer.container_runner.get_settings", return_value=s),
            patch("pincer.app.run_container_agent", runner),
        ):
            await app.run_agent(group, "prompt", group.jid)

        snapshot = tmp_path / "data" / "ipc" / "family" / "current_tasks.json"
        assert sorted(t["id"] for t in json.loads(snapshot.read_text())) == visible

    async def test_on_process_registers_with_queue(self, app, db, tmp_path):
        group = make_group(jid="fam@g.us", folder="family")
        s = make_settings(data_dir=tmp_path / "data")
        app.queue = MagicMock()
        proc = MagicMock()

        async def fake_run(group, input_data, on_process, on_output=None, on_session=None):
            on_process(proc, "pincer-family-1")
            return ContainerOutput(status="success")

        with (
            patch("pincer.app.get_settings", return_value=s),
            patch("pincer.container_runner.get_settings", return_value=s),
            patch("pincer.app.run_container_agent", AsyncMock(side_effect=fake_run)),
        ):
            await app.run_agent(group, "prompt", group.jid)

        app.queue.register_process.assert_called_once_with(
            "fam@g.us", proc, "pincer-family-1", "family"
        )


def _channel(*, connected: bool, logged_out: bool = False) -> MagicMock:
    ch = MagicMock()
    ch.name = "whatsapp"
    ch.is_connected.return_value = connected
    ch.logged_out = logged_out
    ch.reconnect = AsyncMock()
    ch.send_message = AsyncMock()
    ch.set_typing = AsyncMock()
    ch.owns_jid.return_value = True
    return ch


class TestChannels:
    async def test_connected_channel_left_alone(self, app):
        ch = _channel(connected=True)
        app.channels = [ch]

        await app.check_channels()

        ch.reconnect.assert_not_awaited()

    async def test_dropped_channel_reconnected(self, app):
        ch = _channel(connected=False)
        app.channels = [ch]

        await app.check_channels()

        ch.reconnect.assert_awaited_once()

    async def test_logged_out_channel_shuts_down(self, app):
        ch = _channel(connected=False, logged_out=True)
        app.channels = [ch]
        app.shutdown = AsyncMock()

        await app.check_channels()

        app.shutdown.assert_awaited_once_with("logged_out")
        ch.reconnect.assert_not_awaited()

    async def test_send_and_typing_route_to_owner(self, app):
        ch = _channel(connected=True)
        app.channels = [ch]

        await app.send_to_chat("fam@g.us", "pincer: hi")
        await app.set_typing("fam@g.us", True)

        ch.send_message.assert_awaited_once_with("fam@g.us", "pincer: hi")
        ch.set_typing.assert_awaited_once_with("fam@g.us", True)


class TestRecovery:
    async def test_every_group_checked(self, app):
        app.groups = {
            "a@g.us": make_group(jid="a@g.us", folder="a"),
            "b@g.us": make_group(jid="b@g.us", folder="b"),
        }
        app.queue = MagicMock()

        await app.recover_pending_messages()

        checked = [c.args[0] for c in app.queue.enqueue_message_check.call_args_list]
        assert checked == ["a@g.us", "b@g.us"]


class TestShutdown:
    async def test_stops_queue_channels_and_db(self, app, db):
        ch = _channel(connected=True)
        ch.disconnect = AsyncMock()
        app.channels = [ch]
        app.queue = MagicMock()
        app.queue.shutdown = AsyncMock()

        # Keep the hard-exit timer from outliving the test
        with patch.object(asyncio.get_running_loop(), "call_later") as call_later:
            await app.shutdown("SIGTERM")

        app.queue.shutdown.assert_awaited_once()
        ch.disconnect.assert_awaited_once()
        assert app._stopped.is_set()
        assert call_later.call_args.args[0] == 30
