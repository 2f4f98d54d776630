"""Tests for the SQLite layer. Each test runs against a fresh in-memory database."""

from __future__ import annotations

import pytest

from pincer.types import RegisteredGroup, TaskRunLog


@pytest.fixture(autouse=True)
async def _db(db):
    return db


def _task(task_id: str, **overrides):
    base = {
        "id": task_id,
        "group_folder": "main",
        "chat_jid": "group@g.us",
        "prompt": "do a thing",
        "schedule_type": "interval",
        "schedule_value": "60000",
        "next_run": "2024-01-01T00:00:00+00:00",
        "status": "active",
        "created_at": "2024-01-01T00:00:00+00:00",
    }
    base.update(overrides)
    return base


class TestMessages:
    async def test_store_and_read_back(self, db, make_msg):
        await db.store_chat_metadata("group@g.us", "2024-01-01T00:00:00.000Z")
        await db.store_message(make_msg(id="m1", content="@pincer hi"))

        msgs = await db.get_messages_since("group@g.us", "")
        assert [m.content for m in msgs] == ["@pincer hi"]
        assert msgs[0].is_from_me is False

    async def test_duplicate_id_is_ignored(self, db, make_msg):
        await db.store_message(make_msg(id="m1", content="first"))
        await db.store_message(make_msg(id="m1", content="second"))

        msgs = await db.get_messages_since("group@g.us", "")
        assert [m.content for m in msgs] == ["first"]

    async def test_since_is_exclusive(self, db, make_msg):
        await db.store_message(make_msg(id="m1", timestamp="2024-01-01T00:00:01.000Z"))
        await db.store_message(make_msg(id="m2", timestamp="2024-01-01T00:00:02.000Z"))

        msgs = await db.get_messages_since("group@g.us", "2024-01-01T00:00:01.000Z")
        assert [m.id for m in msgs] == ["m2"]

    async def test_equal_timestamps_keep_insertion_order(self, db, make_msg):
        ts = "2024-01-01T00:00:01.000Z"
        for i in ("b", "a", "c"):
            await db.store_message(make_msg(id=i, timestamp=ts))

        msgs = await db.get_messages_since("group@g.us", "")
        assert [m.id for m in msgs] == ["b", "a", "c"]

    async def test_bot_prefix_filtered(self, db, make_msg):
        await db.store_message(make_msg(id="m1", content="pincer: my reply"))
        await db.store_message(make_msg(id="m2", content="@pincer question"))

        msgs = await db.get_messages_since("group@g.us", "", bot_prefix="pincer:")
        assert [m.id for m in msgs] == ["m2"]

    async def test_bot_prefix_wildcards_escaped(self, db, make_msg):
        await db.store_message(make_msg(id="m1", content="a_bXc: hi"))

        msgs = await db.get_messages_since("group@g.us", "", bot_prefix="a_b%:")
        assert [m.id for m in msgs] == ["m1"]

    async def test_bot_prefix_is_case_sensitive(self, db, make_msg):
        await db.store_message(make_msg(id="m1", content="pincer: my reply"))
        await db.store_message(make_msg(id="m2", content="Pincer: hi"))
        await db.store_message(make_msg(id="m3", content="PINCER: stop"))

        msgs = await db.get_messages_since("group@g.us", "", bot_prefix="pincer:")
        assert [m.id for m in msgs] == ["m2", "m3"]

        msgs, _ = await db.get_new_messages(["group@g.us"], "", bot_prefix="pincer:")
        assert [m.id for m in msgs] == ["m2", "m3"]

    async def test_no_bot_prefix_keeps_everything(self, db, make_msg):
        await db.store_message(make_msg(id="m1", content="pincer: my reply"))

        msgs = await db.get_messages_since("group@g.us", "")
        assert [m.id for m in msgs] == ["m1"]

    async def test_new_messages_across_chats(self, db, make_msg):
        for msg_id, jid, second in (("1", "a@g.us", 1), ("2", "b@g.us", 3), ("3", "c@g.us", 2)):
            await db.store_message(
                make_msg(id=msg_id, chat_jid=jid, timestamp=f"2024-01-01T00:00:0{second}Z")
            )

        msgs, newest = await db.get_new_messages(["a@g.us", "b@g.us"], "")
        assert [m.id for m in msgs] == ["1", "2"]
        assert newest == "2024-01-01T00:00:03Z"

    async def test_new_messages_no_jids(self, db):
        msgs, newest = await db.get_new_messages([], "cursor")
        assert msgs == []
        assert newest == "cursor"


class TestChats:
    async def test_last_message_time_only_moves_forward(self, db):
        await db.store_chat_metadata("a@g.us", "2024-01-02T00:00:00Z")
        await db.store_chat_metadata("a@g.us", "2024-01-01T00:00:00Z")

        chats = await db.get_all_chats()
        assert chats == [
            {"jid": "a@g.us", "name": "a@g.us", "last_message_time": "2024-01-02T00:00:00Z"}
        ]

    async def test_update_chat_name_keeps_timestamp(self, db):
        await db.store_chat_metadata("a@g.us", "2024-01-02T00:00:00Z")
        await db.update_chat_name("a@g.us", "Family")

        chats = await db.get_all_chats()
        assert chats[0]["name"] == "Family"
        assert chats[0]["last_message_time"] == "2024-01-02T00:00:00Z"

    async def test_group_sync_marker(self, db):
        assert await db.get_last_group_sync() is None
        await db.set_last_group_sync()
        assert await db.get_last_group_sync() is not None


class TestTasks:
    async def test_due_tasks_only_active_and_past(self, db):
        await db.create_task(_task("due", next_run="2024-01-01T00:00:00+00:00"))
        await db.create_task(_task("future", next_run="2099-01-01T00:00:00+00:00"))
        await db.create_task(_task("paused", status="paused"))
        await db.create_task(_task("no-next", next_run=None))

        due = await db.get_due_tasks("2024-06-01T00:00:00+00:00")
        assert [t.id for t in due] == ["due"]

    async def test_update_ignores_unknown_fields(self, db):
        await db.create_task(_task("t1"))
        await db.update_task("t1", {"status": "paused", "group_folder": "other"})

        task = await db.get_task_by_id("t1")
        assert task is not None
        assert task.status == "paused"
        assert task.group_folder == "main"

    async def test_delete_removes_run_logs(self, db):
        await db.create_task(_task("t1"))
        await db.log_task_run(
            TaskRunLog(task_id="t1", run_at="2024-01-01T00:00:00Z", duration_ms=5, status="success")
        )
        await db.delete_task("t1")

        assert await db.get_task_by_id("t1") is None
        assert await db.get_task_run_logs("t1") == []

    async def test_update_after_run_keeps_next_run(self, db):
        await db.create_task(_task("t1", next_run="2024-02-01T00:00:00+00:00"))
        await db.update_task_after_run("t1", "Completed")

        task = await db.get_task_by_id("t1")
        assert task is not None
        assert task.last_result == "Completed"
        assert task.last_run is not None
        assert task.next_run == "2024-02-01T00:00:00+00:00"

    async def test_tasks_for_group(self, db):
        await db.create_task(_task("t1", group_folder="a"))
        await db.create_task(_task("t2", group_folder="b"))

        assert [t.id for t in await db.get_tasks_for_group("a")] == ["t1"]


class TestStateAndSessions:
    async def test_router_state_round_trip(self, db):
        assert await db.get_router_state("last_timestamp") is None
        await db.set_router_state("last_timestamp", "x")
        await db.set_router_state("last_timestamp", "y")
        assert await db.get_router_state("last_timestamp") == "y"

    async def test_sessions(self, db):
        await db.set_session("main", "s1")
        await db.set_session("main", "s2")
        assert await db.get_all_sessions() == {"main": "s2"}

    async def test_registered_groups(self, db):
        group = RegisteredGroup(
            jid="a@g.us",
            name="A",
            folder="main",
            trigger="@pincer",
            added_at="2024-01-01T00:00:00Z",
            is_main=True,
        )
        await db.set_registered_group(group)
        assert await db.get_all_registered_groups() == {"a@g.us": group}


class TestUninitialized:
    async def test_raises_before_init(self):
        from pincer import db as db_module

        await db_module.close_database()
        with pytest.raises(RuntimeError, match="not initialized"):
            await db_module.get_router_state("x")
