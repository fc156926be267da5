"""Tests for the MCP tool functions."""

from types import SimpleNamespace

import pytest

from taskboard.config import Config
from taskboard.core import projects as projects_mod
from taskboard.core.cache import MemoryCacheStore, TaskCache
from taskboard.core.events import EventBus
from taskboard.mcp import server


@pytest.fixture
def ctx(db, users):
    app = server.AppContext(
        db=db, config=Config(default_user="alice"), cache=TaskCache(MemoryCacheStore()), bus=EventBus()
    )
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))


def _new(ctx, title="Write docs", **fields):
    task = server.create_task(ctx, title, **fields)
    assert "error" not in task, task
    return task


class TestTaskTools:
    def test_create_and_get(self, ctx, users):
        task = _new(ctx, labels=["docs"])
        assert task["created_by_id"] == users.alice.id
        assert task["status"] == "backlog"

        detail = server.get_task(ctx, task["id"])
        assert detail["labels"] == ["docs"]
        assert [a["type"] for a in detail["activities"]] == ["created"]

    def test_errors_are_returned(self, ctx):
        assert "error" in server.create_task(ctx, "")
        assert "not found" in server.get_task(ctx, "missing")["error"]
        assert "error" in server.update_task_status(ctx, _new(ctx)["id"], "finished")

    def test_unknown_user(self, ctx):
        ctx.request_context.lifespan_context.config.default_user = "mallory"
        assert "TB_USER" in server.list_tasks(ctx)["error"]

    def test_list_with_filters(self, ctx):
        _new(ctx, "Urgent", priority="urgent")
        _new(ctx, "Calm", priority="low")
        result = server.list_tasks(ctx, priority="urgent")
        assert [t["title"] for t in result["data"]] == ["Urgent"]
        assert result["total"] == 1

    def test_update_and_lifecycle(self, ctx, users):
        tid = _new(ctx)["id"]
        assert server.update_task(ctx, tid, {"title": "Write more docs"})["title"] == "Write more docs"
        assert server.update_task_priority(ctx, tid, "high")["priority"] == "high"
        assert server.update_task_status(ctx, tid, "done")["completed_at"] is not None
        assert server.log_time(ctx, tid, 1.5)["actual_hours"] == 1.5
        assert "error" in server.log_time(ctx, tid, float("nan"))

        assert server.assign_task(ctx, tid, "bob")["assignee_id"] == users.bob.id
        assert "error" in server.assign_task(ctx, tid, "nobody")
        assert server.unassign_task(ctx, tid)["assignee_id"] is None

        assert server.block_task(ctx, tid, "waiting")["is_blocked"]
        assert not server.unblock_task(ctx, tid)["is_blocked"]
        assert server.archive_task(ctx, tid)["is_archived"]
        assert not server.unarchive_task(ctx, tid)["is_archived"]

        types = {a["type"] for a in server.task_activities(ctx, tid)}
        assert {"updated", "assigned", "unassigned", "archived", "time_logged"} <= types

    def test_update_rejects_bad_parent(self, ctx):
        tid = _new(ctx)["id"]
        assert "error" in server.update_task(ctx, tid, {"parent_task_id": tid})

    def test_bulk_update(self, ctx):
        ids = [_new(ctx, f"T{i}")["id"] for i in range(2)]
        tasks = server.bulk_update_tasks(ctx, ids, {"priority": "high"})
        assert {t["priority"] for t in tasks} == {"high"}
        assert "error" in server.bulk_update_tasks(ctx, ids + ["missing"], {"priority": "low"})[0]
        assert server.get_task(ctx, ids[0])["priority"] == "high"

    def test_delete(self, ctx):
        tid = _new(ctx)["id"]
        assert server.delete_task(ctx, tid) == {"deleted": tid}
        assert "error" in server.get_task(ctx, tid)

    def test_stats_and_overdue(self, ctx, users):
        _new(ctx, "Done", status="done")
        _new(ctx, "Late", due_date="2020-01-01T00:00:00Z")
        late = server.list_tasks(ctx, search="Late")["data"][0]
        server.assign_task(ctx, late["id"], users.alice.id)
        stats = server.task_stats(ctx)
        assert stats["total"] == 2
        assert stats["completed"] == 1
        assert [t["title"] for t in server.overdue_tasks(ctx)] == ["Late"]


class TestCommentAndProjectTools:
    def test_comments(self, ctx):
        tid = _new(ctx)["id"]
        comment = server.add_comment(ctx, tid, "On it")
        assert comment["content"] == "On it"
        assert [c["content"] for c in server.list_comments(ctx, tid)] == ["On it"]
        assert "error" in server.list_comments(ctx, "missing")[0]

    def test_project_tasks(self, ctx, db, users):
        project = projects_mod.create_project(db, "Web", users.alice)
        _new(ctx, "A", project_id=project.id)
        _new(ctx, "B", project_id=project.id)
        assert [t["title"] for t in server.project_tasks(ctx, project.id)] == ["A", "B"]

        other = projects_mod.create_project(db, "Private", users.bob)
        assert "error" in server.project_tasks(ctx, other.id)[0]
