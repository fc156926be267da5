"""Tests for task values, validation and the event bus."""

from datetime import datetime, timedelta, timezone

import pytest

from taskboard.core.events import WILDCARD, EventBus
from taskboard.db.models import (
    Task,
    TaskPriority,
    TaskStatus,
    from_dict,
    new_task,
    to_dict,
    validate_task_fields,
)
from taskboard.errors import ValidationError

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def task():
    return new_task({"title": "Write docs"}, "u1", NOW)


class TestTransitions:
    def test_new_task_defaults(self, task):
        assert task.status == TaskStatus.BACKLOG
        assert task.priority == TaskPriority.MEDIUM
        assert task.actual_hours == 0
        assert task.version == 1
        assert task.created_at == task.updated_at == NOW

    def test_done_sets_completed_at(self, task):
        done = task.update_status("done", NOW)
        assert done.completed_at == NOW
        assert task.completed_at is None

    def test_done_again_keeps_original_completion(self, task):
        done = task.update_status(TaskStatus.DONE, NOW)
        again = done.update_status(TaskStatus.DONE, NOW + timedelta(hours=1))
        assert again.completed_at == NOW

    @pytest.mark.parametrize("status", [s for s in TaskStatus if s != TaskStatus.DONE])
    def test_leaving_done_clears_completed_at(self, task, status):
        reopened = task.update_status("done", NOW).update_status(status, NOW)
        assert reopened.completed_at is None

    def test_add_time(self, task):
        assert task.add_time_spent(1.5).add_time_spent(2).actual_hours == 3.5

    @pytest.mark.parametrize("hours", [0, -2, None, float("nan"), float("inf")])
    def test_add_time_rejects_invalid_hours(self, task, hours):
        with pytest.raises(ValidationError):
            task.add_time_spent(hours)

    def test_block_cycle(self, task):
        blocked = task.set_blocked("waiting")
        assert blocked.is_blocked and blocked.blocked_reason == "waiting"
        unblocked = blocked.unblock()
        assert not unblocked.is_blocked and unblocked.blocked_reason is None

    def test_is_overdue(self, task):
        late = task.apply_changes({"due_date": "2026-03-01T00:00:00Z"}, NOW)
        assert late.is_overdue(NOW)
        assert not late.update_status("done", NOW).is_overdue(NOW)
        assert not task.is_overdue(NOW)

    def test_apply_changes_routes_status(self, task):
        changed = task.apply_changes({"status": "done", "priority": "urgent"}, NOW)
        assert changed.priority == TaskPriority.URGENT
        assert changed.completed_at == NOW


class TestValidation:
    def test_requires_title(self):
        with pytest.raises(ValidationError):
            validate_task_fields({"description": "no title"})

    def test_partial_allows_missing_title(self):
        assert validate_task_fields({"priority": "low"}, partial=True) == {"priority": TaskPriority.LOW}

    def test_title_length(self):
        assert validate_task_fields({"title": "x" * 200})["title"] == "x" * 200
        with pytest.raises(ValidationError):
            validate_task_fields({"title": "x" * 201})

    def test_unknown_fields(self):
        with pytest.raises(ValidationError, match="version"):
            validate_task_fields({"title": "ok", "version": 7})

    @pytest.mark.parametrize(
        "values",
        [
            {"estimated_hours": -1},
            {"estimated_hours": "many"},
            {"estimated_hours": float("nan")},
            {"estimated_hours": "inf"},
            {"story_points": 2.5},
            {"story_points": True},
            {"story_points": -3},
            {"position": "first"},
            {"metadata": ["not", "a", "dict"]},
            {"due_date": "next tuesday"},
            {"issue_type": "epic"},
            {"title": 123},
            {"labels": "bug"},
            {"labels": {"bug": True}},
        ],
    )
    def test_rejects_bad_values(self, values):
        with pytest.raises(ValidationError):
            validate_task_fields(values, partial=True)

    def test_normalizes_values(self):
        clean = validate_task_fields(
            {"title": " t ", "labels": ["b", " a ", "b", ""], "due_date": "2026-04-01T12:00:00+02:00", "metadata": None}
        )
        assert clean["title"] == "t"
        assert clean["labels"] == ["a", "b"]
        assert clean["due_date"] == datetime(2026, 4, 1, 10, 0, tzinfo=timezone.utc)
        assert clean["metadata"] == {}

    def test_null_labels_become_empty(self):
        assert validate_task_fields({"labels": None}, partial=True)["labels"] == []


class TestSerialization:
    def test_dict_round_trip(self, task):
        task = task.apply_changes({"due_date": "2026-04-01T00:00:00Z", "labels": ["x"]}, NOW)
        data = to_dict(task)
        assert data["status"] == "backlog"
        assert data["due_date"] == "2026-04-01T00:00:00.000000+00:00"
        assert from_dict(Task, data) == task

    def test_from_dict_ignores_unknown_keys(self, task):
        data = {**to_dict(task), "activities": []}
        assert from_dict(Task, data) == task


class TestEventBus:
    def test_emit_reaches_subscribers(self):
        bus = EventBus()
        seen = []
        bus.subscribe("task.created", lambda name, payload: seen.append((name, payload)))
        bus.subscribe(WILDCARD, lambda name, payload: seen.append(("*", name)))
        bus.emit("task.created", {"id": 1})
        bus.emit("task.deleted", {"id": 1})
        assert seen == [("task.created", {"id": 1}), ("*", "task.created"), ("*", "task.deleted")]

    def test_failing_handler_is_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def broken(name, payload):
            raise RuntimeError("boom")

        bus.subscribe("task.created", broken)
        bus.subscribe("task.created", lambda name, payload: seen.append(name))
        bus.emit("task.created", {})
        assert seen == ["task.created"]
        assert "boom" in caplog.text

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        handler = lambda name, payload: seen.append(name)  # noqa: E731
        bus.subscribe("task.created", handler)
        bus.unsubscribe("task.created", handler)
        bus.emit("task.created", {})
        assert seen == []
