"""Task management operations.

``TaskService`` is the single entry point for reading and changing tasks.
Every change is authorized, persisted, recorded in the activity trail,
announced on the event bus and followed by cache invalidation.
"""

import logging
import math
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from taskboard.core import activity as activity_mod
from taskboard.core import events
from taskboard.core import projects as projects_mod
from taskboard.core import store
from taskboard.core import users as users_mod
from taskboard.core.cache import MemoryCacheStore, TaskCache
from taskboard.core.events import EventBus
from taskboard.core.query import Pagination, TaskFilter
from taskboard.db.models import (
    ActivityType,
    Task,
    TaskActivity,
    TaskComment,
    TaskPriority,
    TaskStatus,
    User,
    UserRole,
    coerce_enum,
    format_dt,
    from_dict,
    new_task,
    to_dict,
    utcnow,
    validate_task_fields,
)
from taskboard.errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DELETE_ROLES = {UserRole.ADMIN, UserRole.PROJECT_MANAGER}

# Fields reported in "updated" activity descriptions, in display order.
_TRACKED_FIELDS = (
    "title",
    "description",
    "status",
    "priority",
    "issue_type",
    "assignee_id",
    "project_id",
    "parent_task_id",
    "start_date",
    "due_date",
    "estimated_hours",
    "story_points",
    "position",
    "metadata",
    "labels",
)


@dataclass
class TaskPage:
    tasks: list[Task]
    total: int

    def to_dict(self) -> dict:
        return {"tasks": [to_dict(t) for t in self.tasks], "total": self.total}

    @classmethod
    def from_dict(cls, data: dict) -> "TaskPage":
        return cls(tasks=[from_dict(Task, t) for t in data["tasks"]], total=data["total"])


@dataclass
class TaskStats:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    overdue: int = 0
    by_priority: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)


class TaskService:
    def __init__(
        self,
        db: sqlite3.Connection,
        cache: TaskCache | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cache = cache or TaskCache(MemoryCacheStore())
        self.bus = bus or EventBus()
        self.clock = clock

    # ── Reads ─────────────────────────────────────────────────────────────

    def find_all(
        self,
        user: User,
        filters: TaskFilter | None = None,
        pagination: Pagination | None = None,
    ) -> TaskPage:
        """One page of tasks visible to ``user`` plus the total match count."""
        filters = filters or TaskFilter()
        pagination = pagination or Pagination()
        kind = "admin_tasks" if user.is_admin else "tasks"
        key = self.cache.key(
            kind,
            user_id=user.id,
            filters=filters.cache_part(),
            pagination=pagination.cache_part(),
        )

        def load():
            with self._storage_errors("fetch tasks", user):
                tasks, total = store.search_tasks(self.db, filters, pagination, user, self.clock())
            return TaskPage(tasks, total).to_dict()

        return TaskPage.from_dict(self.cache.get_or_load(kind, key, load))

    def find_one(self, task_id: str, user: User) -> Task:
        key = self.cache.key("task", task_id=task_id, user_id=user.id)
        cached = self.cache.get(key)
        if cached is not None:
            return from_dict(Task, cached)
        task = self._load(task_id, user)
        self.cache.set("task", key, to_dict(task))
        return task

    def get_stats(self, user: User, project_id: str | None = None) -> TaskStats:
        """Counts over tasks the caller created or is assigned to."""
        key = self.cache.key("task_stats", user_id=user.id, project=project_id or "all")

        def load():
            with self._storage_errors("compute task stats", user):
                rows = store.stats_rows(self.db, user.id, project_id)
            now = format_dt(self.clock())
            stats = TaskStats(
                total=len(rows),
                by_priority={p.value: 0 for p in TaskPriority},
                by_status={s.value: 0 for s in TaskStatus},
            )
            for row in rows:
                stats.by_priority[row["priority"]] = stats.by_priority.get(row["priority"], 0) + 1
                stats.by_status[row["status"]] = stats.by_status.get(row["status"], 0) + 1
                if row["due_date"] and row["due_date"] < now and row["status"] != TaskStatus.DONE.value:
                    stats.overdue += 1
            stats.completed = stats.by_status[TaskStatus.DONE.value]
            stats.in_progress = stats.by_status[TaskStatus.IN_PROGRESS.value]
            return to_dict(stats)

        return TaskStats(**self.cache.get_or_load("task_stats", key, load))

    def get_overdue_tasks(self, user: User) -> list[Task]:
        """Tasks assigned to the caller that are past due, earliest first."""
        with self._storage_errors("fetch overdue tasks", user):
            return store.find_overdue(self.db, user.id, self.clock())

    def get_tasks_by_project(self, project_id: str, user: User) -> list[Task]:
        if not projects_mod.has_project_access(self.db, project_id, user):
            raise ForbiddenError("You do not have access to this project")
        key = self.cache.key("project_tasks", project_id=project_id, user_id=user.id)

        def load():
            with self._storage_errors("fetch project tasks", user):
                return [to_dict(t) for t in store.find_by_project(self.db, project_id)]

        return [from_dict(Task, t) for t in self.cache.get_or_load("project_tasks", key, load)]

    def get_activities(self, task_id: str, user: User) -> list[TaskActivity]:
        self._load(task_id, user)
        return activity_mod.get_task_activities(self.db, task_id)

    def get_comments(self, task_id: str, user: User) -> list[TaskComment]:
        self._load(task_id, user)
        return store.list_comments(self.db, task_id)

    # ── Writes ────────────────────────────────────────────────────────────

    def create(self, values: dict, user: User) -> Task:
        """Create a task owned by ``user``.

        Without an explicit position the task goes after every live task in
        the same project (or among project-less tasks).
        """
        logger.info("Creating task %r by user %s", values.get("title"), user.id)
        values = dict(values)
        project_id = values.get("project_id")
        if project_id:
            self._validate_project_access(project_id, user)
        if values.get("assignee_id"):
            self._validate_assignee(values["assignee_id"])
        if values.get("parent_task_id"):
            self._validate_parent(values["parent_task_id"], user)

        now = self.clock()
        with self._storage_errors("create task", user):
            if values.get("position") is None:
                values["position"] = store.next_position(self.db, project_id)
            task = new_task(values, user.id, now)
            store.insert_task(self.db, task)

        activity_mod.log_activity(
            self.db, task.id, user.id, ActivityType.CREATED, f"Task created: {task.title}"
        )
        self.bus.emit(events.TASK_CREATED, {"task": task, "user": user})
        self._invalidate(user, task)
        logger.info("Task created successfully: %s", task.id)
        return task

    def update(self, task_id: str, changes: dict, user: User) -> Task:
        logger.info("Updating task %s by user %s", task_id, user.id)
        task = self._load(task_id, user)
        if changes.get("project_id") and changes["project_id"] != task.project_id:
            self._validate_project_access(changes["project_id"], user)
        if changes.get("assignee_id") and changes["assignee_id"] != task.assignee_id:
            self._validate_assignee(changes["assignee_id"])
        if changes.get("parent_task_id") and changes["parent_task_id"] != task.parent_task_id:
            self._validate_parent(changes["parent_task_id"], user, task.id)

        updated = task.apply_changes(changes, self.clock())
        diff = _diff(task, updated)
        if not diff:
            logger.debug("Update of task %s changed nothing", task_id)
            return task

        summary = ", ".join(f"{name} changed" for name in diff)
        return self._commit_change(
            task,
            updated,
            user,
            ActivityType.UPDATED,
            f"Task updated: {summary}",
            {"changes": diff},
            events.TASK_UPDATED,
            {"changes": diff},
        )

    def remove(self, task_id: str, user: User) -> None:
        """Soft-delete a task. Only admins, project managers and the creator may."""
        logger.info("Deleting task %s by user %s", task_id, user.id)
        task = self._load(task_id, user)
        if not (user.role in DELETE_ROLES or task.created_by_id == user.id):
            raise ForbiddenError("You do not have permission to delete this task")

        with self._storage_errors("delete task", user, task_id):
            deleted = store.soft_delete_task(self.db, task, self.clock())

        activity_mod.log_activity(
            self.db, task.id, user.id, ActivityType.DELETED, f"Task deleted: {task.title}"
        )
        self.bus.emit(events.TASK_DELETED, {"task": deleted, "user": user})
        self._invalidate(user, task)
        logger.info("Task deleted successfully: %s", task_id)

    def update_status(self, task_id: str, status: TaskStatus | str, user: User) -> Task:
        status = coerce_enum(TaskStatus, status, "status")
        task = self._load(task_id, user)
        updated = task.update_status(status, self.clock())
        change = {"old_status": task.status.value, "new_status": status.value}
        return self._commit_change(
            task,
            updated,
            user,
            ActivityType.STATUS_CHANGED,
            f"Status changed from {task.status.value} to {status.value}",
            change,
            events.TASK_STATUS_CHANGED,
            change,
        )

    def update_priority(self, task_id: str, priority: TaskPriority | str, user: User) -> Task:
        priority = coerce_enum(TaskPriority, priority, "priority")
        task = self._load(task_id, user)
        change = {"old_priority": task.priority.value, "new_priority": priority.value}
        return self._commit_change(
            task,
            task.update_priority(priority),
            user,
            ActivityType.PRIORITY_CHANGED,
            f"Priority changed from {task.priority.value} to {priority.value}",
            change,
            events.TASK_PRIORITY_CHANGED,
            change,
        )

    def assign(self, task_id: str, assignee_id: str, user: User) -> Task:
        task = self._load(task_id, user)
        self._validate_assignee(assignee_id)
        change = {"old_assignee_id": task.assignee_id, "new_assignee_id": assignee_id}
        return self._commit_change(
            task,
            task.assign_to(assignee_id),
            user,
            ActivityType.ASSIGNED,
            f"Task assigned to user {assignee_id}",
            change,
            events.TASK_ASSIGNED,
            {"assignee_id": assignee_id},
        )

    def unassign(self, task_id: str, user: User) -> Task:
        task = self._load(task_id, user)
        change = {"old_assignee_id": task.assignee_id}
        return self._commit_change(
            task,
            task.unassign(),
            user,
            ActivityType.UNASSIGNED,
            "Task unassigned",
            change,
            events.TASK_UNASSIGNED,
            change,
        )

    def add_time_entry(self, task_id: str, hours: float, user: User) -> Task:
        """Add logged hours to ``actual_hours``. Hours must be positive."""
        if hours is None or not math.isfinite(hours) or hours <= 0:
            raise ValidationError("Hours must be greater than 0")
        task = self._load(task_id, user)
        updated = task.add_time_spent(hours)
        return self._commit_change(
            task,
            updated,
            user,
            ActivityType.TIME_LOGGED,
            f"{hours} hours logged",
            {"hours": hours, "old_total_hours": task.actual_hours, "total_hours": updated.actual_hours},
            events.TASK_TIME_LOGGED,
            {"hours": hours},
        )

    def block(self, task_id: str, reason: str, user: User) -> Task:
        task = self._load(task_id, user)
        return self._commit_change(
            task,
            task.set_blocked(reason),
            user,
            ActivityType.BLOCKED,
            f"Task blocked: {reason}",
            {"reason": reason, "was_blocked": task.is_blocked},
            events.TASK_BLOCKED,
            {"reason": reason},
        )

    def unblock(self, task_id: str, user: User) -> Task:
        task = self._load(task_id, user)
        return self._commit_change(
            task,
            task.unblock(),
            user,
            ActivityType.UNBLOCKED,
            "Task unblocked",
            {"old_reason": task.blocked_reason, "was_blocked": task.is_blocked},
            events.TASK_UNBLOCKED,
        )

    def archive(self, task_id: str, user: User) -> Task:
        task = self._load(task_id, user)
        return self._commit_change(
            task,
            task.archive(),
            user,
            ActivityType.ARCHIVED,
            "Task archived",
            {"was_archived": task.is_archived},
            events.TASK_ARCHIVED,
        )

    def unarchive(self, task_id: str, user: User) -> Task:
        task = self._load(task_id, user)
        return self._commit_change(
            task,
            task.unarchive(),
            user,
            ActivityType.UNARCHIVED,
            "Task unarchived",
            {"was_archived": task.is_archived},
            events.TASK_UNARCHIVED,
        )

    def add_comment(self, task_id: str, content: str, user: User) -> TaskComment:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment must not be empty")
        task = self._load(task_id, user)
        with self._storage_errors("add comment", user, task_id):
            comment = store.insert_comment(self.db, task.id, user.id, content, self.clock())
        activity_mod.log_activity(
            self.db, task.id, user.id, ActivityType.COMMENT_ADDED, "Comment added",
            {"comment_id": comment.id},
        )
        self.bus.emit(events.TASK_COMMENT_ADDED, {"task": task, "user": user, "comment": comment})
        self._invalidate(user, task)
        return comment

    def bulk_update(self, task_ids: list[str], updates: dict, user: User) -> list[Task]:
        """Apply one partial update to several tasks, all or nothing.

        Every task must exist and be accessible before any row is written,
        and all rows are saved in a single transaction.
        """
        logger.info("Bulk updating %d tasks by user %s", len(task_ids), user.id)
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            raise ValidationError("No task ids given")
        if not updates:
            raise ValidationError("No updates given")
        clean = validate_task_fields(updates, partial=True)

        with self._storage_errors("load tasks for bulk update", user):
            tasks = store.find_by_ids(self.db, ids)
        missing = [i for i in ids if i not in {t.id for t in tasks}]
        if missing:
            raise NotFoundError(f"Tasks not found: {', '.join(missing)}")
        for task in tasks:
            self._authorize(task, user)
        if clean.get("project_id"):
            self._validate_project_access(clean["project_id"], user)
        if clean.get("assignee_id"):
            self._validate_assignee(clean["assignee_id"])
        if clean.get("parent_task_id"):
            for task in tasks:
                if clean["parent_task_id"] != task.parent_task_id:
                    self._validate_parent(clean["parent_task_id"], user, task.id)

        now = self.clock()
        saved = []
        try:
            for task in tasks:
                saved.append(store.save_task(self.db, task.apply_changes(updates, now), now, commit=False))
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("Bulk update rolled back (user=%s, tasks=%s)", user.id, ids)
            raise

        plain_updates = {k: _plain(v) for k, v in clean.items()}
        for task in saved:
            activity_mod.log_activity(
                self.db, task.id, user.id, ActivityType.BULK_UPDATED,
                "Task updated via bulk operation", {"updates": plain_updates},
            )
        self.bus.emit(
            events.TASKS_BULK_UPDATED, {"tasks": saved, "user": user, "updates": plain_updates}
        )
        self._invalidate(user, *tasks, *saved)
        return saved

    # ── Helpers ───────────────────────────────────────────────────────────

    def _commit_change(
        self,
        before: Task,
        after: Task,
        user: User,
        activity_type: ActivityType,
        description: str,
        metadata: dict | None,
        event_name: str,
        extra: dict | None = None,
    ) -> Task:
        with self._storage_errors(activity_type.value, user, before.id):
            saved = store.save_task(self.db, after, self.clock())
        activity_mod.log_activity(self.db, saved.id, user.id, activity_type, description, metadata)
        self.bus.emit(event_name, {"task": saved, "user": user, **(extra or {})})
        self._invalidate(user, before, saved)
        return saved

    def _load(self, task_id: str, user: User) -> Task:
        """Fresh read of a live task the caller may access."""
        with self._storage_errors("fetch task", user, task_id):
            task = store.get_task(self.db, task_id)
        if not task:
            raise NotFoundError(f"Task with ID {task_id} not found")
        self._authorize(task, user)
        return task

    def _authorize(self, task: Task, user: User) -> None:
        if user.is_admin or user.id in (task.created_by_id, task.assignee_id):
            return
        if task.project_id and projects_mod.has_project_access(self.db, task.project_id, user):
            return
        raise ForbiddenError("You do not have access to this task")

    def _validate_project_access(self, project_id: str, user: User) -> None:
        if not projects_mod.has_project_access(self.db, project_id, user):
            raise ForbiddenError("You do not have access to this project")

    def _validate_parent(self, parent_id: str, user: User, task_id: str | None = None) -> None:
        """The parent must be a live task the caller can see, outside ``task_id``'s subtree."""
        parent = self._load(parent_id, user)
        seen = set()
        while parent is not None and parent.id not in seen:
            if parent.id == task_id:
                raise ValidationError("A task cannot be its own parent or ancestor")
            seen.add(parent.id)
            parent = store.get_task(self.db, parent.parent_task_id) if parent.parent_task_id else None

    def _validate_assignee(self, assignee_id: str) -> None:
        if not users_mod.get_user(self.db, assignee_id):
            raise ValidationError(f"Assignee not found: {assignee_id}")

    def _invalidate(self, user: User, *tasks: Task) -> None:
        user_ids = {user.id}
        for t in tasks:
            user_ids.update((t.created_by_id, t.assignee_id))
        self.cache.invalidate(
            user_ids=user_ids,
            task_ids=[t.id for t in tasks],
            project_ids=[t.project_id for t in tasks],
        )

    @contextmanager
    def _storage_errors(self, operation: str, user: User, task_id: str | None = None):
        try:
            yield
        except sqlite3.Error:
            logger.exception(
                "Failed to %s (user=%s, task=%s)", operation, user.id, task_id
            )
            raise


def _diff(before: Task, after: Task) -> dict[str, dict[str, Any]]:
    changes = {}
    for name in _TRACKED_FIELDS:
        old, new = getattr(before, name), getattr(after, name)
        if old != new:
            changes[name] = {"old": _plain(old), "new": _plain(new)}
    return changes


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_dt(value)
    return value
