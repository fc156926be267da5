"""SQLite persistence for tasks, labels and comments."""

import json
import sqlite3
from dataclasses import replace
from datetime import datetime

from taskboard.core.query import Pagination, TaskFilter, build_order_by, build_where
from taskboard.db.models import (
    Task,
    TaskComment,
    TaskIssueType,
    TaskPriority,
    TaskStatus,
    User,
    format_dt,
    new_id,
    parse_dt,
)
from taskboard.errors import ConflictError

_COLUMNS = (
    "title",
    "description",
    "status",
    "priority",
    "issue_type",
    "project_id",
    "created_by_id",
    "assignee_id",
    "parent_task_id",
    "start_date",
    "due_date",
    "completed_at",
    "estimated_hours",
    "actual_hours",
    "story_points",
    "position",
    "is_blocked",
    "blocked_reason",
    "is_archived",
    "metadata",
)


def insert_task(db: sqlite3.Connection, task: Task, commit: bool = True) -> Task:
    """Insert a new task row and its labels."""
    cols = ("id",) + _COLUMNS + ("version", "created_at", "updated_at")
    values = [task.id, *_column_values(task), task.version,
              format_dt(task.created_at), format_dt(task.updated_at)]
    db.execute(
        f"INSERT INTO tasks ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
        values,
    )
    _set_labels(db, task.id, task.labels)
    if commit:
        db.commit()
    return task


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a live task by ID with its labels. Soft-deleted tasks are hidden."""
    row = db.execute("SELECT * FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)).fetchone()
    if not row:
        return None
    return _with_labels(db, [_row_to_task(row)])[0]


def find_by_ids(db: sqlite3.Connection, task_ids: list[str]) -> list[Task]:
    """Load live tasks for the given ids, in the order requested."""
    if not task_ids:
        return []
    placeholders = ", ".join("?" for _ in task_ids)
    rows = db.execute(
        f"SELECT * FROM tasks WHERE id IN ({placeholders}) AND deleted_at IS NULL",
        list(task_ids),
    ).fetchall()
    by_id = {t.id: t for t in _with_labels(db, [_row_to_task(r) for r in rows])}
    return [by_id[i] for i in dict.fromkeys(task_ids) if i in by_id]


def save_task(
    db: sqlite3.Connection,
    task: Task,
    now: datetime,
    commit: bool = True,
) -> Task:
    """Persist ``task`` if nobody saved it since it was loaded.

    Raises ConflictError when the stored version differs from ``task.version``.
    """
    assignments = ", ".join(f"{c} = ?" for c in _COLUMNS)
    cursor = db.execute(
        f"""UPDATE tasks SET {assignments}, version = version + 1, updated_at = ?
            WHERE id = ? AND version = ? AND deleted_at IS NULL""",
        [*_column_values(task), format_dt(now), task.id, task.version],
    )
    if cursor.rowcount == 0:
        raise ConflictError(
            f"Task {task.id} was modified concurrently (expected version {task.version})"
        )
    _set_labels(db, task.id, task.labels)
    if commit:
        db.commit()
    return replace(task, version=task.version + 1, updated_at=now)


def soft_delete_task(db: sqlite3.Connection, task: Task, now: datetime) -> Task:
    """Mark a task deleted. The row stays in place."""
    cursor = db.execute(
        """UPDATE tasks SET deleted_at = ?, updated_at = ?, version = version + 1
           WHERE id = ? AND version = ? AND deleted_at IS NULL""",
        (format_dt(now), format_dt(now), task.id, task.version),
    )
    if cursor.rowcount == 0:
        raise ConflictError(f"Task {task.id} was modified concurrently")
    db.commit()
    return replace(task, deleted_at=now, updated_at=now, version=task.version + 1)


def next_position(db: sqlite3.Connection, project_id: str | None) -> int:
    """One past the highest position among live tasks in the same project."""
    if project_id:
        row = db.execute(
            "SELECT MAX(position) AS max_position FROM tasks WHERE deleted_at IS NULL AND project_id = ?",
            (project_id,),
        ).fetchone()
    else:
        row = db.execute(
            "SELECT MAX(position) AS max_position FROM tasks WHERE deleted_at IS NULL AND project_id IS NULL"
        ).fetchone()
    return (row["max_position"] or 0) + 1


def search_tasks(
    db: sqlite3.Connection,
    filters: TaskFilter,
    pagination: Pagination,
    user: User,
    now: datetime,
) -> tuple[list[Task], int]:
    """Return one page of matching tasks plus the total match count."""
    where, params = build_where(filters, user, now)
    total = db.execute(f"SELECT COUNT(*) FROM tasks t WHERE {where}", params).fetchone()[0]
    rows = db.execute(
        f"SELECT t.* FROM tasks t WHERE {where} ORDER BY {build_order_by(filters)} LIMIT ? OFFSET ?",
        [*params, pagination.limit, pagination.offset],
    ).fetchall()
    return _with_labels(db, [_row_to_task(r) for r in rows]), total


def find_overdue(db: sqlite3.Connection, assignee_id: str, now: datetime) -> list[Task]:
    """Live tasks assigned to ``assignee_id`` past their due date and not done."""
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE assignee_id = ? AND due_date IS NOT NULL AND due_date < ?
             AND status != ? AND deleted_at IS NULL
           ORDER BY due_date ASC, created_at DESC""",
        (assignee_id, format_dt(now), TaskStatus.DONE.value),
    ).fetchall()
    return _with_labels(db, [_row_to_task(r) for r in rows])


def find_by_project(db: sqlite3.Connection, project_id: str) -> list[Task]:
    rows = db.execute(
        """SELECT * FROM tasks WHERE project_id = ? AND deleted_at IS NULL
           ORDER BY position ASC, created_at DESC, rowid DESC""",
        (project_id,),
    ).fetchall()
    return _with_labels(db, [_row_to_task(r) for r in rows])


def stats_rows(
    db: sqlite3.Connection,
    user_id: str,
    project_id: str | None,
) -> list[sqlite3.Row]:
    """Status, priority and due date of every live task the user created or is assigned."""
    sql = """SELECT status, priority, due_date FROM tasks
             WHERE (created_by_id = ? OR assignee_id = ?) AND deleted_at IS NULL"""
    params: list = [user_id, user_id]
    if project_id:
        sql += " AND project_id = ?"
        params.append(project_id)
    return db.execute(sql, params).fetchall()


# ── Comments ─────────────────────────────────────────────────────────────────


def insert_comment(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str,
    content: str,
    now: datetime,
) -> TaskComment:
    comment = TaskComment(
        id=new_id(), task_id=task_id, user_id=user_id, content=content, created_at=now
    )
    db.execute(
        "INSERT INTO task_comments (id, task_id, user_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
        (comment.id, task_id, user_id, content, format_dt(now)),
    )
    db.commit()
    return comment


def list_comments(db: sqlite3.Connection, task_id: str) -> list[TaskComment]:
    rows = db.execute(
        "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at ASC, rowid ASC",
        (task_id,),
    ).fetchall()
    return [
        TaskComment(
            id=r["id"],
            task_id=r["task_id"],
            user_id=r["user_id"],
            content=r["content"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Labels ───────────────────────────────────────────────────────────────────


def _set_labels(db: sqlite3.Connection, task_id: str, names: list[str]):
    db.execute("DELETE FROM task_labels WHERE task_id = ?", (task_id,))
    for name in names:
        row = db.execute("SELECT id FROM labels WHERE name = ?", (name,)).fetchone()
        label_id = row["id"] if row else new_id()
        if not row:
            db.execute("INSERT INTO labels (id, name) VALUES (?, ?)", (label_id, name))
        db.execute(
            "INSERT OR IGNORE INTO task_labels (task_id, label_id) VALUES (?, ?)",
            (task_id, label_id),
        )


def _with_labels(db: sqlite3.Connection, tasks: list[Task]) -> list[Task]:
    if not tasks:
        return tasks
    placeholders = ", ".join("?" for _ in tasks)
    rows = db.execute(
        f"""SELECT tl.task_id, l.name FROM task_labels tl JOIN labels l ON l.id = tl.label_id
            WHERE tl.task_id IN ({placeholders}) ORDER BY l.name""",
        [t.id for t in tasks],
    ).fetchall()
    labels: dict[str, list[str]] = {}
    for r in rows:
        labels.setdefault(r["task_id"], []).append(r["name"])
    return [replace(t, labels=labels.get(t.id, [])) for t in tasks]


# ── Row mapping ──────────────────────────────────────────────────────────────


def _column_values(task: Task) -> list:
    return [
        task.title,
        task.description,
        task.status.value,
        task.priority.value,
        task.issue_type.value,
        task.project_id,
        task.created_by_id,
        task.assignee_id,
        task.parent_task_id,
        format_dt(task.start_date),
        format_dt(task.due_date),
        format_dt(task.completed_at),
        task.estimated_hours,
        task.actual_hours,
        task.story_points,
        task.position,
        int(task.is_blocked),
        task.blocked_reason,
        int(task.is_archived),
        json.dumps(task.metadata or {}, default=str),
    ]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        created_by_id=row["created_by_id"],
        description=row["description"] or "",
        status=TaskStatus(row["status"]),
        priority=TaskPriority(row["priority"]),
        issue_type=TaskIssueType(row["issue_type"]),
        project_id=row["project_id"],
        assignee_id=row["assignee_id"],
        parent_task_id=row["parent_task_id"],
        start_date=parse_dt(row["start_date"]),
        due_date=parse_dt(row["due_date"]),
        completed_at=parse_dt(row["completed_at"]),
        estimated_hours=row["estimated_hours"],
        actual_hours=row["actual_hours"] or 0.0,
        story_points=row["story_points"],
        position=row["position"],
        is_blocked=bool(row["is_blocked"]),
        blocked_reason=row["blocked_reason"],
        is_archived=bool(row["is_archived"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        deleted_at=parse_dt(row["deleted_at"]),
    )
