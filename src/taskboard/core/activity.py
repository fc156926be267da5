"""Append-only task activity trail."""

import json
import logging
import sqlite3

from taskboard.db.models import ActivityType, TaskActivity, format_dt, new_id, parse_dt, utcnow

logger = logging.getLogger(__name__)


def log_activity(
    db: sqlite3.Connection,
    task_id: str,
    user_id: str,
    activity_type: ActivityType | str,
    description: str,
    metadata: dict | None = None,
) -> TaskActivity | None:
    """Append one activity record.

    Failures are logged and swallowed; the caller's own write has already
    been committed and stays in place. Returns None on failure.
    """
    activity = TaskActivity(
        id=new_id(),
        task_id=task_id,
        user_id=user_id,
        type=ActivityType(activity_type),
        description=description,
        metadata=metadata,
        created_at=utcnow(),
    )
    try:
        db.execute(
            """INSERT INTO task_activities (id, task_id, user_id, type, description, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                activity.id,
                activity.task_id,
                activity.user_id,
                activity.type.value,
                activity.description,
                json.dumps(metadata, default=str) if metadata is not None else None,
                format_dt(activity.created_at),
            ),
        )
        db.commit()
    except sqlite3.Error:
        logger.exception(
            "Failed to log %s activity for task %s by user %s",
            activity.type.value, task_id, user_id,
        )
        try:
            db.rollback()
        except sqlite3.Error:
            logger.exception("Rollback after failed activity write also failed")
        return None
    return activity


def get_task_activities(db: sqlite3.Connection, task_id: str) -> list[TaskActivity]:
    """Get the activity history for a task, newest first."""
    rows = db.execute(
        "SELECT * FROM task_activities WHERE task_id = ? ORDER BY created_at DESC, seq DESC",
        (task_id,),
    ).fetchall()
    return [
        TaskActivity(
            id=r["id"],
            task_id=r["task_id"],
            user_id=r["user_id"],
            type=ActivityType(r["type"]),
            description=r["description"] or "",
            metadata=json.loads(r["metadata"]) if r["metadata"] else None,
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]
