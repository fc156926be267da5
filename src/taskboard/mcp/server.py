"""MCP server exposing taskboard tools.

Tools act as the user named by ``TB_USER``.
"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from taskboard.config import get_config
from taskboard.core import users as users_mod
from taskboard.core.cache import TaskCache, create_cache
from taskboard.core.events import EventBus
from taskboard.core.query import Pagination, TaskFilter
from taskboard.core.tasks import TaskService
from taskboard.db.engine import init_db
from taskboard.db.models import User, to_dict
from taskboard.errors import TaskboardError


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: object
    cache: TaskCache
    bus: EventBus


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection and cache on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config, cache=create_cache(config), bus=EventBus())
    finally:
        db.close()


mcp = FastMCP("taskboard", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _session(ctx: Context) -> tuple[TaskService, User]:
    app = _ctx(ctx)
    ref = app.config.default_user
    user = users_mod.resolve_user(app.db, ref) if ref else None
    if not user:
        raise TaskboardError("TB_USER is not set to a known user")
    return TaskService(app.db, cache=app.cache, bus=app.bus), user


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    project_id: str | None = None,
    priority: str = "medium",
    status: str = "backlog",
    issue_type: str = "feature",
    due_date: str | None = None,
    labels: list[str] | None = None,
) -> dict:
    """Create a new task. Priority: low, medium, high, urgent, critical."""
    try:
        service, user = _session(ctx)
        task = service.create(
            {
                "title": title,
                "description": description,
                "project_id": project_id,
                "priority": priority,
                "status": status,
                "issue_type": issue_type,
                "due_date": due_date,
                "labels": labels or [],
            },
            user,
        )
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    status: str | None = None,
    priority: str | None = None,
    project_id: str | None = None,
    search: str | None = None,
    my_tasks: bool = False,
    overdue: bool = False,
    sort_field: str = "created_at",
    sort_order: str = "DESC",
    page: int = 1,
    limit: int = 20,
) -> dict:
    """List tasks visible to the current user with filters and pagination."""
    try:
        service, user = _session(ctx)
        filters = TaskFilter(
            status=status,
            priority=priority,
            project_id=project_id,
            search=search,
            my_tasks=my_tasks or None,
            is_overdue=overdue or None,
            sort_field=sort_field,
            sort_order=sort_order,
        )
        result = service.find_all(user, filters, Pagination(page=page, limit=limit))
    except TaskboardError as e:
        return {"error": str(e)}
    return result.to_dict()


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task including its activity history."""
    try:
        service, user = _session(ctx)
        result = to_dict(service.find_one(task_id, user))
        result["activities"] = [to_dict(a) for a in service.get_activities(task_id, user)]
    except TaskboardError as e:
        return {"error": str(e)}
    return result


@mcp.tool()
def update_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Update a task's status. Valid statuses: backlog, todo, in_progress,
    in_review, testing, done, cancelled."""
    try:
        service, user = _session(ctx)
        task = service.update_status(task_id, status, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def update_task_priority(ctx: Context, task_id: str, priority: str) -> dict:
    """Update a task's priority (low, medium, high, urgent, critical)."""
    try:
        service, user = _session(ctx)
        task = service.update_priority(task_id, priority, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def update_task(ctx: Context, task_id: str, changes: dict) -> dict:
    """Apply a partial update, e.g. {"title": "...", "due_date": "2026-05-01T00:00:00Z"}."""
    try:
        service, user = _session(ctx)
        task = service.update(task_id, changes, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def assign_task(ctx: Context, task_id: str, assignee: str) -> dict:
    """Assign a task to a user, given by username or id."""
    try:
        service, user = _session(ctx)
        target = users_mod.resolve_user(service.db, assignee)
        if not target:
            return {"error": f"User not found: {assignee}"}
        task = service.assign(task_id, target.id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def unassign_task(ctx: Context, task_id: str) -> dict:
    try:
        service, user = _session(ctx)
        task = service.unassign(task_id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def archive_task(ctx: Context, task_id: str) -> dict:
    """Hide a task from default listings without deleting it."""
    try:
        service, user = _session(ctx)
        task = service.archive(task_id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def unarchive_task(ctx: Context, task_id: str) -> dict:
    try:
        service, user = _session(ctx)
        task = service.unarchive(task_id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def bulk_update_tasks(ctx: Context, task_ids: list[str], updates: dict) -> list[dict]:
    """Apply one partial update to several tasks. Nothing is saved if any task fails."""
    try:
        service, user = _session(ctx)
        tasks = service.bulk_update(task_ids, updates, user)
    except TaskboardError as e:
        return [{"error": str(e)}]
    return [to_dict(t) for t in tasks]


@mcp.tool()
def log_time(ctx: Context, task_id: str, hours: float) -> dict:
    """Log hours spent on a task."""
    try:
        service, user = _session(ctx)
        task = service.add_time_entry(task_id, hours, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def block_task(ctx: Context, task_id: str, reason: str) -> dict:
    """Mark a task as blocked with a reason."""
    try:
        service, user = _session(ctx)
        task = service.block(task_id, reason, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def unblock_task(ctx: Context, task_id: str) -> dict:
    """Clear a task's blocked flag."""
    try:
        service, user = _session(ctx)
        task = service.unblock(task_id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(task)


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task (creator, project manager or admin only)."""
    try:
        service, user = _session(ctx)
        service.remove(task_id, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return {"deleted": task_id}


@mcp.tool()
def task_stats(ctx: Context, project_id: str | None = None) -> dict:
    """Counts of the current user's tasks by status and priority."""
    try:
        service, user = _session(ctx)
        stats = service.get_stats(user, project_id)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(stats)


@mcp.tool()
def overdue_tasks(ctx: Context) -> list[dict]:
    """Tasks assigned to the current user that are past their due date."""
    try:
        service, user = _session(ctx)
        tasks = service.get_overdue_tasks(user)
    except TaskboardError as e:
        return [{"error": str(e)}]
    return [to_dict(t) for t in tasks]


# ── Comments and History ──────────────────────────────────────────────────────


@mcp.tool()
def add_comment(ctx: Context, task_id: str, content: str) -> dict:
    try:
        service, user = _session(ctx)
        comment = service.add_comment(task_id, content, user)
    except TaskboardError as e:
        return {"error": str(e)}
    return to_dict(comment)


@mcp.tool()
def list_comments(ctx: Context, task_id: str) -> list[dict]:
    try:
        service, user = _session(ctx)
        comments = service.get_comments(task_id, user)
    except TaskboardError as e:
        return [{"error": str(e)}]
    return [to_dict(c) for c in comments]


@mcp.tool()
def task_activities(ctx: Context, task_id: str) -> list[dict]:
    """Activity trail of a task, newest first."""
    try:
        service, user = _session(ctx)
        activities = service.get_activities(task_id, user)
    except TaskboardError as e:
        return [{"error": str(e)}]
    return [to_dict(a) for a in activities]


@mcp.tool()
def project_tasks(ctx: Context, project_id: str) -> list[dict]:
    """Live tasks of a project in board order."""
    try:
        service, user = _session(ctx)
        tasks = service.get_tasks_by_project(project_id, user)
    except TaskboardError as e:
        return [{"error": str(e)}]
    return [to_dict(t) for t in tasks]
