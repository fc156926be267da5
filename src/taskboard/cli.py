"""CLI entry point for taskboard."""

import json
import sys
from contextlib import contextmanager

import click

from taskboard.config import get_config
from taskboard.core import projects as projects_mod
from taskboard.core import users as users_mod
from taskboard.core.cache import create_cache
from taskboard.core.query import Pagination, TaskFilter
from taskboard.core.tasks import TaskService
from taskboard.db.engine import get_db
from taskboard.db.models import (
    TaskIssueType,
    TaskPriority,
    TaskStatus,
    UserRole,
    to_dict,
)
from taskboard.errors import TaskboardError
from taskboard.logging_setup import setup_logging

STATUS_CHOICES = click.Choice([s.value for s in TaskStatus])
PRIORITY_CHOICES = click.Choice([p.value for p in TaskPriority])
TYPE_CHOICES = click.Choice([t.value for t in TaskIssueType])

STATUS_ICONS = {
    "backlog": "·",
    "todo": "○",
    "in_progress": "●",
    "in_review": "◐",
    "testing": "◑",
    "done": "✓",
    "cancelled": "✗",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@contextmanager
def _session():
    """Yield (TaskService, acting user); report taskboard errors and exit 1."""
    ctx = click.get_current_context()
    config = get_config()
    ref = ctx.find_root().obj.get("as_user") or config.default_user
    with _get_db() as db:
        try:
            if not ref:
                raise TaskboardError("No acting user: pass --as or set TB_USER")
            user = users_mod.resolve_user(db, ref)
            if not user:
                raise TaskboardError(f"User not found: {ref}")
            yield TaskService(db, cache=create_cache(config)), user
        except TaskboardError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


@click.group()
@click.option("--as", "as_user", default=None, help="Acting user (id or username); defaults to TB_USER")
@click.pass_context
def main(ctx, as_user):
    """tb - Taskboard CLI"""
    setup_logging(get_config().log_level)
    ctx.ensure_object(dict)
    ctx.obj["as_user"] = as_user


# ── User Commands ─────────────────────────────────────────────────────────────


@main.group("user")
def user_group():
    """Manage users."""
    pass


@user_group.command("add")
@click.argument("username")
@click.option("--role", default="user", type=click.Choice([r.value for r in UserRole]), help="User role")
@click.option("--email", default=None, help="Email address")
def user_add(username, role, email):
    """Create a user."""
    with _get_db() as db:
        try:
            user = users_mod.create_user(db, username, role, email)
        except TaskboardError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Created user: {user.username} ({user.id})")
        click.echo(f"  Role: {user.role.value}")


@user_group.command("list")
def user_list():
    """List users."""
    with _get_db() as db:
        users = users_mod.list_users(db)
        if not users:
            click.echo("No users found.")
            return
        for u in users:
            click.echo(f"  {u.username} [{u.role.value}] {u.id}")


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("add")
@click.argument("name")
@click.option("--description", "-d", default="", help="Project description")
def project_add(name, description):
    """Create a project owned by the acting user."""
    with _session() as (service, user):
        project = projects_mod.create_project(service.db, name, user, description)
        click.echo(f"Project created: {project.id} ({project.name})")


@project_group.command("list")
def project_list():
    """List projects visible to the acting user."""
    with _session() as (service, user):
        projects = projects_mod.list_projects(service.db, user)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            click.echo(f"  {p.id}: {p.name} ({len(p.member_ids)} members)")


@project_group.command("add-member")
@click.argument("project_id")
@click.argument("member")
def project_add_member(project_id, member):
    """Add a user (id or username) to a project."""
    with _session() as (service, user):
        target = users_mod.resolve_user(service.db, member)
        if not target:
            raise TaskboardError(f"User not found: {member}")
        projects_mod.add_member(service.db, project_id, target.id)
        click.echo(f"Added {target.username} to project {project_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default="backlog", type=STATUS_CHOICES, help="Initial status")
@click.option("--priority", "-p", default="medium", type=PRIORITY_CHOICES, help="Priority")
@click.option("--type", "issue_type", default="feature", type=TYPE_CHOICES, help="Issue type")
@click.option("--assignee", default=None, help="Assignee (id or username)")
@click.option("--due", default=None, help="Due date (ISO 8601)")
@click.option("--estimate", default=None, type=float, help="Estimated hours")
@click.option("--points", default=None, type=int, help="Story points")
@click.option("--label", "labels", multiple=True, help="Label name (repeatable)")
def task_add(title, description, project, status, priority, issue_type, assignee, due, estimate, points, labels):
    """Create a new task."""
    with _session() as (service, user):
        values = {
            "title": title,
            "description": description,
            "project_id": project,
            "status": status,
            "priority": priority,
            "issue_type": issue_type,
            "due_date": due,
            "estimated_hours": estimate,
            "story_points": points,
            "labels": list(labels),
        }
        if assignee:
            values["assignee_id"] = _user_id(service, assignee)
        task = service.create(values, user)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Priority: {task.priority.value}")
        click.echo(f"  Position: {task.position}")


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--priority", default=None, help="Filter by priority")
@click.option("--type", "issue_type", default=None, help="Filter by issue type")
@click.option("--project", default=None, help="Filter by project ID")
@click.option("--label", "labels", default=None, help="Comma-separated label names")
@click.option("--search", "-s", default=None, help="Search title and description")
@click.option("--mine", is_flag=True, help="Only tasks assigned to me")
@click.option("--unassigned", is_flag=True, help="Only unassigned tasks")
@click.option("--overdue", is_flag=True, help="Only overdue tasks")
@click.option("--blocked/--not-blocked", default=None, help="Filter by blocked flag")
@click.option("--archived/--not-archived", default=None, help="Filter by archived flag")
@click.option("--sort", "sort_field", default="created_at", help="Sort field")
@click.option("--order", "sort_order", default="DESC", type=click.Choice(["ASC", "DESC"], case_sensitive=False))
@click.option("--page", default=1, type=int, help="Page number")
@click.option("--limit", default=10, type=int, help="Page size (max 100)")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, priority, issue_type, project, labels, search, mine, unassigned, overdue,
              blocked, archived, sort_field, sort_order, page, limit, json_output):
    """List tasks."""
    with _session() as (service, user):
        filters = TaskFilter(
            status=status,
            priority=priority,
            issue_type=issue_type,
            project_id=project,
            labels=labels,
            search=search,
            my_tasks=mine or None,
            unassigned=unassigned or None,
            is_overdue=overdue or None,
            is_blocked=blocked,
            is_archived=archived,
            sort_field=sort_field,
            sort_order=sort_order.upper(),
        )
        result = service.find_all(user, filters, Pagination(page=page, limit=limit))

        if json_output:
            click.echo(json.dumps({"tasks": [to_dict(t) for t in result.tasks], "total": result.total}, indent=2))
            return

        if not result.tasks:
            click.echo("No tasks found.")
            return

        for task in result.tasks:
            icon = STATUS_ICONS.get(task.status.value, "?")
            flags = " [blocked]" if task.is_blocked else ""
            flags += " [archived]" if task.is_archived else ""
            click.echo(f"  {icon} {task.priority.value:<8} {task.id}: {task.title} ({task.status.value}){flags}")
        click.echo(f"Page {page}: {len(result.tasks)} of {result.total} tasks")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details and history."""
    with _session() as (service, user):
        task = service.find_one(task_id, user)
        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Priority: {task.priority.value}")
        click.echo(f"  Type: {task.issue_type.value}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.project_id:
            click.echo(f"  Project: {task.project_id}")
        if task.assignee_id:
            click.echo(f"  Assignee: {task.assignee_id}")
        if task.due_date:
            click.echo(f"  Due: {task.due_date.isoformat()}")
        if task.labels:
            click.echo(f"  Labels: {', '.join(task.labels)}")
        click.echo(f"  Hours: {task.actual_hours} logged / {task.estimated_hours or '-'} estimated")
        if task.is_blocked:
            click.echo(f"  Blocked: {task.blocked_reason or 'yes'}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at.isoformat()}")

        activities = service.get_activities(task_id, user)
        if activities:
            click.echo("  History:")
            for a in activities:
                click.echo(f"    [{a.created_at.isoformat()}] {a.type.value}: {a.description}")


@task_group.command("update")
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--type", "issue_type", default=None, type=TYPE_CHOICES)
@click.option("--due", default=None, help="Due date (ISO 8601)")
@click.option("--estimate", default=None, type=float, help="Estimated hours")
@click.option("--points", default=None, type=int, help="Story points")
@click.option("--position", default=None, type=int)
def task_update(task_id, title, description, issue_type, due, estimate, points, position):
    """Edit task fields."""
    changes = {
        "title": title,
        "description": description,
        "issue_type": issue_type,
        "due_date": due,
        "estimated_hours": estimate,
        "story_points": points,
        "position": position,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    with _session() as (service, user):
        task = service.update(task_id, changes, user)
        click.echo(f"Updated task: {task.id} (version {task.version})")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=STATUS_CHOICES)
def task_status(task_id, status):
    """Change a task's status."""
    with _session() as (service, user):
        task = service.update_status(task_id, status, user)
        click.echo(f"Updated {task_id} status to {task.status.value}")


@task_group.command("priority")
@click.argument("task_id")
@click.argument("priority", type=PRIORITY_CHOICES)
def task_priority(task_id, priority):
    """Change a task's priority."""
    with _session() as (service, user):
        task = service.update_priority(task_id, priority, user)
        click.echo(f"Updated {task_id} priority to {task.priority.value}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("assignee")
def task_assign(task_id, assignee):
    """Assign a task to a user (id or username)."""
    with _session() as (service, user):
        task = service.assign(task_id, _user_id(service, assignee), user)
        click.echo(f"Assigned {task_id} to {assignee} ({task.assignee_id})")


@task_group.command("unassign")
@click.argument("task_id")
def task_unassign(task_id):
    """Remove a task's assignee."""
    with _session() as (service, user):
        service.unassign(task_id, user)
        click.echo(f"Unassigned {task_id}")


@task_group.command("log-time")
@click.argument("task_id")
@click.argument("hours", type=float)
def task_log_time(task_id, hours):
    """Log hours spent on a task."""
    with _session() as (service, user):
        task = service.add_time_entry(task_id, hours, user)
        click.echo(f"Logged {hours}h on {task_id} (total {task.actual_hours}h)")


@task_group.command("block")
@click.argument("task_id")
@click.argument("reason")
def task_block(task_id, reason):
    """Mark a task as blocked."""
    with _session() as (service, user):
        service.block(task_id, reason, user)
        click.echo(f"Blocked {task_id}: {reason}")


@task_group.command("unblock")
@click.argument("task_id")
def task_unblock(task_id):
    """Clear a task's blocked flag."""
    with _session() as (service, user):
        service.unblock(task_id, user)
        click.echo(f"Unblocked {task_id}")


@task_group.command("archive")
@click.argument("task_id")
def task_archive(task_id):
    """Archive a task."""
    with _session() as (service, user):
        service.archive(task_id, user)
        click.echo(f"Archived {task_id}")


@task_group.command("unarchive")
@click.argument("task_id")
def task_unarchive(task_id):
    """Restore an archived task."""
    with _session() as (service, user):
        service.unarchive(task_id, user)
        click.echo(f"Unarchived {task_id}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    with _session() as (service, user):
        service.remove(task_id, user)
        click.echo(f"Deleted task: {task_id}")


@task_group.command("comment")
@click.argument("task_id")
@click.argument("content")
def task_comment(task_id, content):
    """Add a comment to a task."""
    with _session() as (service, user):
        comment = service.add_comment(task_id, content, user)
        click.echo(f"Comment added: {comment.id}")


@task_group.command("bulk")
@click.argument("task_ids", nargs=-1, required=True)
@click.option("--status", default=None, type=STATUS_CHOICES)
@click.option("--priority", default=None, type=PRIORITY_CHOICES)
@click.option("--assignee", default=None, help="Assignee (id or username)")
def task_bulk(task_ids, status, priority, assignee):
    """Apply the same change to several tasks at once."""
    with _session() as (service, user):
        updates = {k: v for k, v in {"status": status, "priority": priority}.items() if v}
        if assignee:
            updates["assignee_id"] = _user_id(service, assignee)
        tasks = service.bulk_update(list(task_ids), updates, user)
        click.echo(f"Updated {len(tasks)} tasks")


@task_group.command("stats")
@click.option("--project", default=None, help="Limit to one project")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_stats(project, json_output):
    """Show task counts for the acting user."""
    with _session() as (service, user):
        stats = service.get_stats(user, project)
        if json_output:
            click.echo(json.dumps(to_dict(stats), indent=2))
            return
        click.echo(f"Total: {stats.total}")
        click.echo(f"  Completed: {stats.completed}")
        click.echo(f"  In progress: {stats.in_progress}")
        click.echo(f"  Overdue: {stats.overdue}")
        click.echo("  By status: " + ", ".join(f"{k}={v}" for k, v in stats.by_status.items()))
        click.echo("  By priority: " + ", ".join(f"{k}={v}" for k, v in stats.by_priority.items()))


@task_group.command("overdue")
def task_overdue():
    """List overdue tasks assigned to the acting user."""
    with _session() as (service, user):
        tasks = service.get_overdue_tasks(user)
        if not tasks:
            click.echo("No overdue tasks.")
            return
        for t in tasks:
            click.echo(f"  {t.id}: {t.title} (due {t.due_date.isoformat()})")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the JSON API."""
    from taskboard.web.app import run_server

    click.echo(f"Starting API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from taskboard.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _user_id(service: TaskService, ref: str) -> str:
    user = users_mod.resolve_user(service.db, ref)
    if not user:
        raise TaskboardError(f"User not found: {ref}")
    return user.id


if __name__ == "__main__":
    main()
