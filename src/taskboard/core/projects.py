"""Project management operations."""

import sqlite3

from taskboard.db.models import Project, User, UserRole, format_dt, new_id, parse_dt, utcnow
from taskboard.errors import NotFoundError, ValidationError

# Roles that see every project without being a member.
PROJECT_WIDE_ROLES = {UserRole.ADMIN, UserRole.PROJECT_MANAGER}


def create_project(
    db: sqlite3.Connection,
    name: str,
    owner: User,
    description: str = "",
) -> Project:
    """Create a new project owned by ``owner``."""
    name = name.strip()
    if not name:
        raise ValidationError("Project name must not be empty")

    project_id = new_id()
    now = format_dt(utcnow())
    db.execute(
        """INSERT INTO projects (id, name, description, owner_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (project_id, name, description, owner.id, now, now),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID, with its member ids."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    members = db.execute(
        "SELECT user_id FROM project_members WHERE project_id = ? ORDER BY user_id",
        (project_id,),
    ).fetchall()
    return _row_to_project(row, [m["user_id"] for m in members])


def list_projects(db: sqlite3.Connection, user: User | None = None) -> list[Project]:
    """List projects, restricted to those ``user`` can access when given."""
    rows = db.execute("SELECT id FROM projects ORDER BY created_at DESC").fetchall()
    projects = [get_project(db, r["id"]) for r in rows]
    if user is None:
        return projects
    return [p for p in projects if _can_access(p, user)]


def add_member(db: sqlite3.Connection, project_id: str, user_id: str) -> Project:
    """Add a user to a project. Adding an existing member is a no-op."""
    if not get_project(db, project_id):
        raise NotFoundError(f"Project with ID {project_id} not found")
    db.execute(
        "INSERT OR IGNORE INTO project_members (project_id, user_id) VALUES (?, ?)",
        (project_id, user_id),
    )
    db.execute(
        "UPDATE projects SET updated_at = ? WHERE id = ?",
        (format_dt(utcnow()), project_id),
    )
    db.commit()
    return get_project(db, project_id)


def has_project_access(db: sqlite3.Connection, project_id: str, user: User) -> bool:
    """True if ``user`` may see tasks of the project.

    Missing projects raise NotFoundError.
    """
    project = get_project(db, project_id)
    if not project:
        raise NotFoundError(f"Project with ID {project_id} not found")
    return _can_access(project, user)


def _can_access(project: Project, user: User) -> bool:
    return (
        user.role in PROJECT_WIDE_ROLES
        or project.owner_id == user.id
        or user.id in project.member_ids
    )


def _row_to_project(row: sqlite3.Row, member_ids: list[str]) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        owner_id=row["owner_id"],
        description=row["description"] or "",
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        member_ids=member_ids,
    )
