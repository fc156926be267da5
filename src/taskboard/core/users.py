"""User records (caller identities)."""

import sqlite3

from taskboard.db.models import User, UserRole, coerce_enum, format_dt, new_id, parse_dt, utcnow
from taskboard.errors import ValidationError


def create_user(
    db: sqlite3.Connection,
    username: str,
    role: str | UserRole = UserRole.USER,
    email: str | None = None,
) -> User:
    """Create a new user."""
    username = username.strip()
    if not username:
        raise ValidationError("Username must not be empty")
    role = coerce_enum(UserRole, role, "role")
    if get_user_by_username(db, username):
        raise ValidationError(f"Username already taken: {username}")

    user_id = new_id()
    db.execute(
        "INSERT INTO users (id, username, email, role, created_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, username, email, role.value, format_dt(utcnow())),
    )
    db.commit()
    return get_user(db, user_id)


def get_user(db: sqlite3.Connection, user_id: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def get_user_by_username(db: sqlite3.Connection, username: str) -> User | None:
    row = db.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    if not row:
        return None
    return _row_to_user(row)


def resolve_user(db: sqlite3.Connection, ref: str) -> User | None:
    """Look a user up by id, falling back to username."""
    return get_user(db, ref) or get_user_by_username(db, ref)


def list_users(db: sqlite3.Connection) -> list[User]:
    rows = db.execute("SELECT * FROM users ORDER BY username").fetchall()
    return [_row_to_user(r) for r in rows]


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        role=UserRole(row["role"]),
        created_at=parse_dt(row["created_at"]),
    )
