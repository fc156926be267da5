"""Data models for taskboard.

Tasks are immutable values: every state transition returns a new ``Task``
and persistence is left to ``taskboard.core.store``.
"""

import math
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from taskboard.errors import ValidationError

TITLE_MAX_LENGTH = 200


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    TESTING = "testing"
    DONE = "done"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class TaskIssueType(str, Enum):
    FEATURE = "feature"
    BUG = "bug"
    IMPROVEMENT = "improvement"
    DOCUMENTATION = "documentation"
    REFACTORING = "refactoring"
    TESTING = "testing"
    CLIENT_FEEDBACK = "client_feedback"


class UserRole(str, Enum):
    ADMIN = "admin"
    PROJECT_MANAGER = "project_manager"
    DEVELOPER = "developer"
    CLIENT = "client"
    USER = "user"


class ActivityType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    COMMENT_ADDED = "comment_added"
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    ARCHIVED = "archived"
    UNARCHIVED = "unarchived"
    TIME_LOGGED = "time_logged"
    BULK_UPDATED = "bulk_updated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def format_dt(val: datetime | None) -> str | None:
    """Serialize a datetime as a UTC ISO-8601 string.

    All stored timestamps share this format so they compare correctly as text.
    """
    if val is None:
        return None
    if val.tzinfo is None:
        val = val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_dt(val: str | datetime | None) -> datetime | None:
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        dt = val
    else:
        dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def coerce_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    """Return the enum member for ``value`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {allowed}"
        ) from None


@dataclass(frozen=True)
class User:
    id: str
    username: str
    email: str | None = None
    role: UserRole = UserRole.USER
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    owner_id: str
    description: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    member_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    created_by_id: str
    description: str = ""
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.MEDIUM
    issue_type: TaskIssueType = TaskIssueType.FEATURE
    project_id: str | None = None
    assignee_id: str | None = None
    parent_task_id: str | None = None
    start_date: datetime | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    estimated_hours: float | None = None
    actual_hours: float = 0.0
    story_points: int | None = None
    position: int = 0
    is_blocked: bool = False
    blocked_reason: str | None = None
    is_archived: bool = False
    metadata: dict = field(default_factory=dict)
    labels: list[str] = field(default_factory=list)
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.due_date is not None
            and self.due_date < now
            and self.status != TaskStatus.DONE
        )

    # ── Transitions ───────────────────────────────────────────────────────

    def update_status(self, status, now: datetime) -> "Task":
        status = coerce_enum(TaskStatus, status, "status")
        if status != TaskStatus.DONE:
            completed_at = None
        elif self.status == TaskStatus.DONE and self.completed_at is not None:
            completed_at = self.completed_at
        else:
            completed_at = now
        return replace(self, status=status, completed_at=completed_at)

    def update_priority(self, priority) -> "Task":
        return replace(self, priority=coerce_enum(TaskPriority, priority, "priority"))

    def assign_to(self, user_id: str) -> "Task":
        return replace(self, assignee_id=user_id)

    def unassign(self) -> "Task":
        return replace(self, assignee_id=None)

    def add_time_spent(self, hours: float) -> "Task":
        if hours is None or not math.isfinite(hours) or hours <= 0:
            raise ValidationError("Hours must be greater than 0")
        return replace(self, actual_hours=round(self.actual_hours + float(hours), 4))

    def set_blocked(self, reason: str) -> "Task":
        return replace(self, is_blocked=True, blocked_reason=reason)

    def unblock(self) -> "Task":
        return replace(self, is_blocked=False, blocked_reason=None)

    def archive(self) -> "Task":
        return replace(self, is_archived=True)

    def unarchive(self) -> "Task":
        return replace(self, is_archived=False)

    def apply_changes(self, changes: dict, now: datetime) -> "Task":
        """Apply a partial update of editable fields.

        A status change goes through ``update_status`` so ``completed_at``
        stays consistent.
        """
        clean = validate_task_fields(changes, partial=True)
        status = clean.pop("status", None)
        task = replace(self, **clean)
        if status is not None:
            task = task.update_status(status, now)
        return task


@dataclass(frozen=True)
class TaskActivity:
    id: str
    task_id: str
    user_id: str
    type: ActivityType
    description: str = ""
    metadata: dict | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class TaskComment:
    id: str
    task_id: str
    user_id: str
    content: str
    created_at: datetime | None = None


# ── Validation ────────────────────────────────────────────────────────────────

EDITABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "issue_type",
    "project_id",
    "assignee_id",
    "parent_task_id",
    "start_date",
    "due_date",
    "estimated_hours",
    "story_points",
    "position",
    "metadata",
    "labels",
}


def validate_task_fields(values: dict, partial: bool = False) -> dict:
    """Check and normalize task field values.

    Unknown keys are rejected. With ``partial`` the title may be absent.
    """
    unknown = set(values) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    clean = dict(values)

    if "title" in clean or not partial:
        title = clean.get("title")
        if title is not None and not isinstance(title, str):
            raise ValidationError("Title must be a string")
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title must not be empty")
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters")
        clean["title"] = title

    if "description" in clean and clean["description"] is None:
        clean["description"] = ""

    if clean.get("status") is not None:
        clean["status"] = coerce_enum(TaskStatus, clean["status"], "status")
    else:
        clean.pop("status", None)
    if clean.get("priority") is not None:
        clean["priority"] = coerce_enum(TaskPriority, clean["priority"], "priority")
    else:
        clean.pop("priority", None)
    if clean.get("issue_type") is not None:
        clean["issue_type"] = coerce_enum(TaskIssueType, clean["issue_type"], "issue type")
    else:
        clean.pop("issue_type", None)

    for key in ("start_date", "due_date"):
        if key in clean:
            try:
                clean[key] = parse_dt(clean[key])
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid date for {key}: {clean[key]!r}") from None

    if clean.get("estimated_hours") is not None:
        try:
            hours = float(clean["estimated_hours"])
        except (TypeError, ValueError):
            raise ValidationError("Estimated hours must be a number") from None
        if not math.isfinite(hours) or hours < 0:
            raise ValidationError("Estimated hours must be a finite, non-negative number")
        clean["estimated_hours"] = hours

    if clean.get("story_points") is not None:
        points = clean["story_points"]
        if isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise ValidationError("Story points must be a non-negative integer")

    if clean.get("position") is not None:
        try:
            clean["position"] = int(clean["position"])
        except (TypeError, ValueError):
            raise ValidationError("Position must be an integer") from None
    else:
        clean.pop("position", None)

    if "metadata" in clean:
        if clean["metadata"] is None:
            clean["metadata"] = {}
        elif not isinstance(clean["metadata"], dict):
            raise ValidationError("Metadata must be a mapping")

    if "labels" in clean:
        if clean["labels"] is not None and not isinstance(clean["labels"], (list, tuple)):
            raise ValidationError("Labels must be a list of names")
        clean["labels"] = sorted({str(name).strip() for name in clean["labels"] or [] if str(name).strip()})

    return clean


def new_task(values: dict, created_by_id: str, now: datetime) -> Task:
    """Build a validated Task from user-supplied values."""
    clean = validate_task_fields(values)
    status = clean.pop("status", TaskStatus.BACKLOG)
    task = Task(
        id=new_id(),
        created_by_id=created_by_id,
        created_at=now,
        updated_at=now,
        **clean,
    )
    return task.update_status(status, now)


# ── Serialization ─────────────────────────────────────────────────────────────

_DATETIME_FIELDS = {
    "start_date",
    "due_date",
    "completed_at",
    "created_at",
    "updated_at",
    "deleted_at",
}

_ENUM_FIELDS = {
    "status": TaskStatus,
    "priority": TaskPriority,
    "issue_type": TaskIssueType,
    "type": ActivityType,
    "role": UserRole,
}


def to_dict(obj) -> dict:
    """JSON-ready dict for any model dataclass."""
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = format_dt(value)
        elif isinstance(value, Enum):
            data[key] = value.value
    return data


def from_dict(cls, data: dict):
    """Inverse of ``to_dict`` for the given model class."""
    names = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in names:
            continue
        if key in _DATETIME_FIELDS:
            value = parse_dt(value)
        elif key in _ENUM_FIELDS and value is not None:
            value = _ENUM_FIELDS[key](value)
        kwargs[key] = value
    return cls(**kwargs)
