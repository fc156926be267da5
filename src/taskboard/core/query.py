"""Translate task filters and pagination into SQL fragments."""

import json
import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, Mapping

from taskboard.db.models import (
    TaskIssueType,
    TaskPriority,
    TaskStatus,
    User,
    format_dt,
    parse_dt,
)
from taskboard.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_LIMIT = 100

# Higher rank sorts first under the default DESC order.
PRIORITY_RANK = {
    TaskPriority.CRITICAL: 5,
    TaskPriority.URGENT: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 1,
}

STATUS_RANK = {
    TaskStatus.IN_PROGRESS: 7,
    TaskStatus.IN_REVIEW: 6,
    TaskStatus.TESTING: 5,
    TaskStatus.TODO: 4,
    TaskStatus.BACKLOG: 3,
    TaskStatus.DONE: 2,
    TaskStatus.CANCELLED: 1,
}

SORT_COLUMNS = {
    "created_at": "t.created_at",
    "updated_at": "t.updated_at",
    "title": "t.title COLLATE NOCASE",
    "position": "t.position",
    "estimated_hours": "t.estimated_hours",
    "story_points": "t.story_points",
    "start_date": "t.start_date",
}

_BOOL_TRUE = {"true", "1", "yes", "on"}


@dataclass
class TaskFilter:
    status: str | None = None
    priority: str | None = None
    issue_type: str | None = None
    assignee_id: str | None = None
    project_id: str | None = None
    created_by_id: str | None = None
    due_date_from: str | None = None
    due_date_to: str | None = None
    created_from: str | None = None
    created_to: str | None = None
    estimated_hours_min: float | None = None
    estimated_hours_max: float | None = None
    labels: str | None = None
    is_overdue: bool | None = None
    is_blocked: bool | None = None
    is_archived: bool | None = None
    search: str | None = None
    my_tasks: bool | None = None
    unassigned: bool | None = None
    sort_field: str = "created_at"
    sort_order: str = "DESC"

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "TaskFilter":
        """Build a filter from loosely-typed input such as query parameters.

        Unknown keys are ignored.
        """
        kwargs = {}
        for f in fields(cls):
            value = params.get(f.name)
            if value is None or value == "":
                continue
            if f.name in ("is_overdue", "is_blocked", "is_archived", "my_tasks", "unassigned"):
                value = value if isinstance(value, bool) else str(value).lower() in _BOOL_TRUE
            elif f.name in ("estimated_hours_min", "estimated_hours_max"):
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    raise ValidationError(f"{f.name} must be a number") from None
            kwargs[f.name] = value
        return cls(**kwargs)

    def cache_part(self) -> str:
        """Canonical JSON used inside cache keys."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


@dataclass
class Pagination:
    page: int = 1
    limit: int = 10

    def __post_init__(self):
        try:
            self.page = int(self.page)
            self.limit = int(self.limit)
        except (TypeError, ValueError):
            raise ValidationError("Page and limit must be integers") from None
        if self.page < 1:
            raise ValidationError("Page must be at least 1")
        if not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_LIMIT}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def cache_part(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))


def build_where(filters: TaskFilter, user: User, now: datetime) -> tuple[str, list]:
    """Return a WHERE clause (without the keyword) and its parameters.

    The task table is expected to be aliased ``t``. Search relies on the
    ``casefold`` SQL function registered by ``init_db``.
    """
    clauses = ["t.deleted_at IS NULL"]
    params: list = []

    if not user.is_admin:
        clauses.append("(t.created_by_id = ? OR t.assignee_id = ?)")
        params.extend([user.id, user.id])

    for attr, enum_cls in (
        ("status", TaskStatus),
        ("priority", TaskPriority),
        ("issue_type", TaskIssueType),
    ):
        value = getattr(filters, attr)
        if value is None:
            continue
        value = value.value if isinstance(value, enum_cls) else str(value)
        if value not in {m.value for m in enum_cls}:
            logger.warning("Unrecognized %s filter value %r matches no tasks", attr, value)
        clauses.append(f"t.{attr} = ?")
        params.append(value)

    for attr in ("assignee_id", "project_id", "created_by_id"):
        value = getattr(filters, attr)
        if value:
            clauses.append(f"t.{attr} = ?")
            params.append(value)

    for attr, column, op in (
        ("due_date_from", "due_date", ">="),
        ("due_date_to", "due_date", "<="),
        ("created_from", "created_at", ">="),
        ("created_to", "created_at", "<="),
    ):
        value = getattr(filters, attr)
        if value:
            try:
                bound = format_dt(parse_dt(value))
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid date for {attr}: {value!r}") from None
            clauses.append(f"t.{column} {op} ?")
            params.append(bound)

    if filters.estimated_hours_min is not None:
        clauses.append("t.estimated_hours >= ?")
        params.append(filters.estimated_hours_min)
    if filters.estimated_hours_max is not None:
        clauses.append("t.estimated_hours <= ?")
        params.append(filters.estimated_hours_max)

    if filters.labels:
        names = [n.strip() for n in filters.labels.split(",") if n.strip()]
        if names:
            placeholders = ", ".join("?" for _ in names)
            clauses.append(
                "EXISTS (SELECT 1 FROM task_labels tl JOIN labels l ON l.id = tl.label_id"
                f" WHERE tl.task_id = t.id AND l.name IN ({placeholders}))"
            )
            params.extend(names)

    if filters.is_overdue:
        clauses.append("t.due_date IS NOT NULL AND t.due_date < ? AND t.status != ?")
        params.extend([format_dt(now), TaskStatus.DONE.value])

    if filters.is_blocked is not None:
        clauses.append("t.is_blocked = ?")
        params.append(int(filters.is_blocked))

    if filters.is_archived is not None:
        clauses.append("t.is_archived = ?")
        params.append(int(filters.is_archived))

    if filters.my_tasks:
        clauses.append("t.assignee_id = ?")
        params.append(user.id)

    if filters.unassigned:
        clauses.append("t.assignee_id IS NULL")

    if filters.search:
        pattern = "%" + _escape_like(filters.search.casefold()) + "%"
        clauses.append(
            "(casefold(t.title) LIKE ? ESCAPE '\\' OR casefold(COALESCE(t.description, '')) LIKE ? ESCAPE '\\')"
        )
        params.extend([pattern, pattern])

    return " AND ".join(clauses), params


def build_order_by(filters: TaskFilter) -> str:
    """Return an ORDER BY clause (without the keyword).

    A ``created_at DESC`` tie-break is always appended.
    """
    order = "ASC" if str(filters.sort_order).upper() == "ASC" else "DESC"
    field = filters.sort_field or "created_at"

    if field == "priority":
        primary = f"{_rank_case('t.priority', PRIORITY_RANK)} {order}"
    elif field == "status":
        primary = f"{_rank_case('t.status', STATUS_RANK)} {order}"
    elif field == "due_date":
        primary = f"t.due_date IS NULL, t.due_date {order}"
    elif field in SORT_COLUMNS:
        primary = f"{SORT_COLUMNS[field]} {order}"
    else:
        logger.debug("Unknown sort field %r, falling back to created_at", field)
        primary = f"t.created_at {order}"

    return f"{primary}, t.created_at DESC, t.rowid DESC"


def _rank_case(column: str, ranks: dict) -> str:
    whens = " ".join(f"WHEN '{member.value}' THEN {rank}" for member, rank in ranks.items())
    return f"CASE {column} {whens} ELSE 0 END"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
