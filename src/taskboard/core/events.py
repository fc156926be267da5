"""In-process domain event bus.

Emitting is fire-and-forget: a failing subscriber is logged and never
affects the operation that emitted the event.
"""

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

TASK_CREATED = "task.created"
TASK_UPDATED = "task.updated"
TASK_DELETED = "task.deleted"
TASK_STATUS_CHANGED = "task.status_changed"
TASK_PRIORITY_CHANGED = "task.priority_changed"
TASK_ASSIGNED = "task.assigned"
TASK_UNASSIGNED = "task.unassigned"
TASK_TIME_LOGGED = "task.time_logged"
TASK_BLOCKED = "task.blocked"
TASK_UNBLOCKED = "task.unblocked"
TASK_ARCHIVED = "task.archived"
TASK_UNARCHIVED = "task.unarchived"
TASK_COMMENT_ADDED = "task.comment_added"
TASKS_BULK_UPDATED = "tasks.bulk_updated"

WILDCARD = "*"

Handler = Callable[[str, dict[str, Any]], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_name`` (or ``"*"`` for all events)."""
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(event_name, [])) + list(self._handlers.get(WILDCARD, []))
        logger.debug("Emitting %s to %d handler(s)", event_name, len(handlers))
        for handler in handlers:
            try:
                handler(event_name, payload)
            except Exception:
                logger.exception("Event handler failed for %s", event_name)


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self, bus: EventBus | None = None):
        self.events: list[tuple[str, dict[str, Any]]] = []
        if bus is not None:
            bus.subscribe(WILDCARD, self)

    def __call__(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]
