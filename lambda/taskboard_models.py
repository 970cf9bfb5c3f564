from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

STATUS_TODO = "Todo"
STATUS_IN_PROGRESS = "In Progress"
STATUS_DONE = "Done"
VALID_STATUSES = (STATUS_TODO, STATUS_IN_PROGRESS, STATUS_DONE)
ACTIVE_STATUSES = {STATUS_TODO, STATUS_IN_PROGRESS}
# Column headers double as reserved titles.
RESERVED_TITLES = set(VALID_STATUSES)

PRIORITY_LOW = "Low"
PRIORITY_MEDIUM = "Medium"
PRIORITY_HIGH = "High"
VALID_PRIORITIES = (PRIORITY_LOW, PRIORITY_MEDIUM, PRIORITY_HIGH)

TASK_CREATED = "TASK_CREATED"
TASK_UPDATED = "TASK_UPDATED"
TASK_DELETED = "TASK_DELETED"
TASK_ASSIGNED = "TASK_ASSIGNED"
TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
TASK_DRAGGED = "TASK_DRAGGED"
ACTION_TYPES = {
    TASK_CREATED,
    TASK_UPDATED,
    TASK_DELETED,
    TASK_ASSIGNED,
    TASK_STATUS_CHANGED,
    TASK_DRAGGED,
}

EVENT_TASK_ADDED = "taskAdded"
EVENT_TASK_UPDATED = "taskUpdated"
EVENT_TASK_DELETED = "taskDeleted"
EVENT_ACTION_LOGGED = "actionLogged"

RECENT_ACTIONS_LIMIT = 20

_ONE_MS = timedelta(milliseconds=1)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class TaskboardError(Exception):
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TaskboardError):
    status_code = 400
    error_code = "VALIDATION_FAILED"


class ConflictError(TaskboardError):
    status_code = 400
    error_code = "TITLE_CONFLICT"


class StaleTaskError(ConflictError):
    status_code = 409
    error_code = "TASK_CONFLICT"

    def __init__(self, message: str, *, server_version: dict[str, Any], last_modified_by: str) -> None:
        super().__init__(message)
        self.server_version = server_version
        self.last_modified_by = last_modified_by


class NotFoundError(TaskboardError):
    status_code = 404
    error_code = "TASK_NOT_FOUND"


class NoUsersError(TaskboardError):
    status_code = 400
    error_code = "NO_USERS"


class WriteConflict(Exception):
    """A conditional save found the stored lastModifiedAt moved underneath it."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str


@dataclass(frozen=True)
class User:
    id: str
    username: str


@dataclass
class Task:
    id: str
    title: str
    description: str
    status: str
    priority: str
    assigned_to: str | None
    last_modified_at: datetime
    last_modified_by: str | None
    created_at: datetime


@dataclass(frozen=True)
class Action:
    id: str
    type: str
    task_id: str | None
    user_id: str
    username: str
    details: str
    timestamp: datetime


def utc_now() -> datetime:
    # Millisecond precision keeps stamps comparable with what browsers echo back.
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def next_stamp(now: datetime, previous: datetime | None) -> datetime:
    if previous is not None and now <= previous:
        return previous + _ONE_MS
    return now


def format_ts(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_ts(raw: Any) -> datetime:
    """Parse an ISO-8601 timestamp (or epoch milliseconds) into an aware UTC datetime."""
    if isinstance(raw, bool):
        raise ValueError(f"invalid timestamp: {raw!r}")
    if isinstance(raw, (int, float)):
        return _EPOCH + timedelta(milliseconds=raw)
    text = str(raw or "").strip()
    if not text:
        raise ValueError("empty timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def action_to_json(action: Action) -> dict[str, Any]:
    return {
        "id": action.id,
        "type": action.type,
        "taskId": action.task_id,
        "userId": action.user_id,
        "username": action.username,
        "details": action.details,
        "timestamp": format_ts(action.timestamp),
    }
