"""Task mutation pipeline.

Every mutation follows the same shape: validate, apply the business rule,
persist through the task repository, record one or more actions, then fan
the result out through the publisher. Collaborators are passed in so the
Lambda handler, tests and local tooling can each wire their own.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Protocol

from id58 import new_id
from taskboard_models import (
    ACTIVE_STATUSES,
    EVENT_ACTION_LOGGED,
    EVENT_TASK_ADDED,
    EVENT_TASK_DELETED,
    EVENT_TASK_UPDATED,
    PRIORITY_MEDIUM,
    RECENT_ACTIONS_LIMIT,
    RESERVED_TITLES,
    STATUS_TODO,
    TASK_ASSIGNED,
    TASK_CREATED,
    TASK_DELETED,
    TASK_DRAGGED,
    TASK_STATUS_CHANGED,
    TASK_UPDATED,
    VALID_PRIORITIES,
    VALID_STATUSES,
    Action,
    ConflictError,
    Identity,
    NotFoundError,
    NoUsersError,
    StaleTaskError,
    Task,
    User,
    ValidationError,
    WriteConflict,
    action_to_json,
    format_ts,
    next_stamp,
    parse_ts,
    utc_now,
)

UNASSIGNED = "unassigned"
UNKNOWN_USER = "Unknown"
STALE_MESSAGE = "Conflict: Task has been modified by another user."


class TaskStore(Protocol):
    def list_all(self) -> list[Task]: ...

    def get(self, task_id: str) -> Task | None: ...

    def find_by_title(self, title: str) -> Task | None: ...

    def create(self, task: Task) -> None: ...

    def save(self, task: Task, *, previous_title: str, expected_modified_at: datetime) -> None: ...

    def delete(self, task: Task) -> None: ...


class ActionLog(Protocol):
    def append(self, action: Action) -> None: ...

    def recent(self, limit: int) -> list[Action]: ...


class UserDirectory(Protocol):
    def list_all(self) -> list[User]: ...

    def get(self, user_id: str) -> User | None: ...


class Publisher(Protocol):
    def publish(self, topic: str, payload: Any) -> None: ...


def _log(record: dict[str, Any]) -> None:
    print(json.dumps(record, separators=(",", ":"), sort_keys=True))


def _clean_title(raw: Any) -> str:
    title = str(raw or "").strip()
    if not title:
        raise ValidationError("Task title is required")
    if title in RESERVED_TITLES:
        raise ValidationError("Task title cannot be a column name (Todo, In Progress, Done)")
    return title


def _clean_status(raw: Any) -> str:
    if raw is None or raw == "":
        return STATUS_TODO
    status = str(raw)
    if status not in VALID_STATUSES:
        raise ValidationError(f"invalid status: {status} (expected one of: {', '.join(VALID_STATUSES)})")
    return status


def _clean_priority(raw: Any) -> str:
    if raw is None or raw == "":
        return PRIORITY_MEDIUM
    priority = str(raw)
    if priority not in VALID_PRIORITIES:
        raise ValidationError(
            f"invalid priority: {priority} (expected one of: {', '.join(VALID_PRIORITIES)})"
        )
    return priority


def _clean_watermark(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    try:
        return parse_ts(raw)
    except (ValueError, OverflowError) as e:
        raise ValidationError(f"invalid lastModifiedAt: {raw}") from e


class TaskPipeline:
    def __init__(
        self,
        *,
        tasks: TaskStore,
        actions: ActionLog,
        users: UserDirectory,
        publisher: Publisher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = tasks
        self._actions = actions
        self._users = users
        self._publisher = publisher
        self._clock = clock
        self._last_action_at: datetime | None = None

    # Reads

    def list_tasks(self) -> list[dict[str, Any]]:
        return [self.task_to_json(t) for t in self._tasks.list_all()]

    def recent_actions(self) -> list[dict[str, Any]]:
        return [action_to_json(a) for a in self._actions.recent(RECENT_ACTIONS_LIMIT)]

    def task_to_json(self, task: Task) -> dict[str, Any]:
        assigned: dict[str, Any] | None = None
        if task.assigned_to:
            user = self._users.get(task.assigned_to)
            assigned = {"id": task.assigned_to, "username": user.username if user else None}
        return {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status,
            "priority": task.priority,
            "assignedTo": assigned,
            "lastModifiedAt": format_ts(task.last_modified_at),
            "lastModifiedBy": task.last_modified_by,
            "createdAt": format_ts(task.created_at),
        }

    # Mutations

    def create_task(self, actor: Identity, body: dict[str, Any]) -> dict[str, Any]:
        title = _clean_title(body.get("title"))
        status = _clean_status(body.get("status"))
        priority = _clean_priority(body.get("priority"))
        assigned_to = self._clean_assignee(body.get("assignedTo"))

        if self._tasks.find_by_title(title) is not None:
            raise ConflictError("Task title must be unique")

        now = self._clock()
        task = Task(
            id=new_id(),
            title=title,
            description=str(body.get("description") or "").strip(),
            status=status,
            priority=priority,
            assigned_to=assigned_to,
            last_modified_at=now,
            last_modified_by=actor.user_id,
            created_at=now,
        )
        # The repository rejects a concurrent duplicate with ConflictError.
        self._tasks.create(task)

        self._log_action(TASK_CREATED, task.id, actor, f'created task "{task.title}"')
        out = self.task_to_json(task)
        self._publish(EVENT_TASK_ADDED, out)
        return out

    def update_task(self, actor: Identity, task_id: str, body: dict[str, Any]) -> dict[str, Any]:
        title = _clean_title(body.get("title"))
        status = _clean_status(body.get("status"))
        priority = _clean_priority(body.get("priority"))
        assigned_to = self._clean_assignee(body.get("assignedTo"))
        watermark = _clean_watermark(body.get("lastModifiedAt"))

        task = self._require_task(task_id)
        if title != task.title:
            existing = self._tasks.find_by_title(title)
            if existing is not None and existing.id != task.id:
                raise ConflictError("Task title must be unique")

        self._check_watermark(task, watermark)

        old_status = task.status
        old_assigned_to = task.assigned_to
        previous_title = task.title
        expected = task.last_modified_at

        task.title = title
        task.description = str(body.get("description") or "").strip()
        task.status = status
        task.priority = priority
        task.assigned_to = assigned_to
        self._stamp(task, actor)
        self._save(task, previous_title=previous_title, expected_modified_at=expected)

        details = f'updated task "{task.title}"'
        if old_status != task.status:
            details += f" (status changed from {old_status} to {task.status})"
            self._log_action(
                TASK_STATUS_CHANGED,
                task.id,
                actor,
                f'changed status of "{task.title}" to "{task.status}"',
            )
        if old_assigned_to != task.assigned_to:
            new_assignee = self._username_or(task.assigned_to, UNASSIGNED)
            details += f" (assigned to {new_assignee})"
            self._log_action(TASK_ASSIGNED, task.id, actor, f'assigned "{task.title}" to {new_assignee}')
        self._log_action(TASK_UPDATED, task.id, actor, details)

        out = self.task_to_json(task)
        self._publish(EVENT_TASK_UPDATED, out)
        return out

    def delete_task(self, actor: Identity, task_id: str) -> dict[str, Any]:
        task = self._require_task(task_id)
        self._tasks.delete(task)
        self._log_action(TASK_DELETED, task.id, actor, f'deleted task "{task.title}"')
        self._publish(EVENT_TASK_DELETED, task.id)
        return {"message": "Task removed"}

    def drag_drop(self, actor: Identity, task_id: str, body: dict[str, Any]) -> dict[str, Any]:
        raw_status = body.get("newStatus")
        if raw_status is None or raw_status == "":
            raise ValidationError("newStatus is required")
        new_status = _clean_status(raw_status)
        watermark = _clean_watermark(body.get("lastModifiedAt"))

        task = self._require_task(task_id)
        self._check_watermark(task, watermark)

        old_status = task.status
        expected = task.last_modified_at
        task.status = new_status
        self._stamp(task, actor)
        self._save(task, previous_title=task.title, expected_modified_at=expected)

        self._log_action(
            TASK_DRAGGED,
            task.id,
            actor,
            f'dragged task "{task.title}" from "{old_status}" to "{new_status}"',
        )
        out = self.task_to_json(task)
        self._publish(EVENT_TASK_UPDATED, out)
        return out

    def smart_assign(self, actor: Identity, task_id: str) -> dict[str, Any]:
        task = self._require_task(task_id)
        users = sorted(self._users.list_all(), key=lambda u: u.id)
        if not users:
            raise NoUsersError("No users available for assignment.")

        chosen = self.least_loaded_user(users, self._tasks.list_all())
        old_assignee = self._username_or(task.assigned_to, UNASSIGNED)

        expected = task.last_modified_at
        task.assigned_to = chosen.id
        self._stamp(task, actor)
        self._save(task, previous_title=task.title, expected_modified_at=expected)

        self._log_action(
            TASK_ASSIGNED,
            task.id,
            actor,
            f'smart assigned "{task.title}" from {old_assignee} to {chosen.username}',
        )
        out = self.task_to_json(task)
        self._publish(EVENT_TASK_UPDATED, out)
        return out

    @staticmethod
    def least_loaded_user(users: list[User], tasks: list[Task]) -> User:
        """Pick the user with the fewest active tasks; ties go to the earliest user in `users`."""
        counts = {u.id: 0 for u in users}
        for t in tasks:
            if t.status in ACTIVE_STATUSES and t.assigned_to in counts:
                counts[t.assigned_to] += 1
        best = users[0]
        for user in users[1:]:
            if counts[user.id] < counts[best.id]:
                best = user
        return best

    # Helpers

    def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def _clean_assignee(self, raw: Any) -> str | None:
        if isinstance(raw, dict):
            raw = raw.get("id")
        user_id = str(raw or "").strip()
        if not user_id:
            return None
        if self._users.get(user_id) is None:
            raise ValidationError(f"unknown assignee: {user_id}")
        return user_id

    def _username_or(self, user_id: str | None, default: str) -> str:
        if not user_id:
            return default
        user = self._users.get(user_id)
        return user.username if user else default

    def _stamp(self, task: Task, actor: Identity) -> None:
        task.last_modified_at = next_stamp(self._clock(), task.last_modified_at)
        task.last_modified_by = actor.user_id

    def _stale(self, task: Task) -> StaleTaskError:
        return StaleTaskError(
            STALE_MESSAGE,
            server_version=self.task_to_json(task),
            last_modified_by=self._username_or(task.last_modified_by, UNKNOWN_USER),
        )

    def _check_watermark(self, task: Task, watermark: datetime | None) -> None:
        if watermark is not None and watermark < task.last_modified_at:
            raise self._stale(task)

    def _save(self, task: Task, *, previous_title: str, expected_modified_at: datetime) -> None:
        try:
            self._tasks.save(task, previous_title=previous_title, expected_modified_at=expected_modified_at)
        except WriteConflict:
            latest = self._tasks.get(task.id)
            if latest is None:
                raise NotFoundError("Task not found") from None
            raise self._stale(latest) from None

    def _log_action(self, action_type: str, task_id: str | None, actor: Identity, details: str) -> None:
        # Actions from one mutation must not share a timestamp, or the feed order is ambiguous.
        self._last_action_at = next_stamp(self._clock(), self._last_action_at)
        try:
            self._actions.append(
                Action(
                    id=new_id(),
                    type=action_type,
                    task_id=task_id,
                    user_id=actor.user_id,
                    username=actor.username,
                    details=details,
                    timestamp=self._last_action_at,
                )
            )
            self._publisher.publish(EVENT_ACTION_LOGGED, self.recent_actions())
        except Exception as e:
            _log(
                {
                    "event": "taskboard_action_log_failed",
                    "action_type": action_type,
                    "task_id": task_id,
                    "error": {"type": type(e).__name__, "message": str(e)},
                }
            )

    def _publish(self, topic: str, payload: Any) -> None:
        try:
            self._publisher.publish(topic, payload)
        except Exception as e:
            _log(
                {
                    "event": "taskboard_publish_failed",
                    "topic": topic,
                    "error": {"type": type(e).__name__, "message": str(e)},
                }
            )
