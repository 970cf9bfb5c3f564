from __future__ import annotations

from datetime import datetime
from typing import Any

from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from taskboard_models import (
    Action,
    ConflictError,
    Task,
    User,
    WriteConflict,
    format_ts,
    parse_ts,
)

ITEM_TYPE_TASK = "task"
ITEM_TYPE_TITLE_GUARD = "titleGuard"
TITLE_GUARD_PREFIX = "title#"
# Single board: every action lives in one partition, ordered by its sort key.
ACTION_FEED_ID = "board"

_TITLE_TAKEN = "Task title must be unique"


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code") or "")


def _cancellation_codes(e: ClientError) -> list[str]:
    reasons = e.response.get("CancellationReasons") or []
    return [str((r or {}).get("Code") or "") for r in reasons if isinstance(r, dict)]


def _guard_key(title: str) -> str:
    return f"{TITLE_GUARD_PREFIX}{title}"


def _task_to_item(task: Task) -> dict[str, Any]:
    return {
        "taskId": task.id,
        "itemType": ITEM_TYPE_TASK,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "priority": task.priority,
        "assignedTo": task.assigned_to or "",
        "lastModifiedAt": format_ts(task.last_modified_at),
        "lastModifiedBy": task.last_modified_by or "",
        "createdAt": format_ts(task.created_at),
    }


def _task_from_item(item: dict[str, Any]) -> Task:
    return Task(
        id=str(item.get("taskId") or ""),
        title=str(item.get("title") or ""),
        description=str(item.get("description") or ""),
        status=str(item.get("status") or ""),
        priority=str(item.get("priority") or ""),
        assigned_to=str(item.get("assignedTo") or "") or None,
        last_modified_at=parse_ts(item.get("lastModifiedAt")),
        last_modified_by=str(item.get("lastModifiedBy") or "") or None,
        created_at=parse_ts(item.get("createdAt") or item.get("lastModifiedAt")),
    )


def _guard_item(task: Task) -> dict[str, Any]:
    return {
        "taskId": _guard_key(task.title),
        "itemType": ITEM_TYPE_TITLE_GUARD,
        "ownerTaskId": task.id,
    }


class DynamoTaskStore:
    """Tasks plus one title-guard item per task in the same table.

    Creating the guard with `attribute_not_exists` inside the same transaction
    as the task is what makes title uniqueness hold under concurrent writers.
    """

    def __init__(self, table: Any) -> None:
        self._table = table
        self._client = table.meta.client

    def list_all(self) -> list[Task]:
        out: list[Task] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "FilterExpression": Attr("itemType").eq(ITEM_TYPE_TASK),
            }
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = self._table.scan(**kwargs)
            for item in page.get("Items", []) or []:
                if isinstance(item, dict) and item.get("itemType") == ITEM_TYPE_TASK:
                    out.append(_task_from_item(item))
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                break
        out.sort(key=lambda t: (t.created_at, t.id))
        return out

    def get(self, task_id: str) -> Task | None:
        if not task_id or task_id.startswith(TITLE_GUARD_PREFIX):
            return None
        resp = self._table.get_item(Key={"taskId": task_id}, ConsistentRead=True)
        item = resp.get("Item")
        if not isinstance(item, dict) or item.get("itemType") != ITEM_TYPE_TASK:
            return None
        return _task_from_item(item)

    def find_by_title(self, title: str) -> Task | None:
        resp = self._table.get_item(Key={"taskId": _guard_key(title)}, ConsistentRead=True)
        guard = resp.get("Item")
        if not isinstance(guard, dict):
            return None
        return self.get(str(guard.get("ownerTaskId") or ""))

    def create(self, task: Task) -> None:
        try:
            self._client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self._table.name,
                            "Item": _task_to_item(task),
                            "ConditionExpression": "attribute_not_exists(taskId)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self._table.name,
                            "Item": _guard_item(task),
                            "ConditionExpression": "attribute_not_exists(taskId)",
                        }
                    },
                ]
            )
        except ClientError as e:
            codes = _cancellation_codes(e)
            if len(codes) > 1 and codes[1] == "ConditionalCheckFailed":
                raise ConflictError(_TITLE_TAKEN) from e
            raise

    def save(self, task: Task, *, previous_title: str, expected_modified_at: datetime) -> None:
        item = _task_to_item(task)
        condition = "attribute_exists(taskId) AND lastModifiedAt = :expected"
        values = {":expected": format_ts(expected_modified_at)}
        if task.title == previous_title:
            try:
                self._table.put_item(
                    Item=item,
                    ConditionExpression=condition,
                    ExpressionAttributeValues=values,
                )
            except ClientError as e:
                if _error_code(e) == "ConditionalCheckFailedException":
                    raise WriteConflict(task.id) from e
                raise
            return

        try:
            self._client.transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self._table.name,
                            "Item": item,
                            "ConditionExpression": condition,
                            "ExpressionAttributeValues": values,
                        }
                    },
                    {
                        "Delete": {
                            "TableName": self._table.name,
                            "Key": {"taskId": _guard_key(previous_title)},
                        }
                    },
                    {
                        "Put": {
                            "TableName": self._table.name,
                            "Item": _guard_item(task),
                            "ConditionExpression": "attribute_not_exists(taskId)",
                        }
                    },
                ]
            )
        except ClientError as e:
            codes = _cancellation_codes(e)
            if codes and codes[0] == "ConditionalCheckFailed":
                raise WriteConflict(task.id) from e
            if len(codes) > 2 and codes[2] == "ConditionalCheckFailed":
                raise ConflictError(_TITLE_TAKEN) from e
            raise

    def delete(self, task: Task) -> None:
        self._client.transact_write_items(
            TransactItems=[
                {"Delete": {"TableName": self._table.name, "Key": {"taskId": task.id}}},
                {"Delete": {"TableName": self._table.name, "Key": {"taskId": _guard_key(task.title)}}},
            ]
        )


class DynamoActionLog:
    def __init__(self, table: Any) -> None:
        self._table = table

    def append(self, action: Action) -> None:
        ts = format_ts(action.timestamp)
        self._table.put_item(
            Item={
                "feedId": ACTION_FEED_ID,
                "tsActionId": f"{ts}#{action.id}",
                "actionId": action.id,
                "type": action.type,
                "taskId": action.task_id or "",
                "userId": action.user_id,
                "username": action.username,
                "details": action.details,
                "timestamp": ts,
            }
        )

    def recent(self, limit: int) -> list[Action]:
        page = self._table.query(
            KeyConditionExpression=Key("feedId").eq(ACTION_FEED_ID),
            ScanIndexForward=False,  # newest first
            Limit=limit,
        )
        out: list[Action] = []
        for item in page.get("Items", []) or []:
            if not isinstance(item, dict):
                continue
            out.append(
                Action(
                    id=str(item.get("actionId") or ""),
                    type=str(item.get("type") or ""),
                    task_id=str(item.get("taskId") or "") or None,
                    user_id=str(item.get("userId") or ""),
                    username=str(item.get("username") or ""),
                    details=str(item.get("details") or ""),
                    timestamp=parse_ts(item.get("timestamp")),
                )
            )
        return out[:limit]


class DynamoUserDirectory:
    def __init__(self, table: Any) -> None:
        self._table = table
        self._cache: dict[str, User | None] = {}

    def list_all(self) -> list[User]:
        out: list[User] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {"ProjectionExpression": "userId, username"}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = self._table.scan(**kwargs)
            for item in page.get("Items", []) or []:
                if not isinstance(item, dict):
                    continue
                user_id = str(item.get("userId") or "").strip()
                if not user_id:
                    continue
                user = User(id=user_id, username=str(item.get("username") or ""))
                self._cache[user_id] = user
                out.append(user)
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                break
        out.sort(key=lambda u: u.id)
        return out

    def get(self, user_id: str) -> User | None:
        if user_id in self._cache:
            return self._cache[user_id]
        resp = self._table.get_item(Key={"userId": user_id})
        item = resp.get("Item")
        user = None
        if isinstance(item, dict):
            user = User(id=user_id, username=str(item.get("username") or ""))
        self._cache[user_id] = user
        return user

    def put(self, user: User, *, joined_at: str) -> None:
        self._table.put_item(
            Item={
                "userId": user.id,
                "username": user.username,
                "joinedAt": joined_at,
            }
        )
        self._cache[user.id] = user
