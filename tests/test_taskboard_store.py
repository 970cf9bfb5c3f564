from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from taskboard_models import Action, ConflictError, Task, User, WriteConflict
from taskboard_store import (
    ACTION_FEED_ID,
    DynamoActionLog,
    DynamoTaskStore,
    DynamoUserDirectory,
)

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 3, 1, 9, 0, 1, tzinfo=timezone.utc)


def _task(**overrides) -> Task:
    base = dict(
        id="task-1",
        title="Design",
        description="",
        status="Todo",
        priority="Medium",
        assigned_to=None,
        last_modified_at=T0,
        last_modified_by="user-a",
        created_at=T0,
    )
    base.update(overrides)
    return Task(**base)


def _cancelled(*codes: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
            "CancellationReasons": [{"Code": c} for c in codes],
        },
        "TransactWriteItems",
    )


class FakeClient:
    def __init__(self):
        self.transactions = []
        self.raise_error = None

    def transact_write_items(self, *, TransactItems):
        self.transactions.append(TransactItems)
        if self.raise_error is not None:
            raise self.raise_error
        return {}


class FakeMeta:
    def __init__(self, client):
        self.client = client


class FakeTable:
    def __init__(self, name="TaskboardTasks"):
        self.name = name
        self.meta = FakeMeta(FakeClient())
        self.items = {}
        self.scan_pages = []
        self.scan_calls = []
        self.put_calls = []
        self.put_error = None
        self.query_calls = []
        self.query_items = []

    def get_item(self, *, Key, ConsistentRead=False):
        key = next(iter(Key.values()))
        item = self.items.get(key)
        return {"Item": item} if item else {}

    def scan(self, **kwargs):
        self.scan_calls.append(kwargs)
        return self.scan_pages.pop(0)

    def put_item(self, **kwargs):
        self.put_calls.append(kwargs)
        if self.put_error is not None:
            raise self.put_error

    def query(self, **kwargs):
        self.query_calls.append(kwargs)
        return {"Items": self.query_items}


def _task_item(task_id="task-1", title="Design", created="2026-03-01T09:00:00.000Z"):
    return {
        "taskId": task_id,
        "itemType": "task",
        "title": title,
        "description": "",
        "status": "Todo",
        "priority": "Medium",
        "assignedTo": "",
        "lastModifiedAt": created,
        "lastModifiedBy": "user-a",
        "createdAt": created,
    }


def test_create_writes_task_and_title_guard_atomically():
    table = FakeTable()
    store = DynamoTaskStore(table)

    store.create(_task(assigned_to="user-b"))

    [items] = table.meta.client.transactions
    task_put, guard_put = items[0]["Put"], items[1]["Put"]
    assert task_put["TableName"] == "TaskboardTasks"
    assert task_put["Item"]["taskId"] == "task-1"
    assert task_put["Item"]["assignedTo"] == "user-b"
    assert task_put["Item"]["lastModifiedAt"] == "2026-03-01T09:00:00.000Z"
    assert guard_put["Item"] == {"taskId": "title#Design", "itemType": "titleGuard", "ownerTaskId": "task-1"}
    assert guard_put["ConditionExpression"] == "attribute_not_exists(taskId)"


def test_create_maps_guard_collision_to_title_conflict():
    table = FakeTable()
    table.meta.client.raise_error = _cancelled("None", "ConditionalCheckFailed")
    with pytest.raises(ConflictError):
        DynamoTaskStore(table).create(_task())


def test_create_reraises_other_failures():
    table = FakeTable()
    table.meta.client.raise_error = _cancelled("ThrottlingError", "None")
    with pytest.raises(ClientError):
        DynamoTaskStore(table).create(_task())


def test_save_same_title_is_conditional_put():
    table = FakeTable()
    DynamoTaskStore(table).save(_task(last_modified_at=T1, status="Done"), previous_title="Design", expected_modified_at=T0)

    [call] = table.put_calls
    assert call["Item"]["status"] == "Done"
    assert call["Item"]["lastModifiedAt"] == "2026-03-01T09:00:01.000Z"
    assert "lastModifiedAt = :expected" in call["ConditionExpression"]
    assert call["ExpressionAttributeValues"] == {":expected": "2026-03-01T09:00:00.000Z"}
    assert table.meta.client.transactions == []


def test_save_condition_failure_is_write_conflict():
    table = FakeTable()
    table.put_error = ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "nope"}},
        "PutItem",
    )
    with pytest.raises(WriteConflict):
        DynamoTaskStore(table).save(_task(), previous_title="Design", expected_modified_at=T0)


def test_save_with_new_title_moves_the_guard():
    table = FakeTable()
    DynamoTaskStore(table).save(_task(title="Design v2"), previous_title="Design", expected_modified_at=T0)

    [items] = table.meta.client.transactions
    assert items[0]["Put"]["Item"]["title"] == "Design v2"
    assert items[1]["Delete"]["Key"] == {"taskId": "title#Design"}
    assert items[2]["Put"]["Item"]["taskId"] == "title#Design v2"


@pytest.mark.parametrize(
    "codes, expected",
    [
        (("ConditionalCheckFailed", "None", "None"), WriteConflict),
        (("None", "None", "ConditionalCheckFailed"), ConflictError),
    ],
)
def test_save_with_new_title_maps_cancellation_reasons(codes, expected):
    table = FakeTable()
    table.meta.client.raise_error = _cancelled(*codes)
    with pytest.raises(expected):
        DynamoTaskStore(table).save(_task(title="Other"), previous_title="Design", expected_modified_at=T0)


def test_delete_removes_task_and_guard():
    table = FakeTable()
    DynamoTaskStore(table).delete(_task())
    [items] = table.meta.client.transactions
    assert [i["Delete"]["Key"]["taskId"] for i in items] == ["task-1", "title#Design"]


def test_get_and_find_by_title_skip_guards():
    table = FakeTable()
    table.items["task-1"] = _task_item()
    table.items["title#Design"] = {"taskId": "title#Design", "itemType": "titleGuard", "ownerTaskId": "task-1"}
    store = DynamoTaskStore(table)

    task = store.get("task-1")
    assert task.title == "Design"
    assert task.assigned_to is None
    assert task.last_modified_at == T0
    assert store.get("title#Design") is None
    assert store.get("missing") is None
    assert store.find_by_title("Design").id == "task-1"
    assert store.find_by_title("Other") is None


def test_list_all_paginates_and_sorts_by_creation():
    table = FakeTable()
    table.scan_pages = [
        {
            "Items": [_task_item("task-2", "B", "2026-03-01T09:00:02.000Z")],
            "LastEvaluatedKey": {"taskId": "task-2"},
        },
        {"Items": [_task_item("task-1", "A", "2026-03-01T09:00:01.000Z")]},
    ]
    tasks = DynamoTaskStore(table).list_all()
    assert [t.id for t in tasks] == ["task-1", "task-2"]
    assert table.scan_calls[1]["ExclusiveStartKey"] == {"taskId": "task-2"}


def test_action_log_append_and_recent():
    table = FakeTable("TaskboardActions")
    log = DynamoActionLog(table)
    log.append(
        Action(
            id="act-1",
            type="TASK_CREATED",
            task_id="task-1",
            user_id="user-a",
            username="alice",
            details='created task "Design"',
            timestamp=T1,
        )
    )
    [call] = table.put_calls
    assert call["Item"]["feedId"] == ACTION_FEED_ID
    assert call["Item"]["tsActionId"] == "2026-03-01T09:00:01.000Z#act-1"

    table.query_items = [call["Item"]]
    recent = log.recent(20)
    assert table.query_calls[0]["ScanIndexForward"] is False
    assert table.query_calls[0]["Limit"] == 20
    assert recent[0].username == "alice"
    assert recent[0].timestamp == T1


def test_user_directory_lists_sorted_and_caches():
    table = FakeTable("TaskboardUsers")
    table.scan_pages = [{"Items": [{"userId": "u2", "username": "bob"}, {"userId": "u1", "username": "alice"}]}]
    users = DynamoUserDirectory(table)

    assert users.list_all() == [User(id="u1", username="alice"), User(id="u2", username="bob")]
    table.items.clear()
    assert users.get("u2") == User(id="u2", username="bob")
    assert users.get("u9") is None

    users.put(User(id="u3", username="carol"), joined_at="2026-03-01T09:00:00.000000Z")
    assert table.put_calls[0]["Item"]["userId"] == "u3"
    assert users.get("u3").username == "carol"
