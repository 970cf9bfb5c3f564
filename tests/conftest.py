import sys
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
LAMBDA_DIR = ROOT / "lambda"
for p in (str(ROOT), str(LAMBDA_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from taskboard_models import ConflictError, User, WriteConflict  # noqa: E402
from taskboard_pipeline import TaskPipeline  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 1000) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms)
        return self.now


class FakeTaskStore:
    """In-memory task repository with the same uniqueness and conditional-save rules as DynamoDB."""

    def __init__(self):
        self.tasks = {}

    def list_all(self):
        return [replace(t) for t in sorted(self.tasks.values(), key=lambda t: (t.created_at, t.id))]

    def get(self, task_id):
        t = self.tasks.get(task_id)
        return replace(t) if t else None

    def find_by_title(self, title):
        for t in self.tasks.values():
            if t.title == title:
                return replace(t)
        return None

    def create(self, task):
        if any(t.title == task.title for t in self.tasks.values()):
            raise ConflictError("Task title must be unique")
        self.tasks[task.id] = replace(task)

    def save(self, task, *, previous_title, expected_modified_at):
        stored = self.tasks.get(task.id)
        if stored is None or stored.last_modified_at != expected_modified_at:
            raise WriteConflict(task.id)
        if task.title != previous_title and any(
            t.title == task.title and t.id != task.id for t in self.tasks.values()
        ):
            raise ConflictError("Task title must be unique")
        self.tasks[task.id] = replace(task)

    def delete(self, task):
        self.tasks.pop(task.id, None)


class FakeActionLog:
    def __init__(self):
        self.actions = []
        self.fail = False

    def append(self, action):
        if self.fail:
            raise RuntimeError("action table unavailable")
        self.actions.append(action)

    def recent(self, limit):
        return sorted(self.actions, key=lambda a: a.timestamp, reverse=True)[:limit]


class FakeUsers:
    def __init__(self, *users):
        self.users = {u.id: u for u in users}

    def list_all(self):
        return list(self.users.values())

    def get(self, user_id):
        return self.users.get(user_id)


class FakePublisher:
    def __init__(self):
        self.events = []
        self.fail = False

    def publish(self, topic, payload):
        if self.fail:
            raise RuntimeError("socket endpoint unavailable")
        self.events.append((topic, payload))

    def topics(self):
        return [t for t, _ in self.events]


@dataclass
class Board:
    pipeline: TaskPipeline
    tasks: FakeTaskStore
    actions: FakeActionLog
    users: FakeUsers
    publisher: FakePublisher
    clock: FakeClock


@pytest.fixture
def board():
    tasks = FakeTaskStore()
    actions = FakeActionLog()
    users = FakeUsers(User(id="user-a", username="alice"), User(id="user-b", username="bob"))
    publisher = FakePublisher()
    clock = FakeClock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc))
    pipeline = TaskPipeline(tasks=tasks, actions=actions, users=users, publisher=publisher, clock=clock)
    return Board(pipeline=pipeline, tasks=tasks, actions=actions, users=users, publisher=publisher, clock=clock)
