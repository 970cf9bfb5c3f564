import importlib
import json
import re
import sys

from botocore.exceptions import ClientError


def _load_handler(monkeypatch):
    monkeypatch.setenv("TASKBOARD_TASKS_TABLE", "TaskboardTasks")
    monkeypatch.setenv("TASKBOARD_ACTIONS_TABLE", "TaskboardActions")
    monkeypatch.setenv("TASKBOARD_USERS_TABLE", "TaskboardUsers")
    monkeypatch.setenv("TASKBOARD_CONNECTIONS_TABLE", "TaskboardConnections")
    monkeypatch.setenv("TASKBOARD_SCHEMA_VERSION", "2026-10-01")
    monkeypatch.delenv("TASKBOARD_WS_ENDPOINT", raising=False)
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import taskboard_handler as mod

    return importlib.reload(mod)


def _claims_event(*, method: str, path: str, body: dict | None = None, sub: str = "user-a", username: str = "alice"):
    return {
        "httpMethod": method,
        "path": path,
        "body": json.dumps(body) if body is not None else None,
        "requestContext": {
            "requestId": "req-1",
            "authorizer": {
                "claims": {
                    "sub": sub,
                    "cognito:username": username,
                }
            },
        },
    }


def _call(mod, **kwargs):
    out = mod.handler(_claims_event(**kwargs), None)
    return int(out["statusCode"]), json.loads(out["body"])


def _wide_event(capsys) -> dict:
    lines = [ln for ln in capsys.readouterr().out.splitlines() if '"taskboard_request"' in ln]
    assert lines
    return json.loads(lines[-1])


def test_create_task_returns_201_with_defaults(monkeypatch, board):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)

    status, body = _call(mod, method="POST", path="/tasks", body={"title": "Design"})

    assert status == 201
    assert body["title"] == "Design"
    assert body["status"] == "Todo"
    assert body["priority"] == "Medium"
    assert body["assignedTo"] is None
    assert body["lastModifiedBy"] == "user-a"
    assert body["requestId"] == "req-1"
    assert body["schemaVersion"] == "2026-10-01"
    assert re.match(r"^[1-9A-HJ-NP-Za-km-z]{22}$", body["id"])
    assert board.actions.actions[0].username == "alice"


def test_list_tasks_and_actions(monkeypatch, board):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)
    _call(mod, method="POST", path="/tasks", body={"title": "One"})
    board.clock.advance()
    _call(mod, method="POST", path="/prod/tasks", body={"title": "Two", "assignedTo": "user-b"})

    status, body = _call(mod, method="GET", path="/tasks")
    assert status == 200
    assert [t["title"] for t in body["items"]] == ["One", "Two"]
    assert body["items"][1]["assignedTo"] == {"id": "user-b", "username": "bob"}

    status, body = _call(mod, method="GET", path="/actions")
    assert status == 200
    assert [a["details"] for a in body["items"]] == ['created task "Two"', 'created task "One"']


def test_validation_and_title_conflict_are_400(monkeypatch, board, capsys):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)

    status, body = _call(mod, method="POST", path="/tasks", body={"title": "Done"})
    assert status == 400
    assert body["errorCode"] == "VALIDATION_FAILED"
    assert _wide_event(capsys)["outcome"] == "client_error"

    _call(mod, method="POST", path="/tasks", body={"title": "Design"})
    status, body = _call(mod, method="POST", path="/tasks", body={"title": "Design"})
    assert status == 400
    assert body["errorCode"] == "TITLE_CONFLICT"
    assert body["message"] == "Task title must be unique"


def test_update_with_stale_watermark_returns_409_with_server_version(monkeypatch, board, capsys):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)
    _, created = _call(mod, method="POST", path="/tasks", body={"title": "Design"})
    board.clock.advance()
    _, current = _call(
        mod,
        method="PUT",
        path=f"/tasks/{created['id']}",
        body={"title": "Design", "priority": "High"},
        sub="user-b",
        username="bob",
    )

    status, body = _call(
        mod,
        method="PUT",
        path=f"/tasks/{created['id']}",
        body={"title": "Design", "priority": "Low", "lastModifiedAt": created["lastModifiedAt"]},
    )

    assert status == 409
    assert body["errorCode"] == "TASK_CONFLICT"
    assert body["message"] == "Conflict: Task has been modified by another user."
    assert body["lastModifiedBy"] == "bob"
    expected = {k: v for k, v in current.items() if k not in {"requestId", "schemaVersion"}}
    assert body["serverVersion"] == expected
    assert _wide_event(capsys)["error_code"] == "TASK_CONFLICT"


def test_delete_then_list_and_missing_is_404(monkeypatch, board):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)
    _, created = _call(mod, method="POST", path="/tasks", body={"title": "Design"})

    status, body = _call(mod, method="DELETE", path=f"/tasks/{created['id']}")
    assert status == 200
    assert body["message"] == "Task removed"

    _, listed = _call(mod, method="GET", path="/tasks")
    assert listed["items"] == []
    assert [a.type for a in board.actions.actions].count("TASK_DELETED") == 1

    status, body = _call(mod, method="DELETE", path=f"/tasks/{created['id']}")
    assert status == 404
    assert body["errorCode"] == "TASK_NOT_FOUND"

    status, body = _call(mod, method="PUT", path="/tasks/not-an-id", body={"title": "X"})
    assert status == 404
    assert body["errorCode"] == "TASK_NOT_FOUND"


def test_drag_drop_and_smart_assign_routes(monkeypatch, board):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)
    _, created = _call(mod, method="POST", path="/tasks", body={"title": "Design"})

    status, body = _call(
        mod, method="PUT", path=f"/tasks/{created['id']}/drag-drop", body={"newStatus": "Done"}
    )
    assert status == 200
    assert body["status"] == "Done"

    status, body = _call(mod, method="POST", path=f"/tasks/{created['id']}/smart-assign")
    assert status == 200
    assert body["assignedTo"] == {"id": "user-a", "username": "alice"}

    board.users.users = {}
    status, body = _call(mod, method="POST", path=f"/tasks/{created['id']}/smart-assign")
    assert status == 400
    assert body["errorCode"] == "NO_USERS"


def test_unknown_route_missing_claims_and_bad_body(monkeypatch, board):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "_pipeline", lambda: board.pipeline)

    status, body = _call(mod, method="PATCH", path="/tasks")
    assert status == 404
    assert body["errorCode"] == "NOT_FOUND"

    event = _claims_event(method="GET", path="/tasks")
    event["requestContext"]["authorizer"] = {}
    out = mod.handler(event, None)
    assert int(out["statusCode"]) == 401

    event = _claims_event(method="POST", path="/tasks")
    event["body"] = "{not json"
    out = mod.handler(event, None)
    assert int(out["statusCode"]) == 400
    assert json.loads(out["body"])["errorCode"] == "INVALID_BODY"


def test_unexpected_failures_are_generic_500(monkeypatch, board, capsys):
    mod = _load_handler(monkeypatch)

    class Exploding:
        def list_tasks(self):
            raise RuntimeError("scan blew up")

        def recent_actions(self):
            raise ClientError(
                {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
                "Query",
            )

    monkeypatch.setattr(mod, "_pipeline", lambda: Exploding())

    status, body = _call(mod, method="GET", path="/tasks")
    assert status == 500
    assert body["errorCode"] == "INTERNAL_ERROR"
    assert body["message"] == "Server error"
    wide = _wide_event(capsys)
    assert wide["outcome"] == "error"
    assert wide["error"]["message"] == "scan blew up"

    status, body = _call(mod, method="GET", path="/actions")
    assert status == 500
    assert body["errorCode"] == "DDB_ERROR"
    assert "slow down" not in json.dumps(body)


def test_missing_table_env_is_misconfigured(monkeypatch):
    monkeypatch.setenv("TASKBOARD_TASKS_TABLE", "")
    monkeypatch.setenv("TASKBOARD_ACTIONS_TABLE", "")
    if "lambda" not in sys.path:
        sys.path.insert(0, "lambda")
    import taskboard_handler as mod

    mod = importlib.reload(mod)
    out = mod.handler(_claims_event(method="GET", path="/tasks"), None)
    assert int(out["statusCode"]) == 500
    assert json.loads(out["body"])["errorCode"] == "MISCONFIGURED"


def test_pipeline_uses_socket_publisher_when_endpoint_configured(monkeypatch):
    mod = _load_handler(monkeypatch)
    monkeypatch.setattr(mod, "WS_ENDPOINT", "https://abc.execute-api.us-east-2.amazonaws.com/prod")

    class FakeTable:
        def __init__(self, name):
            self.name = name
            self.meta = type("Meta", (), {"client": object()})()

    class FakeResource:
        def Table(self, name):
            return FakeTable(name)

    monkeypatch.setattr(mod, "_ddb", lambda: FakeResource())
    monkeypatch.setattr(mod, "_management_api", lambda: object())

    pipeline = mod._pipeline()
    assert isinstance(pipeline._publisher, mod.WebSocketPublisher)

    monkeypatch.setattr(mod, "WS_ENDPOINT", "")
    assert isinstance(mod._pipeline()._publisher, mod.NullPublisher)
