from __future__ import annotations

import base64
import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3
from botocore.exceptions import ClientError
from id58 import is_task_id
from id58 import new_id
from taskboard_events import ConnectionStore
from taskboard_events import NullPublisher
from taskboard_events import WebSocketPublisher
from taskboard_models import Identity
from taskboard_models import NotFoundError
from taskboard_models import StaleTaskError
from taskboard_models import TaskboardError
from taskboard_pipeline import TaskPipeline
from taskboard_store import DynamoActionLog
from taskboard_store import DynamoTaskStore
from taskboard_store import DynamoUserDirectory


TASKS_TABLE_NAME = os.environ.get("TASKBOARD_TASKS_TABLE", "")
ACTIONS_TABLE_NAME = os.environ.get("TASKBOARD_ACTIONS_TABLE", "")
USERS_TABLE_NAME = os.environ.get("TASKBOARD_USERS_TABLE", "")
CONNECTIONS_TABLE_NAME = os.environ.get("TASKBOARD_CONNECTIONS_TABLE", "")
WS_ENDPOINT = os.environ.get("TASKBOARD_WS_ENDPOINT", "")
SCHEMA_VERSION = os.environ.get("TASKBOARD_SCHEMA_VERSION", "2026-10-01")

ROUTE_ROOTS = {"tasks", "actions"}

_ddb_resource: Any | None = None
_management_client: Any | None = None


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def _management_api() -> Any:
    global _management_client
    if _management_client is None:
        _management_client = boto3.client("apigatewaymanagementapi", endpoint_url=WS_ENDPOINT)
    return _management_client


def _pipeline() -> TaskPipeline:
    connections = ConnectionStore(_ddb().Table(CONNECTIONS_TABLE_NAME))
    if WS_ENDPOINT:
        publisher: Any = WebSocketPublisher(connections=connections, management_api=_management_api())
    else:
        publisher = NullPublisher()
    return TaskPipeline(
        tasks=DynamoTaskStore(_ddb().Table(TASKS_TABLE_NAME)),
        actions=DynamoActionLog(_ddb().Table(ACTIONS_TABLE_NAME)),
        users=DynamoUserDirectory(_ddb().Table(USERS_TABLE_NAME)),
        publisher=publisher,
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", SCHEMA_VERSION)
    return {
        "statusCode": int(status_code),
        "headers": {
            "content-type": "application/json",
            "cache-control": "no-store",
        },
        "body": json.dumps(payload),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(
        status_code,
        {"errorCode": code, "message": message},
        request_id,
    )


def _request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return new_id()


def _parse_body(event: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    raw = event.get("body")
    if raw is None:
        return {}, None
    if not isinstance(raw, str):
        return None, "request body must be a JSON object"
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except Exception:
            return None, "request body base64 decode failed"
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except Exception:
        return None, "request body must be valid JSON"
    if not isinstance(parsed, dict):
        return None, "request body must be a JSON object"
    return parsed, None


def _segments(event: dict[str, Any]) -> list[str]:
    segments = [s for s in str(event.get("path") or "").split("/") if s]
    # Best effort for stage or base-path prefixes.
    while segments and segments[0] not in ROUTE_ROOTS:
        segments = segments[1:]
    return segments


def _claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    claims = auth.get("claims")
    if isinstance(claims, dict):
        return claims
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


def _actor(event: dict[str, Any]) -> Identity | None:
    c = _claims(event)
    sub = str(c.get("sub") or "").strip()
    if not sub:
        return None
    username = str(c.get("cognito:username") or c.get("username") or "").strip()
    return Identity(user_id=sub, username=username or sub)


def _task_id(raw: str) -> str:
    if not is_task_id(raw):
        raise NotFoundError("Task not found")
    return raw


def _route(
    pipeline: TaskPipeline,
    actor: Identity,
    method: str,
    segments: list[str],
    body: dict[str, Any],
    request_id: str,
) -> dict[str, Any] | None:
    # /actions
    if segments == ["actions"] and method == "GET":
        return _response(200, {"items": pipeline.recent_actions()}, request_id)

    # /tasks
    if segments == ["tasks"]:
        if method == "GET":
            return _response(200, {"items": pipeline.list_tasks()}, request_id)
        if method == "POST":
            return _response(201, pipeline.create_task(actor, body), request_id)

    # /tasks/{id}
    if len(segments) == 2 and segments[0] == "tasks":
        if method == "PUT":
            return _response(200, pipeline.update_task(actor, _task_id(segments[1]), body), request_id)
        if method == "DELETE":
            return _response(200, pipeline.delete_task(actor, _task_id(segments[1])), request_id)

    # /tasks/{id}/drag-drop
    if method == "PUT" and len(segments) == 3 and segments[0] == "tasks" and segments[2] == "drag-drop":
        return _response(200, pipeline.drag_drop(actor, _task_id(segments[1]), body), request_id)

    # /tasks/{id}/smart-assign
    if method == "POST" and len(segments) == 3 and segments[0] == "tasks" and segments[2] == "smart-assign":
        return _response(200, pipeline.smart_assign(actor, _task_id(segments[1])), request_id)

    return None


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _request_id(event)
    method = str(event.get("httpMethod") or "").upper()
    path = str(event.get("path") or "")
    wide_event: dict[str, Any] = {
        "event": "taskboard_request",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "request_id": request_id,
        "method": method,
        "path": path,
    }

    out = _handle(event, request_id, method, path, wide_event)
    status_code = int(out["statusCode"])
    wide_event["status_code"] = status_code
    if status_code >= 500:
        wide_event["outcome"] = "error"
    elif status_code >= 400:
        wide_event["outcome"] = "client_error"
    else:
        wide_event["outcome"] = "success"
    wide_event["duration_ms"] = int((time.time() - start) * 1000)
    print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
    return out


def _handle(
    event: dict[str, Any],
    request_id: str,
    method: str,
    path: str,
    wide_event: dict[str, Any],
) -> dict[str, Any]:
    if not TASKS_TABLE_NAME or not ACTIONS_TABLE_NAME or not USERS_TABLE_NAME or not CONNECTIONS_TABLE_NAME:
        return _error(500, "MISCONFIGURED", "taskboard table env vars are required", request_id)

    actor = _actor(event)
    if actor is None:
        return _error(401, "UNAUTHORIZED", "missing authorizer claims", request_id)
    wide_event["actor_sub"] = actor.user_id

    body, err = _parse_body(event)
    if err:
        return _error(400, "INVALID_BODY", err, request_id)
    assert body is not None

    try:
        out = _route(_pipeline(), actor, method, _segments(event), body, request_id)
        if out is None:
            return _error(404, "NOT_FOUND", f"route not found: {method} {path}", request_id)
        return out
    except StaleTaskError as e:
        wide_event["error_code"] = e.error_code
        return _response(
            e.status_code,
            {
                "errorCode": e.error_code,
                "message": e.message,
                "serverVersion": e.server_version,
                "lastModifiedBy": e.last_modified_by,
            },
            request_id,
        )
    except TaskboardError as e:
        wide_event["error_code"] = e.error_code
        return _error(e.status_code, e.error_code, e.message, request_id)
    except ClientError as e:
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        return _error(500, "DDB_ERROR", "Server error", request_id)
    except Exception as e:
        wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
        return _error(500, "INTERNAL_ERROR", "Server error", request_id)
