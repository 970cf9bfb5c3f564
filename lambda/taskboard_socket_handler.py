from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

import boto3
from taskboard_events import ConnectionStore

CONNECTIONS_TABLE_NAME = os.environ.get("TASKBOARD_CONNECTIONS_TABLE", "")
SCHEMA_VERSION = os.environ.get("TASKBOARD_SCHEMA_VERSION", "2026-10-01")

_ddb_resource: Any | None = None


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def _connections() -> ConnectionStore:
    return ConnectionStore(_ddb().Table(CONNECTIONS_TABLE_NAME))


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _header(event: dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return ""
    for k, v in headers.items():
        if str(k).lower() == name:
            return str(v or "").strip()
    return ""


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    route_key = str(rc.get("routeKey") or "")
    connection_id = str(rc.get("connectionId") or "").strip()
    log = {
        "event": "taskboard_socket",
        "schema_version": SCHEMA_VERSION,
        "ts": _now_iso(),
        "route_key": route_key,
        "connection_id": connection_id,
    }

    if not CONNECTIONS_TABLE_NAME:
        log["outcome"] = "misconfigured"
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))
        return {"statusCode": 500, "body": "TASKBOARD_CONNECTIONS_TABLE missing"}
    if not connection_id:
        log["outcome"] = "missing_connection_id"
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))
        return {"statusCode": 400, "body": "missing connection id"}

    if route_key == "$connect":
        _connections().add(
            connection_id,
            connected_at=_now_iso(),
            user_agent=_header(event, "user-agent"),
        )
        log["outcome"] = "connected"
        status, body = 200, "connected"
    elif route_key == "$disconnect":
        _connections().remove(connection_id)
        log["outcome"] = "disconnected"
        status, body = 200, "disconnected"
    else:
        # Clients only listen; anything they send is acknowledged and dropped.
        log["outcome"] = "ignored"
        status, body = 200, json.dumps({"event": "ack"})

    print(json.dumps(log, separators=(",", ":"), sort_keys=True))
    return {"statusCode": status, "body": body}
