from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any

import boto3
from taskboard_models import User
from taskboard_store import DynamoUserDirectory

USERS_TABLE_NAME = os.environ.get("TASKBOARD_USERS_TABLE", "")

_ddb_resource: Any | None = None


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def _users() -> DynamoUserDirectory:
    return DynamoUserDirectory(_ddb().Table(USERS_TABLE_NAME))


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    """Cognito post-confirmation trigger: record the user so tasks can be assigned to them.

    Cognito requires the event to be returned unchanged.
    """
    attrs = (event.get("request") or {}).get("userAttributes") or {}
    sub = str(attrs.get("sub") or "").strip()
    username = str(event.get("userName") or attrs.get("preferred_username") or "").strip()
    log = {
        "event": "taskboard_user_sync",
        "ts": _now_iso(),
        "trigger_source": str(event.get("triggerSource") or ""),
        "sub": sub,
        "username": username,
    }

    if not USERS_TABLE_NAME:
        log["outcome"] = "misconfigured"
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))
        raise RuntimeError("TASKBOARD_USERS_TABLE missing")
    if not sub:
        log["outcome"] = "missing_sub"
        print(json.dumps(log, separators=(",", ":"), sort_keys=True))
        return event

    _users().put(User(id=sub, username=username or sub), joined_at=_now_iso())
    log["outcome"] = "success"
    print(json.dumps(log, separators=(",", ":"), sort_keys=True))
    return event
