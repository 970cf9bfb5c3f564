from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen


class TaskboardCliError(Exception):
    pass


class UsageError(TaskboardCliError):
    pass


class OpError(TaskboardCliError):
    pass


class StaleTaskConflict(OpError):
    """The server rejected a write because the task moved on since it was read."""

    def __init__(self, message: str, *, server_version: dict[str, Any], last_modified_by: str) -> None:
        super().__init__(message)
        self.server_version = server_version
        self.last_modified_by = last_modified_by


TASKBOARD_ENDPOINT = "TASKBOARD_ENDPOINT"
TASKBOARD_ID_TOKEN = "TASKBOARD_ID_TOKEN"


@dataclass(frozen=True)
class GlobalOpts:
    endpoint: str
    id_token: str
    pretty: bool = False


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def resolve_global_opts(*, endpoint: str | None, id_token: str | None, pretty: bool) -> GlobalOpts:
    ep = _require_str(
        endpoint or _env_or_none(TASKBOARD_ENDPOINT),
        "taskboard endpoint",
        hint=f"pass --endpoint or set {TASKBOARD_ENDPOINT}",
    ).rstrip("/")
    if not ep.startswith("https://") and not ep.startswith("http://"):
        raise UsageError(f"taskboard endpoint must be an http(s) URL; got {ep!r}")
    tok = _require_str(
        id_token or _env_or_none(TASKBOARD_ID_TOKEN),
        "Cognito ID token",
        hint=f"pass --id-token or set {TASKBOARD_ID_TOKEN}",
    )
    parts = tok.split(".")
    if len(parts) != 3 or any(not p.strip() for p in parts):
        raise UsageError("Cognito ID token is not a JWT (expected 3 dot-separated segments)")
    return GlobalOpts(endpoint=ep, id_token=tok, pretty=pretty)


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True) + "\n")


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _taskboard_request(
    *,
    method: str,
    g: GlobalOpts,
    path: str,
    body_obj: dict[str, Any] | None = None,
) -> dict[str, Any]:
    p = path if path.startswith("/") else f"/{path}"
    url = f"{g.endpoint}{p}"

    body_bytes = None
    headers = {
        "authorization": f"Bearer {g.id_token}",
    }
    if body_obj is not None:
        body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
        headers["content-type"] = "application/json"

    status, _hdrs, data = _http_request(
        method=method,
        url=url,
        headers=headers,
        body=body_bytes,
    )
    text = data.decode("utf-8", errors="replace")
    parsed: Any
    try:
        parsed = json.loads(text) if text else {}
    except Exception:
        parsed = {"raw": text}

    if status == 409 and isinstance(parsed, dict) and isinstance(parsed.get("serverVersion"), dict):
        raise StaleTaskConflict(
            str(parsed.get("message") or "task was modified by another user"),
            server_version=parsed["serverVersion"],
            last_modified_by=str(parsed.get("lastModifiedBy") or "Unknown"),
        )
    if status < 200 or status >= 300:
        if isinstance(parsed, dict):
            msg = str(parsed.get("message") or parsed.get("error") or text).strip()
        else:
            msg = str(parsed)
        raise OpError(f"taskboard request failed: status={status} method={method} path={p} message={msg}")

    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}
