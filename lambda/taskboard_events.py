from __future__ import annotations

import json
import time
from typing import Any

from botocore.exceptions import ClientError


def _log(record: dict[str, Any]) -> None:
    print(json.dumps(record, separators=(",", ":"), sort_keys=True))


class ConnectionStore:
    def __init__(self, table: Any) -> None:
        self._table = table

    def add(self, connection_id: str, *, connected_at: str, user_agent: str = "") -> None:
        self._table.put_item(
            Item={
                "connectionId": connection_id,
                "connectedAt": connected_at,
                "userAgent": user_agent,
            }
        )

    def remove(self, connection_id: str) -> None:
        self._table.delete_item(Key={"connectionId": connection_id})

    def connection_ids(self) -> list[str]:
        out: list[str] = []
        start_key: dict[str, Any] | None = None
        while True:
            kwargs: dict[str, Any] = {"ProjectionExpression": "connectionId"}
            if start_key:
                kwargs["ExclusiveStartKey"] = start_key
            page = self._table.scan(**kwargs)
            for item in page.get("Items", []) or []:
                if not isinstance(item, dict):
                    continue
                cid = str(item.get("connectionId") or "").strip()
                if cid:
                    out.append(cid)
            start_key = page.get("LastEvaluatedKey")
            if not start_key:
                break
        return out


class WebSocketPublisher:
    """Broadcasts `{"event": topic, "data": payload}` to every open connection.

    Delivery is best effort: gone connections are pruned, anything else is
    counted and logged, and one bad connection never stops the fan-out.
    """

    def __init__(self, *, connections: ConnectionStore, management_api: Any) -> None:
        self._connections = connections
        self._api = management_api

    def publish(self, topic: str, payload: Any) -> None:
        start = time.time()
        data = json.dumps({"event": topic, "data": payload}, separators=(",", ":")).encode("utf-8")
        sent = 0
        gone = 0
        failed = 0
        for cid in self._connections.connection_ids():
            try:
                self._api.post_to_connection(ConnectionId=cid, Data=data)
                sent += 1
            except ClientError as e:
                code = str(e.response.get("Error", {}).get("Code") or "")
                if code == "GoneException":
                    gone += 1
                    self._connections.remove(cid)
                else:
                    failed += 1
        _log(
            {
                "event": "taskboard_publish",
                "topic": topic,
                "sent": sent,
                "gone": gone,
                "failed": failed,
                "duration_ms": int((time.time() - start) * 1000),
            }
        )


class NullPublisher:
    """Used when no WebSocket endpoint is configured."""

    def publish(self, topic: str, payload: Any) -> None:
        del payload
        _log({"event": "taskboard_publish", "topic": topic, "outcome": "no_endpoint"})
