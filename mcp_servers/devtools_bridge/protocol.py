"""Envelope types exchanged between the bridge client, the relay and the extension."""

from __future__ import annotations

import json
import time
from typing import Any

COMMAND_REQUEST = "command-request"
COMMAND_RESPONSE = "command-response"
STATUS = "status"
KEEP_ALIVE = "keep-alive"
KEEP_ALIVE_ACK = "keep-alive-ack"


def now_ms() -> int:
    return int(time.time() * 1000)


def command_request(req_id: int, method: str, params: dict[str, Any] | None = None, *, timeout_ms: int | None = None) -> dict[str, Any]:
    return {
        "type": COMMAND_REQUEST,
        "id": int(req_id),
        "method": method,
        "params": params or {},
        **({"timeoutMs": int(timeout_ms)} if timeout_ms else {}),
    }


def command_response(req_id: Any, *, result: Any = None, error: str | None = None) -> dict[str, Any]:
    if error is not None:
        return {"type": COMMAND_RESPONSE, "id": req_id, "error": {"message": str(error)}}
    return {"type": COMMAND_RESPONSE, "id": req_id, "result": result}


def status(connected: bool) -> dict[str, Any]:
    return {"type": STATUS, "connected": bool(connected)}


def keep_alive() -> dict[str, Any]:
    return {"type": KEEP_ALIVE, "timestamp": now_ms()}


def keep_alive_ack() -> dict[str, Any]:
    return {"type": KEEP_ALIVE_ACK, "timestamp": now_ms()}


def parse_envelope(raw: str | bytes) -> dict[str, Any] | None:
    """Decode a WebSocket text message; returns None for anything that is not an envelope."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        return None
    return msg


def dumps(envelope: dict[str, Any]) -> str:
    return json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))


def response_error_message(envelope: dict[str, Any]) -> str | None:
    """Return the error text of a command-response, or None if it succeeded."""
    err = envelope.get("error")
    if err is None:
        return None
    if isinstance(err, dict):
        msg = err.get("message")
        return str(msg) if msg else "Remote command failed"
    return str(err) or "Remote command failed"
