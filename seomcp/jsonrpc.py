"""Newline-delimited JSON-RPC 2.0 framing for the worker's stdio transport."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Union

from mcp import types as mcp_types


RequestId = Union[str, int]

# Protocol revision the worker binary speaks.
WORKER_PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "seomcp-gateway", "version": "0.1.0"}


def build_request(request_id: RequestId, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    msg = mcp_types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
    return msg.model_dump(by_alias=True, exclude_none=True)


def build_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    msg = mcp_types.JSONRPCNotification(jsonrpc="2.0", method=method, params=params)
    return msg.model_dump(by_alias=True, exclude_none=True)


def initialize_request(request_id: RequestId) -> Dict[str, Any]:
    return build_request(
        request_id,
        "initialize",
        {
            "protocolVersion": WORKER_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": dict(CLIENT_INFO),
        },
    )


def tool_call_request(request_id: RequestId, tool_name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return build_request(request_id, "tools/call", {"name": tool_name, "arguments": dict(arguments or {})})


def encode(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def parse_line(line: Union[bytes, str]) -> Optional[Dict[str, Any]]:
    """Decode one stdout line; worker log noise and non-objects yield None."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        msg = json.loads(line)
    except ValueError:
        return None
    return msg if isinstance(msg, dict) else None


def error_text(response: Dict[str, Any]) -> str:
    """Human-readable message from a JSON-RPC error response ('' if none)."""
    err = response.get("error")
    if not err:
        return ""
    if isinstance(err, dict):
        return str(err.get("message") or err.get("error") or err)
    return str(err)


def error_data_text(response: Dict[str, Any]) -> str:
    err = response.get("error")
    if isinstance(err, dict) and isinstance(err.get("data"), str):
        return err["data"]
    return ""
