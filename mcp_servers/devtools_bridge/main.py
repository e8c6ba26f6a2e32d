"""
MCP server for DevTools bridge layout diagnostics.

This module provides the main entry point and JSON-RPC protocol handling over
stdio. Tool dispatch is handled via registry pattern in server/registry.py;
browser access goes through the bridge client and the native host relay.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from collections.abc import Callable
from typing import Any

from .bridge_client import BridgeClient
from .config import BridgeConfig
from .errors import BridgeError
from .inspector import Inspector
from .server.contract import (
    DEFAULT_PROTOCOL_VERSION,
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    initialize_result,
    select_protocol,
    tools_list,
)
from .server.registry import create_default_registry
from .server.types import ToolResult

logger = logging.getLogger("mcp.devtools_bridge")

__all__ = [
    "SUPPORTED_PROTOCOL_VERSIONS",
    "LATEST_PROTOCOL_VERSION",
    "DEFAULT_PROTOCOL_VERSION",
    "McpServer",
    "main",
]


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read JSON-RPC message from stdin; None on EOF, {} for a blank line."""
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    msg = json.loads(line.decode())
    if os.environ.get("MCP_TRACE"):
        logger.info("recv %s", msg)
    return msg if isinstance(msg, dict) else {}


class McpServer:
    """MCP server with registry-based async tool dispatch."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        bridge: BridgeClient | None = None,
        writer: Callable[[dict[str, Any]], None] = _write_message,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self.bridge = bridge or BridgeClient(self.config)
        self.inspector = Inspector(self.bridge)
        self.registry = create_default_registry()
        self._write = writer

    def start(self) -> None:
        # Do not block initialize on relay connectivity; tools report status on failure.
        self.bridge.start()

    async def close(self) -> None:
        await self.bridge.stop()

    def handle_initialize(self, request_id: Any, params: dict[str, Any] | None = None) -> None:
        """Handle initialize request."""
        requested = (params or {}).get("protocolVersion") if isinstance(params, dict) else None
        protocol = select_protocol(requested)
        self._write({"jsonrpc": "2.0", "id": request_id, "result": initialize_result(protocol)})

    def handle_list_tools(self, request_id: Any) -> None:
        """Handle tools/list request."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": {"tools": tools_list()}})

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run one tool and convert every failure into a structured error result."""
        logger.info("tool=%s args=%s", name, arguments)
        try:
            if not name:
                return ToolResult.error("Missing tool name")
            if not self.registry.has(name):
                return ToolResult.error(f"Unknown tool: {name}", tool=name)
            return await self.registry.dispatch(name, self.inspector, arguments)
        except BridgeError as e:
            logger.info("tool_error tool=%s kind=%s reason=%s", name, e.kind, e.reason)
            return ToolResult.error(e.reason, tool=name, suggestion=e.suggestion, details={"kind": e.kind, **e.details})
        except Exception as exc:
            logger.exception("tool_call_failed")
            return ToolResult.error(str(exc) or type(exc).__name__, tool=name)

    async def handle_call_tool(self, request_id: Any, name: str, arguments: dict[str, Any]) -> None:
        result = await self.call_tool(name, arguments)
        self._write(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": result.to_content_list(), "isError": result.is_error},
            }
        )

    async def dispatch(self, message: dict[str, Any]) -> None:
        """Dispatch incoming JSON-RPC message to appropriate handler."""
        if not message:
            return

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            self.handle_initialize(request_id, params)
        elif method is not None and str(method).startswith("notifications/"):
            return
        elif method in ("tools/list", "list_tools"):
            self.handle_list_tools(request_id)
        elif method in ("tools/call", "call_tool"):
            name = params.get("name")
            arguments = params.get("arguments") or params.get("args") or {}
            await self.handle_call_tool(request_id, name or "", arguments)
        elif method == "ping":
            self._write({"jsonrpc": "2.0", "id": request_id, "result": {}})
        else:
            self._write(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": f"Method {method} not found"},
                }
            )


async def serve(server: McpServer) -> None:
    server.start()
    try:
        while True:
            try:
                message = await asyncio.to_thread(_read_message)
            except ValueError as exc:
                logger.warning("invalid JSON-RPC frame: %s", exc)
                server._write({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
                continue
            if message is None:
                break
            await server.dispatch(message)
    finally:
        await server.close()


def main() -> None:
    """Main entry point for MCP server."""
    logging.basicConfig(
        level=getattr(logging, (os.environ.get("MCP_DEVTOOLS_LOG_LEVEL") or "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        server = McpServer()
    except ValueError as exc:
        logger.error("invalid configuration: %s", exc)
        raise SystemExit(2) from None
    try:
        asyncio.run(serve(server))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
