"""Connection tool handlers: connect_browser, bridge_status."""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any

from ...errors import InvalidArgumentError
from ..types import ToolResult

if TYPE_CHECKING:
    from ...config import BridgeConfig
    from ...inspector import Inspector

logger = logging.getLogger("mcp.devtools_bridge.handlers")


def _checked_port(config: BridgeConfig, raw: Any) -> int:
    """Validate a requested relay port against a copy of the live config."""
    try:
        port = int(raw)
        if port <= 0:
            raise ValueError(f"Invalid relay port: {raw}")
        dataclasses.replace(config, port=port).validate()
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(
            f"Invalid relay port: {raw!r}",
            suggestion="Use the relay's WebSocket port, between 1 and 65535 (default 9224)",
            details={"port": raw, "currentPort": config.port},
        ) from exc
    return port


async def handle_connect_browser(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    bridge = inspector.bridge
    raw_port = args.get("port")
    if raw_port is not None:
        port = _checked_port(bridge.config, raw_port)
        if port != int(bridge.config.port):
            logger.info("connect_browser: switching relay port %s -> %s", bridge.config.port, port)
            bridge.config.port = port
            await bridge.reconnect()
    return ToolResult.json(await inspector.connect())


async def handle_bridge_status(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json({"bridge": inspector.bridge.status(), "inspectionReady": inspector.ready})


CONNECTION_HANDLERS: dict[str, tuple] = {
    "connect_browser": (handle_connect_browser, True),
    "bridge_status": (handle_bridge_status, False),
}
