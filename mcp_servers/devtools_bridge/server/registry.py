"""
Tool registry with dispatch table for the MCP server.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..errors import NotConnectedError
from .types import HandlerFunc, ToolResult, ToolSpec

if TYPE_CHECKING:
    from ..inspector import Inspector

logger = logging.getLogger("mcp.devtools_bridge.registry")


class ToolRegistry:
    """Registry for tool handlers with connection-failure reporting."""

    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}

    def register(self, name: str, handler: HandlerFunc, requires_connection: bool = True) -> None:
        """Register a tool handler."""
        self._specs[name] = ToolSpec(name=name, handler=handler, requires_connection=requires_connection)

    def register_many(self, handlers: dict[str, tuple[HandlerFunc, bool]]) -> None:
        """Register multiple handlers at once."""
        for name, (handler, requires_connection) in handlers.items():
            self.register(name, handler, requires_connection)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def has(self, name: str) -> bool:
        """Check if handler exists."""
        return name in self._specs

    def names(self) -> list[str]:
        return sorted(self._specs)

    async def dispatch(self, name: str, inspector: Inspector, arguments: dict[str, Any]) -> ToolResult:
        """
        Dispatch tool call to the registered handler.

        Connection failures of tools that need the browser are reported with the
        bridge status attached; every other error propagates to the server.

        Raises:
            KeyError: If tool not found
        """
        spec = self._specs.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")

        if not spec.requires_connection:
            return await spec.handler(inspector, arguments)

        try:
            return await spec.handler(inspector, arguments)
        except NotConnectedError as exc:
            logger.info("tool=%s not connected: %s", name, exc)
            return ToolResult.error(
                str(exc),
                tool=name,
                suggestion=exc.suggestion,
                details={"kind": exc.kind, "bridge": inspector.bridge.status(), **exc.details},
            )


def create_default_registry() -> ToolRegistry:
    """Create registry with all tool handlers registered."""
    from .handlers import ALL_HANDLERS

    registry = ToolRegistry()
    registry.register_many(ALL_HANDLERS)
    return registry
