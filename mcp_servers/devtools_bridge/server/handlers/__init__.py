"""
Tool handlers organized by domain.

All handlers follow the signature: async (inspector, arguments) -> ToolResult
"""

from .connection import CONNECTION_HANDLERS
from .elements import ELEMENT_HANDLERS
from .layout import LAYOUT_HANDLERS

# Aggregate all handlers
ALL_HANDLERS: dict[str, tuple] = {
    **CONNECTION_HANDLERS,
    **LAYOUT_HANDLERS,
    **ELEMENT_HANDLERS,
}

__all__ = [
    "ALL_HANDLERS",
    "CONNECTION_HANDLERS",
    "ELEMENT_HANDLERS",
    "LAYOUT_HANDLERS",
]
