"""Tool schema definitions."""

from __future__ import annotations

from typing import Any

from ..diagnostics import issue_types
from ..inspector import DEFAULT_BREAKPOINTS

_SELECTOR: dict[str, Any] = {"type": "string", "description": "CSS selector"}


def _selector_tool(name: str, description: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "inputSchema": {
            "type": "object",
            "properties": {"selector": dict(_SELECTOR), **(extra or {})},
            "required": ["selector"],
        },
    }


DIAGNOSE_LAYOUT_TOOL: dict[str, Any] = {
    "name": "diagnose_layout",
    "description": """Analyze why a UI element has layout issues in the attached tab.
Returns position, viewport, key computed styles and a severity-ranked issue list.

RESPONSE EXAMPLE:
{
  "element": "#modal",
  "position": {"left": -9999, "top": 120, "right": -9599, "bottom": 520, "width": 400, "height": 400},
  "viewport": {"width": 1280, "height": 800},
  "issues": [{"type": "offscreen-left", "severity": "high", "pixels": 9999, "message": "...", "suggestion": "..."}],
  "confidence": 0.95,
  "summary": {"totalIssues": 1, "highSeverity": 1, "mediumSeverity": 0, "lowSeverity": 0}
}""",
    "inputSchema": {
        "type": "object",
        "properties": {
            "selector": {
                "type": "string",
                "description": "CSS selector for the element to diagnose (e.g., '#modal', '.button', 'div.card')",
            },
        },
        "required": ["selector"],
    },
}

CONNECT_BROWSER_TOOL: dict[str, Any] = {
    "name": "connect_browser",
    "description": "Connect to the browser through the DevTools Bridge relay. Requires the extension to be attached to a tab.",
    "inputSchema": {
        "type": "object",
        "properties": {
            "port": {"type": "number", "description": "Relay WebSocket port (default: 9224)", "default": 9224},
        },
    },
}

BRIDGE_STATUS_TOOL: dict[str, Any] = {
    "name": "bridge_status",
    "description": "Report relay connection state without contacting the browser.",
    "inputSchema": {"type": "object", "properties": {}},
}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    DIAGNOSE_LAYOUT_TOOL,
    CONNECT_BROWSER_TOOL,
    _selector_tool(
        "highlight_element",
        "Visually highlight an element in the browser with colored overlays.",
        {
            "color": {"type": "string", "description": "Color name (default: red)", "default": "red"},
            "duration": {"type": "number", "description": "Duration in ms, 0 keeps it (default: 3000)", "default": 3000},
        },
    ),
    _selector_tool(
        "get_element_tree",
        "Get DOM tree structure around an element (parents, siblings, children).",
        {"depth": {"type": "number", "description": "Tree depth (default: 3)", "default": 3}},
    ),
    _selector_tool("check_accessibility", "Audit element for accessibility issues (ARIA, alt text, contrast, focus)."),
    _selector_tool("get_computed_layout", "Get detailed layout info (flexbox, grid, margin/padding/border breakdown)."),
    _selector_tool("find_overlapping_elements", "Find all elements overlapping a given element, highest z-index first."),
    _selector_tool("get_event_listeners", "List event listeners attached to an element."),
    _selector_tool(
        "screenshot_element",
        "Capture a PNG screenshot of a specific element.",
        {"max_width": {"type": "number", "description": "Downscale wider captures (default: 1600)", "default": 1600}},
    ),
    _selector_tool(
        "check_responsive",
        "Test element at different viewport widths.",
        {
            "breakpoints": {
                "type": "array",
                "items": {"type": "number"},
                "description": f"Viewport widths to test (default: {list(DEFAULT_BREAKPOINTS)})",
            }
        },
    ),
    {
        "name": "find_similar_elements",
        "description": "Find other elements on the page with the same layout issue type.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "issueType": {
                    "type": "string",
                    "enum": issue_types(),
                    "description": "Issue type to search for (e.g., 'offscreen-right', 'hidden-display')",
                },
            },
            "required": ["issueType"],
        },
    },
    BRIDGE_STATUS_TOOL,
]
