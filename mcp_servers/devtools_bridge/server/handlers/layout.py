"""Layout analysis handlers backed by the diagnostic engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..types import ToolResult

if TYPE_CHECKING:
    from ...inspector import Inspector


async def handle_diagnose_layout(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.diagnose_layout(args.get("selector")))


async def handle_check_responsive(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    breakpoints = args.get("breakpoints")
    if not isinstance(breakpoints, list) or not breakpoints:
        breakpoints = None
    return ToolResult.json(await inspector.check_responsive(args.get("selector"), breakpoints))


async def handle_find_similar_elements(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    issue_type = args.get("issueType") or args.get("issue_type") or ""
    return ToolResult.json(await inspector.find_similar_elements(str(issue_type)))


LAYOUT_HANDLERS: dict[str, tuple] = {
    "diagnose_layout": (handle_diagnose_layout, True),
    "check_responsive": (handle_check_responsive, True),
    "find_similar_elements": (handle_find_similar_elements, True),
}
