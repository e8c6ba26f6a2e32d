"""Element inspection handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ..types import ToolResult

if TYPE_CHECKING:
    from ...inspector import Inspector


def _int_arg(args: dict[str, Any], name: str, default: int) -> int:
    try:
        return int(args.get(name, default))
    except (TypeError, ValueError):
        return default


async def handle_highlight_element(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    result = await inspector.highlight_element(
        args.get("selector"),
        color=str(args.get("color") or "red"),
        duration=max(0, _int_arg(args, "duration", 3000)),
    )
    return ToolResult.json(result)


async def handle_get_element_tree(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.get_element_tree(args.get("selector"), depth=_int_arg(args, "depth", 3)))


async def handle_check_accessibility(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.check_accessibility(args.get("selector")))


async def handle_get_computed_layout(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.get_computed_layout(args.get("selector")))


async def handle_find_overlapping_elements(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.find_overlapping_elements(args.get("selector")))


async def handle_get_event_listeners(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    return ToolResult.json(await inspector.get_event_listeners(args.get("selector")))


async def handle_screenshot_element(inspector: Inspector, args: dict[str, Any]) -> ToolResult:
    result = await inspector.screenshot_element(args.get("selector"), max_width=_int_arg(args, "max_width", 1600))
    data_b64 = result.pop("data", "")
    return ToolResult.with_image(result, data_b64)


ELEMENT_HANDLERS: dict[str, tuple] = {
    "highlight_element": (handle_highlight_element, True),
    "get_element_tree": (handle_get_element_tree, True),
    "check_accessibility": (handle_check_accessibility, True),
    "get_computed_layout": (handle_get_computed_layout, True),
    "find_overlapping_elements": (handle_find_overlapping_elements, True),
    "get_event_listeners": (handle_get_event_listeners, True),
    "screenshot_element": (handle_screenshot_element, True),
}
