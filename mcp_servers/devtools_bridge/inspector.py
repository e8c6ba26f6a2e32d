"""
Remote inspection operations behind the MCP tools.

Every operation runs as a sequence of awaited remote commands over the bridge
client. Element lookups walk a single `DOM.getDocument` tree locally instead of
issuing one command per node.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import logging
from collections import Counter
from collections.abc import Iterator
from typing import Any, Protocol

from . import diagnostics
from .bridge_client import ConnectionState
from .config import BridgeConfig
from .diagnostics import Bounds, ElementSnapshot, Viewport
from .errors import ElementNotFoundError, InvalidArgumentError, NotConnectedError, RemoteCommandError, SelectorError

logger = logging.getLogger("mcp.devtools_bridge.inspector")

INSPECTION_DOMAINS: tuple[str, ...] = ("DOM", "CSS", "Page", "Overlay")
DEFAULT_BREAKPOINTS: tuple[int, ...] = (320, 768, 1024, 1920)
RESPONSIVE_HEIGHT = 800
MAX_SCAN_ELEMENTS = 400
MAX_TREE_DEPTH = 10
ELEMENT_NODE = 1

HIGHLIGHT_COLORS: dict[str, tuple[int, int, int]] = {
    "red": (255, 0, 0),
    "green": (0, 200, 0),
    "blue": (0, 90, 255),
    "yellow": (255, 220, 0),
    "orange": (255, 140, 0),
    "purple": (160, 32, 240),
}


class Bridge(Protocol):
    config: BridgeConfig

    @property
    def is_connected(self) -> bool: ...

    async def ensure_connected(self, timeout: float | None = None) -> bool: ...

    async def reconnect(self, timeout: float | None = None) -> bool: ...

    async def dispatch(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any: ...


def validate_selector(selector: Any) -> str:
    """Syntactic sanity check performed before any remote round trip."""
    if not isinstance(selector, str) or not selector:
        raise SelectorError("Selector must be a non-empty string")
    trimmed = selector.strip()
    if not trimmed:
        raise SelectorError("Selector cannot be empty or whitespace only")
    if trimmed[0].isdigit():
        raise SelectorError("Selector cannot start with a number")
    if trimmed.count("[") != trimmed.count("]"):
        raise SelectorError("Selector has unbalanced brackets")
    if trimmed.count("(") != trimmed.count(")"):
        raise SelectorError("Selector has unbalanced parentheses")
    return trimmed


def _attr(node: dict[str, Any], name: str) -> str | None:
    attrs = node.get("attributes") or []
    for i in range(0, len(attrs) - 1, 2):
        if attrs[i] == name:
            return attrs[i + 1]
    return None


def _node_summary(node: dict[str, Any]) -> dict[str, Any]:
    class_name = _attr(node, "class")
    element_id = _attr(node, "id")
    return {
        "nodeId": node.get("nodeId"),
        "nodeName": node.get("nodeName"),
        **({"id": element_id} if element_id else {}),
        **({"className": class_name} if class_name else {}),
    }


def _iter_elements(root: dict[str, Any]) -> Iterator[dict[str, Any]]:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.get("nodeType") == ELEMENT_NODE:
            yield node
        children = list(node.get("children") or [])
        # Documents nest their content in contentDocument for iframes.
        if isinstance(node.get("contentDocument"), dict):
            children.append(node["contentDocument"])
        stack.extend(reversed(children))


def _index_tree(root: dict[str, Any]) -> dict[int, tuple[dict[str, Any], dict[str, Any] | None]]:
    index: dict[int, tuple[dict[str, Any], dict[str, Any] | None]] = {}
    stack: list[tuple[dict[str, Any], dict[str, Any] | None]] = [(root, None)]
    while stack:
        node, parent = stack.pop()
        node_id = node.get("nodeId")
        if isinstance(node_id, int):
            index[node_id] = (node, parent)
        for child in node.get("children") or []:
            stack.append((child, node))
    return index


def _quad_edges(outer: list[float], inner: list[float]) -> dict[str, float]:
    """Per-side thickness between two box-model quads (padding, border, margin)."""
    if len(outer) < 8 or len(inner) < 8:
        return {"top": 0, "right": 0, "bottom": 0, "left": 0}
    return {
        "top": round(inner[1] - outer[1], 2),
        "right": round(outer[2] - inner[2], 2),
        "bottom": round(outer[5] - inner[5], 2),
        "left": round(inner[0] - outer[0], 2),
    }


def _summary(issues: list[dict[str, Any]]) -> dict[str, int]:
    return {
        "totalIssues": len(issues),
        "highSeverity": sum(1 for i in issues if i.get("severity") == diagnostics.HIGH),
        "mediumSeverity": sum(1 for i in issues if i.get("severity") == diagnostics.MEDIUM),
        "lowSeverity": sum(1 for i in issues if i.get("severity") == diagnostics.LOW),
    }


class Inspector:
    """Inspection session over one bridge client."""

    def __init__(self, bridge: Bridge) -> None:
        self.bridge = bridge
        self._ready = False
        self._background: set[asyncio.Task] = set()
        add_listener = getattr(bridge, "add_state_listener", None)
        if callable(add_listener):
            add_listener(self._on_state)

    @property
    def ready(self) -> bool:
        return self._ready

    def _on_state(self, state: ConnectionState) -> None:
        if state is not ConnectionState.CONNECTED and self._ready:
            logger.info("inspector: connection left CONNECTED, inspection session reset")
            self._ready = False

    async def ensure_connection(self) -> None:
        """Connect, falling back to a forced reconnect, before failing."""
        if self.bridge.is_connected:
            return
        cfg = self.bridge.config
        if await self.bridge.ensure_connected(cfg.connect_timeout):
            return
        logger.info("inspector: connection lost, attempting to reconnect")
        if await self.bridge.reconnect(cfg.reconnect_timeout):
            return
        raise NotConnectedError(
            "Browser extension not connected",
            suggestion='Open the DevTools Bridge extension popup and click "Connect to Tab", then retry',
        )

    async def prepare(self) -> None:
        """Ensure a connection and enable inspection domains one at a time.

        The session is marked ready only after every domain was enabled; any
        failure leaves it not ready and propagates.
        """
        await self.ensure_connection()
        if self._ready:
            return
        for domain in INSPECTION_DOMAINS:
            await self.bridge.dispatch(f"{domain}.enable", {})
        self._ready = True

    async def send(self, method: str, params: dict[str, Any] | None = None) -> Any:
        result = await self.bridge.dispatch(method, params or {})
        return result if result is not None else {}

    # ── building blocks ────────────────────────────────────────────────────

    async def document(self) -> dict[str, Any]:
        doc = await self.send("DOM.getDocument", {"depth": -1})
        root = doc.get("root") if isinstance(doc, dict) else None
        if not isinstance(root, dict):
            raise RemoteCommandError("DOM.getDocument returned no root node", method="DOM.getDocument")
        return root

    async def query_node_id(self, selector: str, root: dict[str, Any] | None = None) -> int:
        root = root or await self.document()
        res = await self.send("DOM.querySelector", {"nodeId": root.get("nodeId"), "selector": selector})
        node_id = res.get("nodeId") if isinstance(res, dict) else None
        if not node_id:
            raise ElementNotFoundError(f"Element not found: {selector}", details={"selector": selector})
        return int(node_id)

    async def box_model(self, node_id: int) -> dict[str, Any]:
        res = await self.send("DOM.getBoxModel", {"nodeId": node_id})
        model = res.get("model") if isinstance(res, dict) else None
        if not isinstance(model, dict):
            raise RemoteCommandError("DOM.getBoxModel returned no model", method="DOM.getBoxModel")
        return model

    async def computed_style(self, node_id: int) -> dict[str, str]:
        res = await self.send("CSS.getComputedStyleForNode", {"nodeId": node_id})
        return diagnostics.style_map(res.get("computedStyle") if isinstance(res, dict) else None)

    async def viewport(self) -> Viewport:
        return Viewport.from_layout_metrics(await self.send("Page.getLayoutMetrics", {}))

    async def capture_snapshot(self, node_id: int, viewport: Viewport | None = None) -> ElementSnapshot:
        model = await self.box_model(node_id)
        vp = viewport or await self.viewport()
        style = await self.computed_style(node_id)
        return ElementSnapshot(bounds=Bounds.from_box_model(model), computed_style=style, viewport=vp)

    async def _scan_elements(self, root: dict[str, Any]) -> list[dict[str, Any]]:
        elements = list(_iter_elements(root))
        if len(elements) > MAX_SCAN_ELEMENTS:
            logger.info("inspector: scanning first %d of %d elements", MAX_SCAN_ELEMENTS, len(elements))
            elements = elements[:MAX_SCAN_ELEMENTS]
        return elements

    # ── tools ──────────────────────────────────────────────────────────────

    async def diagnose_layout(self, selector: str) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        snapshot = await self.capture_snapshot(node_id)
        report = diagnostics.build_report(selector, snapshot)
        logger.info("inspector: %s -> %d issue(s)", selector, report["summary"]["totalIssues"])
        return report

    async def connect(self) -> dict[str, Any]:
        await self.prepare()
        status = self.bridge.status() if hasattr(self.bridge, "status") else {}
        return {"success": True, "message": "Connected to browser tab", "bridge": status}

    async def highlight_element(self, selector: str, color: str = "red", duration: int = 3000) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        r, g, b = HIGHLIGHT_COLORS.get((color or "red").strip().lower(), HIGHLIGHT_COLORS["red"])
        await self.send(
            "DOM.highlightNode",
            {
                "nodeId": node_id,
                "highlightConfig": {
                    "showInfo": True,
                    "contentColor": {"r": r, "g": g, "b": b, "a": 0.3},
                    "paddingColor": {"r": 0, "g": 255, "b": 0, "a": 0.3},
                    "borderColor": {"r": 0, "g": 0, "b": 255, "a": 0.5},
                    "marginColor": {"r": 255, "g": 255, "b": 0, "a": 0.3},
                },
            },
        )
        if duration > 0:
            asyncio.get_running_loop().call_later(duration / 1000.0, self._schedule_hide_highlight)
        return {
            "success": True,
            "selector": selector,
            "nodeId": node_id,
            "message": f"Element highlighted for {duration}ms",
            "color": color,
        }

    def _schedule_hide_highlight(self) -> None:
        task = asyncio.get_running_loop().create_task(self._hide_highlight())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _hide_highlight(self) -> None:
        try:
            await self.send("DOM.hideHighlight", {})
        except Exception as exc:
            logger.debug("inspector: hideHighlight failed: %s", exc)

    async def get_element_tree(self, selector: str, depth: int = 3) -> dict[str, Any]:
        selector = validate_selector(selector)
        depth = max(1, min(int(depth), MAX_TREE_DEPTH))
        await self.prepare()
        root = await self.document()
        node_id = await self.query_node_id(selector, root)
        index = _index_tree(root)
        if node_id not in index:
            raise ElementNotFoundError(f"Element not found in document tree: {selector}")
        node, parent = index[node_id]

        parents: list[dict[str, Any]] = []
        cursor = parent
        while cursor is not None and len(parents) < depth:
            if cursor.get("nodeType") == ELEMENT_NODE:
                parents.append(_node_summary(cursor))
            cursor = index.get(cursor.get("nodeId"), (None, None))[1]

        def _children(n: dict[str, Any], level: int) -> list[dict[str, Any]]:
            out = []
            for child in n.get("children") or []:
                if child.get("nodeType") != ELEMENT_NODE:
                    continue
                item = _node_summary(child)
                if level < depth:
                    item["children"] = _children(child, level + 1)
                out.append(item)
            return out

        siblings = []
        if parent is not None:
            siblings = [
                _node_summary(c)
                for c in parent.get("children") or []
                if c.get("nodeType") == ELEMENT_NODE and c.get("nodeId") != node_id
            ]

        return {
            "selector": selector,
            "element": _node_summary(node),
            "parents": parents,
            "siblings": siblings,
            "children": _children(node, 1),
            "depth": depth,
        }

    async def check_accessibility(self, selector: str) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        described = await self.send("DOM.describeNode", {"nodeId": node_id})
        node = described.get("node") if isinstance(described, dict) else None
        node = node if isinstance(node, dict) else {}
        style = await self.computed_style(node_id)

        node_name = str(node.get("nodeName") or "")
        aria_label = _attr(node, "aria-label")
        role = _attr(node, "role")
        issues: list[dict[str, Any]] = []

        if not aria_label and not role and node_name.upper() in {"BUTTON", "A", "INPUT"}:
            issues.append(
                {
                    "type": "missing-aria",
                    "severity": diagnostics.HIGH,
                    "message": f"{node_name} element missing aria-label or role",
                    "suggestion": "Add aria-label or role attribute for screen readers",
                }
            )
        if node_name.upper() == "IMG" and _attr(node, "alt") is None:
            issues.append(
                {
                    "type": "missing-alt",
                    "severity": diagnostics.HIGH,
                    "message": "Image has no alt attribute",
                    "suggestion": 'Add alt text, or alt="" for decorative images',
                }
            )
        if style.get("color") and style.get("background-color"):
            issues.append(
                {
                    "type": "contrast-check",
                    "severity": diagnostics.MEDIUM,
                    "message": "Manual contrast check recommended",
                    "suggestion": "Use a contrast checker to verify WCAG AA compliance",
                    "color": style["color"],
                    "backgroundColor": style["background-color"],
                }
            )
        if style.get("outline-style") == "none" or style.get("outline") in {"none", "0px none"}:
            issues.append(
                {
                    "type": "no-focus-outline",
                    "severity": diagnostics.MEDIUM,
                    "message": "Element has outline: none (may hide focus indicator)",
                    "suggestion": "Provide alternative focus indicator via box-shadow or border",
                }
            )

        return {
            "selector": selector,
            "nodeName": node_name,
            "ariaLabel": aria_label,
            "ariaRole": role,
            "issues": issues,
            "summary": _summary(issues),
        }

    async def get_computed_layout(self, selector: str) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        model = await self.box_model(node_id)
        style = await self.computed_style(node_id)

        content = [float(v) for v in model.get("content") or []]
        padding = [float(v) for v in model.get("padding") or []]
        border = [float(v) for v in model.get("border") or []]
        margin = [float(v) for v in model.get("margin") or []]

        return {
            "selector": selector,
            "bounds": Bounds.from_box_model(model).to_dict(),
            "boxModel": {
                "content": {"width": model.get("width"), "height": model.get("height")},
                "padding": _quad_edges(padding, content),
                "border": _quad_edges(border, padding),
                "margin": _quad_edges(margin, border),
            },
            "display": style.get("display"),
            "position": style.get("position"),
            "boxSizing": style.get("box-sizing"),
            "flexbox": {
                "flexDirection": style.get("flex-direction"),
                "flexWrap": style.get("flex-wrap"),
                "justifyContent": style.get("justify-content"),
                "alignItems": style.get("align-items"),
                "gap": style.get("gap"),
            },
            "grid": {
                "gridTemplateColumns": style.get("grid-template-columns"),
                "gridTemplateRows": style.get("grid-template-rows"),
                "gap": style.get("gap"),
            },
        }

    async def find_overlapping_elements(self, selector: str) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        root = await self.document()
        node_id = await self.query_node_id(selector, root)
        target = Bounds.from_box_model(await self.box_model(node_id))

        overlapping: list[dict[str, Any]] = []
        for elem in await self._scan_elements(root):
            elem_id = elem.get("nodeId")
            if elem_id == node_id or not isinstance(elem_id, int):
                continue
            try:
                bounds = Bounds.from_box_model(await self.box_model(elem_id))
            except RemoteCommandError:
                # Not rendered (display: none, <head> content, ...).
                continue
            if bounds.width <= 0 or bounds.height <= 0 or not target.intersects(bounds):
                continue
            try:
                z_index: int | str = diagnostics.parse_z_index((await self.computed_style(elem_id)).get("z-index")) or "auto"
            except RemoteCommandError:
                z_index = "auto"
            overlapping.append({**_node_summary(elem), "zIndex": z_index, "bounds": bounds.to_dict()})

        overlapping.sort(key=lambda item: item["zIndex"] if isinstance(item["zIndex"], int) else 0, reverse=True)
        return {
            "selector": selector,
            "targetBounds": target.to_dict(),
            "overlappingElements": overlapping,
            "count": len(overlapping),
        }

    async def get_event_listeners(self, selector: str) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        try:
            resolved = await self.send("DOM.resolveNode", {"nodeId": node_id})
            object_id = (resolved.get("object") or {}).get("objectId")
            if not object_id:
                raise RemoteCommandError("DOM.resolveNode returned no objectId", method="DOM.resolveNode")
            res = await self.send("DOMDebugger.getEventListeners", {"objectId": object_id})
        except RemoteCommandError as exc:
            logger.info("inspector: event listeners unavailable: %s", exc)
            return {
                "selector": selector,
                "nodeId": node_id,
                "listeners": [],
                "message": "Event listeners not available via the inspection protocol",
                "suggestion": "Use browser DevTools to inspect event listeners",
            }
        listeners = [l for l in res.get("listeners") or [] if isinstance(l, dict)]
        return {
            "selector": selector,
            "nodeId": node_id,
            "listeners": listeners,
            "summary": {
                "totalListeners": len(listeners),
                "byType": dict(Counter(str(l.get("type")) for l in listeners)),
            },
        }

    async def screenshot_element(self, selector: str, max_width: int = 1600) -> dict[str, Any]:
        selector = validate_selector(selector)
        await self.prepare()
        node_id = await self.query_node_id(selector)
        bounds = Bounds.from_box_model(await self.box_model(node_id))
        clip = {
            "x": bounds.left,
            "y": bounds.top,
            "width": max(1, bounds.width),
            "height": max(1, bounds.height),
            "scale": 1,
        }
        try:
            shot = await self.send("Page.captureScreenshot", {"clip": clip, "format": "png"})
        except RemoteCommandError as exc:
            raise RemoteCommandError(
                f"Screenshot capture failed: {exc}",
                method="Page.captureScreenshot",
                suggestion="Element may be off-screen or not renderable",
            ) from exc
        data_b64 = shot.get("data") if isinstance(shot, dict) else None
        if not isinstance(data_b64, str) or not data_b64:
            raise RemoteCommandError("Screenshot data is empty", method="Page.captureScreenshot")
        data_b64, width, height, scaled = _normalize_png(data_b64, max_width)
        return {
            "selector": selector,
            "success": True,
            "bounds": {"x": clip["x"], "y": clip["y"], "width": clip["width"], "height": clip["height"]},
            "image": {"width": width, "height": height, "scaled": scaled, "mimeType": "image/png"},
            "data": data_b64,
        }

    async def check_responsive(self, selector: str, breakpoints: list[int] | None = None) -> dict[str, Any]:
        selector = validate_selector(selector)
        widths = [int(w) for w in (breakpoints or DEFAULT_BREAKPOINTS) if int(w) > 0]
        await self.prepare()

        results: list[dict[str, Any]] = []
        try:
            for width in widths:
                try:
                    await self.send(
                        "Emulation.setDeviceMetricsOverride",
                        {
                            "width": width,
                            "height": RESPONSIVE_HEIGHT,
                            "deviceScaleFactor": 1,
                            "mobile": width < 768,
                            "hasTouch": False,
                        },
                    )
                    node_id = await self.query_node_id(selector)
                    snapshot = await self.capture_snapshot(node_id)
                except (RemoteCommandError, ElementNotFoundError) as exc:
                    results.append({"breakpoint": width, "error": f"Failed to test breakpoint: {exc}"})
                    continue
                found = [
                    i.to_dict()
                    for i in diagnostics.rank(diagnostics.check_offscreen(snapshot) + diagnostics.check_visibility(snapshot))
                ]
                results.append(
                    {
                        "breakpoint": width,
                        "viewport": snapshot.viewport.to_dict(),
                        "bounds": snapshot.bounds.to_dict(),
                        "issues": found,
                    }
                )
        finally:
            with contextlib.suppress(RemoteCommandError):
                await self.send("Emulation.clearDeviceMetricsOverride", {})

        return {
            "selector": selector,
            "breakpoints": results,
            "summary": {
                "totalBreakpoints": len(results),
                "breakpointsWithIssues": sum(1 for r in results if r.get("issues")),
            },
        }

    async def find_similar_elements(self, issue_type: str) -> dict[str, Any]:
        issue_type = (issue_type or "").strip()
        if issue_type not in diagnostics.ISSUE_TYPES:
            raise InvalidArgumentError(
                f"Unknown issue type: {issue_type or '<empty>'}",
                suggestion=f"Use one of: {', '.join(diagnostics.ISSUE_TYPES)}",
            )
        await self.prepare()
        root = await self.document()
        viewport = await self.viewport()

        similar: list[dict[str, Any]] = []
        for elem in await self._scan_elements(root):
            elem_id = elem.get("nodeId")
            if not isinstance(elem_id, int):
                continue
            try:
                snapshot = await self.capture_snapshot(elem_id, viewport)
            except RemoteCommandError:
                if issue_type != "hidden-display":
                    continue
                # Unrendered nodes have no box model; style alone decides display: none.
                try:
                    snapshot = ElementSnapshot(computed_style=await self.computed_style(elem_id), viewport=viewport)
                except RemoteCommandError:
                    continue
            if diagnostics.has_issue(snapshot, issue_type):
                similar.append({**_node_summary(elem), "issue": issue_type})

        return {
            "issueType": issue_type,
            "similarElements": similar,
            "count": len(similar),
            "suggestion": f"Found {len(similar)} elements with {issue_type} issue",
        }


def _normalize_png(data_b64: str, max_width: int) -> tuple[str, int, int, bool]:
    """Decode the capture, downscale wide images, return (base64, width, height, scaled)."""
    from PIL import Image  # type: ignore[import-not-found]

    raw = base64.b64decode(data_b64)
    img = Image.open(io.BytesIO(raw))
    width, height = img.size
    if max_width <= 0 or width <= max_width:
        return data_b64, width, height, False
    ratio = max_width / float(width)
    img = img.resize((max_width, max(1, round(height * ratio))))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return base64.b64encode(out.getvalue()).decode("ascii"), img.size[0], img.size[1], True
