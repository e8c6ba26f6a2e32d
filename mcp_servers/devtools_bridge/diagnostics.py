"""
Layout diagnostic engine.

Pure functions from an element snapshot (geometry + computed style + viewport)
to a severity-ranked list of issues. Nothing here talks to the browser; the
inspector builds snapshots and the gateway renders reports.

Rule families run in a fixed order (visibility, offscreen, stacking, overflow)
and the final list is stably sorted by severity, so ties keep rule order.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

HIGH = "high"
MEDIUM = "medium"
LOW = "low"
SEVERITY_RANK: dict[str, int] = {HIGH: 0, MEDIUM: 1, LOW: 2}

OFFSCREEN_TOLERANCE_PX = 2
CENTER_TOLERANCE_PX = 2
LOW_Z_INDEX = 100
FULL_VIEWPORT_RATIO = 0.9

CONFIDENCE_ISSUES_FOUND = 0.95
CONFIDENCE_NO_ISSUES = 0.85

_Z_INDEX_RE = re.compile(r"^\s*(-?\d+)")
_ZERO_LENGTH_RE = re.compile(r"^\s*-?(0+(\.0*)?|\.0+)(px|%|em|rem|vw|vh)?\s*$")
_CLIP_PATH_HIDDEN_RE = re.compile(
    r"^(inset\(\s*(100|50)%\s*\)"
    r"|circle\(\s*0(px|%)?(\s.*)?\)"
    r"|ellipse\(\s*0(px|%)?\s+0(px|%)?(\s.*)?\)"
    r"|polygon\(\s*0(px|%)?\s+0(px|%)?\s*\))$"
)
_FUNC_COLOR_RE = re.compile(r"^(rgba?|hsla?|hwb|lab|lch|oklab|oklch|color)\((.*)\)$")
_HEX_COLOR_RE = re.compile(r"^(?:[0-9a-f]{3,4}|[0-9a-f]{6}|[0-9a-f]{8})$")


@dataclass(slots=True, frozen=True)
class Bounds:
    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0
    width: int = 0
    height: int = 0

    @classmethod
    def from_box_model(cls, model: Mapping[str, Any]) -> Bounds:
        """Build bounds from a `DOM.getBoxModel` model (content quad + size)."""
        quad = [float(v) for v in (model.get("content") or [])]
        if len(quad) < 8:
            return cls(width=round(float(model.get("width") or 0)), height=round(float(model.get("height") or 0)))
        return cls(
            left=round(min(quad[0], quad[6])),
            top=round(min(quad[1], quad[3])),
            right=round(max(quad[2], quad[4])),
            bottom=round(max(quad[5], quad[7])),
            width=round(float(model.get("width") or 0)),
            height=round(float(model.get("height") or 0)),
        )

    @classmethod
    def from_rect(cls, left: float, top: float, width: float, height: float) -> Bounds:
        return cls(
            left=round(left),
            top=round(top),
            right=round(left + width),
            bottom=round(top + height),
            width=round(width),
            height=round(height),
        )

    def intersects(self, other: Bounds) -> bool:
        return not (
            self.right < other.left or other.right < self.left or self.bottom < other.top or other.bottom < self.top
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "left": self.left,
            "top": self.top,
            "right": self.right,
            "bottom": self.bottom,
            "width": self.width,
            "height": self.height,
        }


@dataclass(slots=True, frozen=True)
class Viewport:
    width: int
    height: int

    @classmethod
    def from_layout_metrics(cls, metrics: Mapping[str, Any]) -> Viewport:
        layout = metrics.get("layoutViewport") or metrics.get("cssLayoutViewport") or {}
        return cls(width=int(layout.get("clientWidth") or 0), height=int(layout.get("clientHeight") or 0))

    def to_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(slots=True)
class ElementSnapshot:
    bounds: Bounds = field(default_factory=Bounds)
    computed_style: Mapping[str, str] = field(default_factory=dict)
    viewport: Viewport = field(default_factory=lambda: Viewport(0, 0))

    def style(self, name: str) -> str | None:
        value = self.computed_style.get(name)
        if value is None:
            return None
        value = str(value).strip()
        return value or None


@dataclass(slots=True)
class DiagnosticIssue:
    type: str
    severity: str
    message: str
    suggestion: str
    pixels: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "severity": self.severity, "message": self.message}
        if self.pixels is not None:
            out["pixels"] = self.pixels
        out["suggestion"] = self.suggestion
        return out


NO_ISSUES = DiagnosticIssue(
    type="none",
    severity=LOW,
    message="No layout issues detected",
    suggestion="Element appears to be positioned correctly within viewport",
)


def style_map(computed_style: Any) -> dict[str, str]:
    """Normalize `CSS.getComputedStyleForNode` output ([{name, value}, ...]) into a dict."""
    if isinstance(computed_style, Mapping):
        return {str(k): str(v) for k, v in computed_style.items() if v is not None}
    out: dict[str, str] = {}
    for entry in computed_style or []:
        if isinstance(entry, Mapping) and entry.get("name"):
            out[str(entry["name"])] = str(entry.get("value") if entry.get("value") is not None else "")
    return out


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_z_index(value: str | None) -> int | None:
    if value is None or value == "auto":
        return None
    m = _Z_INDEX_RE.match(value)
    return int(m.group(1)) if m else None


def _is_zero_length(value: str | None) -> bool:
    return value is not None and bool(_ZERO_LENGTH_RE.match(value))


def _parse_alpha(raw: str) -> float | None:
    raw = raw.strip()
    try:
        if raw.endswith("%"):
            return float(raw[:-1]) / 100.0
        return float(raw)
    except ValueError:
        return None


def color_alpha(value: str | None) -> float | None:
    """Alpha channel of a CSS color (1.0 for opaque colors, None if unknown)."""
    if value is None:
        return None
    color = value.strip().lower()
    if color == "transparent":
        return 0.0
    if color.startswith("#"):
        digits = color[1:]
        if not _HEX_COLOR_RE.match(digits):
            return None
        if len(digits) == 8:
            return int(digits[6:8], 16) / 255.0
        if len(digits) == 4:
            return int(digits[3] * 2, 16) / 255.0
        return 1.0
    m = _FUNC_COLOR_RE.match(color)
    if not m:
        # Named colors and keywords such as currentcolor.
        return 1.0
    args = m.group(2)
    if "/" in args:
        return _parse_alpha(args.rsplit("/", 1)[1])
    parts = [p for p in re.split(r"[,\s]+", args.strip()) if p]
    if m.group(1) in {"rgba", "hsla", "rgb", "hsl"} and len(parts) == 4:
        return _parse_alpha(parts[3])
    return 1.0


# ── rule families ──────────────────────────────────────────────────────────


def check_visibility(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    issues: list[DiagnosticIssue] = []

    if snapshot.style("display") == "none":
        issues.append(
            DiagnosticIssue(
                "hidden-display",
                HIGH,
                "Element has display: none and is not rendered",
                "Change to display: block/flex/grid or remove display: none to make visible",
            )
        )

    visibility = snapshot.style("visibility")
    if visibility == "hidden":
        issues.append(
            DiagnosticIssue(
                "hidden-visibility",
                HIGH,
                "Element has visibility: hidden (takes up space but invisible)",
                "Change to visibility: visible to make element visible",
            )
        )
    elif visibility == "collapse":
        issues.append(
            DiagnosticIssue(
                "hidden-collapse",
                HIGH,
                "Element has visibility: collapse (hidden, may not take up space)",
                "Change to visibility: visible to make element visible",
            )
        )

    opacity_raw = snapshot.style("opacity")
    opacity = _parse_float(opacity_raw)
    if opacity is not None:
        if opacity == 0:
            issues.append(
                DiagnosticIssue(
                    "hidden-opacity",
                    HIGH,
                    "Element has opacity: 0 (fully transparent)",
                    "Change to opacity: 1 or remove opacity: 0 to make visible",
                )
            )
        elif opacity < 0.1:
            issues.append(
                DiagnosticIssue(
                    "low-opacity",
                    MEDIUM,
                    f"Element has very low opacity: {opacity_raw} (nearly invisible)",
                    "Increase opacity value for better visibility",
                )
            )

    clip_path = snapshot.style("clip-path")
    if clip_path is not None and _CLIP_PATH_HIDDEN_RE.match(clip_path.lower()):
        issues.append(
            DiagnosticIssue(
                "hidden-clip-path",
                MEDIUM,
                f"Element is hidden via clip-path: {clip_path}",
                "Remove or modify clip-path to make element visible",
            )
        )

    if _is_zero_length(snapshot.style("width")) and _is_zero_length(snapshot.style("height")):
        issues.append(
            DiagnosticIssue(
                "zero-dimensions",
                MEDIUM,
                "Element has zero width and height",
                "Set explicit width/height or ensure content can expand the element",
            )
        )

    return issues


def check_offscreen(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    issues: list[DiagnosticIssue] = []
    b = snapshot.bounds
    vw = snapshot.viewport.width
    vh = snapshot.viewport.height
    tol = OFFSCREEN_TOLERANCE_PX

    if b.right > vw + tol:
        px = b.right - vw
        issues.append(
            DiagnosticIssue(
                "offscreen-right",
                HIGH,
                f"Element extends {px}px beyond right edge of viewport ({vw}px)",
                "Add max-width: 100%, use width: fit-content, or apply overflow: hidden to parent",
                pixels=px,
            )
        )
    if b.bottom > vh + tol:
        px = b.bottom - vh
        issues.append(
            DiagnosticIssue(
                "offscreen-bottom",
                MEDIUM,
                f"Element extends {px}px beyond bottom edge of viewport ({vh}px)",
                "Add max-height: 100vh, enable scrolling with overflow: auto, or use position: fixed",
                pixels=px,
            )
        )
    if b.left < -tol:
        px = abs(b.left)
        issues.append(
            DiagnosticIssue(
                "offscreen-left",
                HIGH,
                f"Element starts {px}px to the left of viewport (negative left position)",
                "Check left/margin-left values, use left: 0 or transform: translateX(0)",
                pixels=px,
            )
        )
    if b.top < -tol:
        px = abs(b.top)
        issues.append(
            DiagnosticIssue(
                "offscreen-top",
                HIGH,
                f"Element starts {px}px above viewport (negative top position)",
                "Check top/margin-top values, use top: 0 or transform: translateY(0)",
                pixels=px,
            )
        )
    if b.right < 0 or b.left > vw or b.bottom < 0 or b.top > vh:
        issues.append(
            DiagnosticIssue(
                "completely-offscreen",
                HIGH,
                "Element is completely outside the visible viewport",
                "Check position, transform, and margin values; element may be hidden unintentionally",
            )
        )
    return issues


def _is_zero_offset(value: str | None) -> bool:
    return value in {"0", "0px", "0%"}


def _is_box_centered(snapshot: ElementSnapshot) -> bool:
    """Whether the rendered box sits on either viewport midline."""
    b, vp = snapshot.bounds, snapshot.viewport
    if vp.width <= 0 or vp.height <= 0:
        return False
    off_x = abs((b.left + b.right) / 2 - vp.width / 2)
    off_y = abs((b.top + b.bottom) / 2 - vp.height / 2)
    return off_x <= CENTER_TOLERANCE_PX or off_y <= CENTER_TOLERANCE_PX


def _is_centered(snapshot: ElementSnapshot) -> bool:
    left = snapshot.style("left")
    right = snapshot.style("right")
    top = snapshot.style("top")
    bottom = snapshot.style("bottom")
    transform = (snapshot.style("transform") or "").replace(" ", "")

    # Computed offsets arrive resolved to px; the rendered box is checked first.
    if _is_box_centered(snapshot):
        return True
    centered_x = left == "50%" or "translateX(-50%)" in transform or "translate(-50%" in transform
    centered_y = top == "50%" or "translateY(-50%)" in transform or "translate(-50%,-50%)" in transform
    if centered_x or centered_y:
        return True
    # Symmetric insets (left == right / top == bottom) center the box with margin: auto.
    if left not in (None, "auto") and left == right:
        return True
    if top not in (None, "auto") and top == bottom:
        return True
    # Edge-anchored bars and drawers are not meant to be centered.
    return _is_zero_offset(left) or _is_zero_offset(right)


def check_stacking(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    issues: list[DiagnosticIssue] = []
    position = snapshot.style("position")
    z_raw = snapshot.style("z-index")
    z_index = parse_z_index(z_raw)

    if position in {"fixed", "absolute", "relative"}:
        if z_index is None:
            issues.append(
                DiagnosticIssue(
                    "modal-no-zindex",
                    MEDIUM,
                    f"Positioned element ({position}) has no explicit z-index",
                    "Add z-index value (e.g., z-index: 1000) to ensure modal appears above other content",
                )
            )
        elif z_index < LOW_Z_INDEX:
            issues.append(
                DiagnosticIssue(
                    "modal-low-zindex",
                    LOW,
                    f"Modal has relatively low z-index: {z_index}",
                    "Consider using higher z-index (1000+) for modals to ensure they appear above other positioned elements",
                )
            )

    if position == "fixed" and not _is_centered(snapshot):
        issues.append(
            DiagnosticIssue(
                "modal-not-centered",
                LOW,
                "Fixed element may not be properly centered",
                "Use left: 50%; top: 50%; transform: translate(-50%, -50%) for centering",
            )
        )

    mix_blend = snapshot.style("mix-blend-mode")
    css_filter = snapshot.style("filter")
    will_change = snapshot.style("will-change")
    if (
        snapshot.style("isolation") == "isolate"
        or (mix_blend is not None and mix_blend != "normal")
        or (css_filter is not None and css_filter != "none")
        or (will_change is not None and will_change != "auto")
    ):
        issues.append(
            DiagnosticIssue(
                "stacking-context",
                LOW,
                "Element creates a new stacking context which may affect z-index behavior",
                "Be aware that z-index is relative to the stacking context, not the document",
            )
        )

    if position == "fixed":
        vp = snapshot.viewport
        full_width = snapshot.bounds.width >= vp.width * FULL_VIEWPORT_RATIO
        full_height = snapshot.bounds.height >= vp.height * FULL_VIEWPORT_RATIO
        alpha = color_alpha(snapshot.style("background-color"))
        if full_width and full_height and alpha is not None and alpha >= 1.0:
            issues.append(
                DiagnosticIssue(
                    "backdrop-opaque",
                    LOW,
                    "Full-screen overlay has opaque background",
                    "Consider using semi-transparent background (e.g., rgba(0,0,0,0.5)) for backdrop",
                )
            )

    return issues


def check_overflow(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    issues: list[DiagnosticIssue] = []
    overflow = snapshot.style("overflow")
    overflow_x = snapshot.style("overflow-x")
    overflow_y = snapshot.style("overflow-y")
    values = (overflow, overflow_x, overflow_y)

    if "hidden" in values:
        issues.append(
            DiagnosticIssue(
                "overflow-hidden",
                LOW,
                "Element has overflow: hidden which may clip child content",
                "If content is being cut off, change to overflow: auto or overflow: visible",
            )
        )
    if "scroll" in values or "auto" in values:
        scroll_type = overflow or f"x: {overflow_x}, y: {overflow_y}"
        issues.append(
            DiagnosticIssue(
                "scroll-container",
                LOW,
                f"Element is a scroll container (overflow: {scroll_type})",
                "Ensure scrollable content is accessible and scroll indicators are visible",
            )
        )
    return issues


RULES: tuple[Callable[[ElementSnapshot], list[DiagnosticIssue]], ...] = (
    check_visibility,
    check_offscreen,
    check_stacking,
    check_overflow,
)

ISSUE_TYPES: tuple[str, ...] = (
    "hidden-display",
    "hidden-visibility",
    "hidden-collapse",
    "hidden-opacity",
    "low-opacity",
    "hidden-clip-path",
    "zero-dimensions",
    "offscreen-right",
    "offscreen-bottom",
    "offscreen-left",
    "offscreen-top",
    "completely-offscreen",
    "modal-no-zindex",
    "modal-low-zindex",
    "modal-not-centered",
    "stacking-context",
    "backdrop-opaque",
    "overflow-hidden",
    "scroll-container",
)


def issue_types() -> list[str]:
    return list(ISSUE_TYPES)


def evaluate(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    """Run every rule family in order; unsorted, possibly empty."""
    issues: list[DiagnosticIssue] = []
    for rule in RULES:
        issues.extend(rule(snapshot))
    return issues


def rank(issues: list[DiagnosticIssue]) -> list[DiagnosticIssue]:
    return sorted(issues, key=lambda issue: SEVERITY_RANK.get(issue.severity, len(SEVERITY_RANK)))


def classify(snapshot: ElementSnapshot) -> list[DiagnosticIssue]:
    """Severity-ranked issues, or the single synthetic `none` entry."""
    issues = rank(evaluate(snapshot))
    return issues or [NO_ISSUES]


def has_issue(snapshot: ElementSnapshot, issue_type: str) -> bool:
    return any(issue.type == issue_type for issue in evaluate(snapshot))


@dataclass(slots=True)
class Diagnosis:
    issues: list[DiagnosticIssue]
    found: list[DiagnosticIssue]

    @property
    def confidence(self) -> float:
        return CONFIDENCE_ISSUES_FOUND if self.found else CONFIDENCE_NO_ISSUES

    def summary(self) -> dict[str, int]:
        return {
            "totalIssues": len(self.found),
            "highSeverity": sum(1 for i in self.found if i.severity == HIGH),
            "mediumSeverity": sum(1 for i in self.found if i.severity == MEDIUM),
            "lowSeverity": sum(1 for i in self.found if i.severity == LOW),
        }


def diagnose(snapshot: ElementSnapshot) -> Diagnosis:
    found = rank(evaluate(snapshot))
    return Diagnosis(issues=found or [NO_ISSUES], found=found)


def build_report(selector: str, snapshot: ElementSnapshot, *, timestamp: str | None = None) -> dict[str, Any]:
    """Caller-facing `diagnose_layout` result."""
    diagnosis = diagnose(snapshot)
    return {
        "element": selector,
        "timestamp": timestamp or time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "position": snapshot.bounds.to_dict(),
        "viewport": snapshot.viewport.to_dict(),
        "computedStyles": {
            "display": snapshot.style("display"),
            "position": snapshot.style("position"),
            "width": snapshot.style("width"),
            "height": snapshot.style("height"),
            "overflow": snapshot.style("overflow"),
            "zIndex": snapshot.style("z-index"),
            "visibility": snapshot.style("visibility"),
            "opacity": snapshot.style("opacity"),
        },
        "issues": [issue.to_dict() for issue in diagnosis.issues],
        "confidence": diagnosis.confidence,
        "summary": diagnosis.summary(),
    }
