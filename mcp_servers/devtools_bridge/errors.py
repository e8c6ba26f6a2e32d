"""
Error hierarchy for the DevTools bridge.

Every error carries a machine-readable `kind` and an optional `suggestion`
so the gateway can turn it into an actionable tool result.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for bridge failures."""

    kind = "bridge_error"
    default_suggestion: str | None = None

    def __init__(
        self,
        message: str,
        *,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = message
        self.suggestion = suggestion if suggestion is not None else self.default_suggestion
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "reason": self.reason,
            **({"suggestion": self.suggestion} if self.suggestion else {}),
            **({"details": self.details} if self.details else {}),
        }


class FramingError(BridgeError):
    kind = "framing_error"


class NotConnectedError(BridgeError):
    kind = "not_connected"
    default_suggestion = (
        "Start the native host (open the extension popup and connect to the tab), then retry connect_browser"
    )


class ConnectionLostError(NotConnectedError):
    """Raised into every pending request when the relay connection drops."""

    kind = "connection_lost"


class BridgeTimeoutError(BridgeError, TimeoutError):
    kind = "timeout"
    default_suggestion = "The tab did not answer in time; check that the debugger is still attached and retry"


class RemoteCommandError(BridgeError):
    kind = "remote_error"

    def __init__(self, message: str, *, method: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.method = method


class PortInUseError(BridgeError, OSError):
    kind = "port_in_use"
    default_suggestion = "Another relay is already listening; close it or set MCP_DEVTOOLS_PORT"


class NoActivePeerError(BridgeError):
    kind = "no_active_peer"


class InvalidArgumentError(BridgeError, ValueError):
    kind = "invalid_argument"


class SelectorError(InvalidArgumentError):
    kind = "invalid_selector"
    default_suggestion = "Use a valid CSS selector such as '#id', '.class' or 'div > span'"


class ElementNotFoundError(BridgeError):
    kind = "element_not_found"
    default_suggestion = "Check the selector in the page; the element may not be rendered yet"
