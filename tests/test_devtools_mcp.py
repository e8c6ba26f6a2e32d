"""
Tests for the DevTools bridge MCP server.

Tests cover:
- Configuration parsing and validation
- Server initialization and tool listing
- Tool dispatch and structured error results
- Protocol handling
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from mcp_servers.devtools_bridge import main as mcp_server
from mcp_servers.devtools_bridge.config import BridgeConfig, is_loopback_host
from mcp_servers.devtools_bridge.errors import BridgeTimeoutError
from mcp_servers.devtools_bridge.server import create_default_registry
from mcp_servers.devtools_bridge.server.contract import SUPPORTED_PROTOCOL_VERSIONS

EXPECTED_TOOLS = {
    "diagnose_layout",
    "connect_browser",
    "highlight_element",
    "get_element_tree",
    "check_accessibility",
    "get_computed_layout",
    "find_overlapping_elements",
    "get_event_listeners",
    "screenshot_element",
    "check_responsive",
    "find_similar_elements",
    "bridge_status",
}


class StubBridge:
    """Bridge double answering a fixed set of remote commands."""

    def __init__(self, *, connected: bool = True, answers: dict[str, Any] | None = None) -> None:
        self.config = BridgeConfig()
        self.connected = connected
        self.answers = answers or {}
        self.calls: list[str] = []
        self.started = False
        self.stopped = False
        self.reconnects = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def ensure_connected(self, timeout: float | None = None) -> bool:
        return self.connected

    async def reconnect(self, timeout: float | None = None) -> bool:
        self.reconnects += 1
        return self.connected

    def status(self) -> dict[str, Any]:
        return {"state": "connected" if self.connected else "reconnecting", "connected": self.connected}

    async def dispatch(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        self.calls.append(method)
        answer = self.answers.get(method, {})
        if isinstance(answer, Exception):
            raise answer
        return answer


PAGE_ANSWERS: dict[str, Any] = {
    "DOM.getDocument": {"root": {"nodeId": 1, "nodeType": 9, "nodeName": "#document", "children": []}},
    "DOM.querySelector": {"nodeId": 42},
    "DOM.getBoxModel": {
        "model": {"content": [-9999, 120, -9599, 120, -9599, 520, -9999, 520], "width": 400, "height": 400}
    },
    "Page.getLayoutMetrics": {"layoutViewport": {"clientWidth": 1280, "clientHeight": 800}},
    "CSS.getComputedStyleForNode": {
        "computedStyle": [{"name": "display", "value": "block"}, {"name": "position", "value": "static"}]
    },
}


def _server(bridge: StubBridge) -> tuple[mcp_server.McpServer, list[dict[str, Any]]]:
    out: list[dict[str, Any]] = []
    return mcp_server.McpServer(BridgeConfig(), bridge=bridge, writer=out.append), out


def _call(server: mcp_server.McpServer, out: list[dict[str, Any]], name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": {"name": name, "arguments": arguments}}))
    return out[-1]["result"]


def _payload(result: dict[str, Any]) -> dict[str, Any]:
    return json.loads(result["content"][0]["text"])


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def test_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MCP_DEVTOOLS_HOST", "MCP_DEVTOOLS_PORT", "MCP_DEVTOOLS_REQUEST_TIMEOUT", "MCP_DEVTOOLS_DOWNSTREAM_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    cfg = BridgeConfig.from_env()
    assert cfg.url == "ws://127.0.0.1:9224"
    assert cfg.request_timeout == 10.0
    assert cfg.downstream_timeout_ms == 12000
    assert cfg.reconnect_interval == 2.0


def test_config_parses_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCP_DEVTOOLS_HOST", "localhost")
    monkeypatch.setenv("MCP_DEVTOOLS_PORT", "9300")
    monkeypatch.setenv("MCP_DEVTOOLS_REQUEST_TIMEOUT", "4")
    monkeypatch.setenv("MCP_DEVTOOLS_DOWNSTREAM_TIMEOUT", "6")
    monkeypatch.setenv("MCP_DEVTOOLS_RECONNECT_INTERVAL", "not-a-number")
    cfg = BridgeConfig.from_env()
    assert cfg.url == "ws://localhost:9300"
    assert cfg.request_timeout == 4.0
    assert cfg.downstream_timeout_ms == 6000
    assert cfg.reconnect_interval == 2.0


def test_config_rejects_caller_deadline_not_below_downstream(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCP_DEVTOOLS_REQUEST_TIMEOUT", "12")
    monkeypatch.setenv("MCP_DEVTOOLS_DOWNSTREAM_TIMEOUT", "12")
    with pytest.raises(ValueError, match="must be shorter"):
        BridgeConfig.from_env()


def test_config_rejects_non_loopback_host() -> None:
    with pytest.raises(ValueError, match="loopback"):
        BridgeConfig(host="0.0.0.0").validate()
    assert is_loopback_host("::1")
    assert is_loopback_host("[::1]")
    assert not is_loopback_host("example.com")


def test_main_exits_on_invalid_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MCP_DEVTOOLS_HOST", "10.0.0.5")
    with pytest.raises(SystemExit) as excinfo:
        mcp_server.main()
    assert excinfo.value.code == 2


# ═══════════════════════════════════════════════════════════════════════════════
# SERVER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def test_initialize_negotiates_protocol() -> None:
    server, out = _server(StubBridge())
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}}))
    result = out[-1]["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"]["name"] == "devtools-bridge"
    assert "tools" in result["capabilities"]

    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 2, "method": "initialize", "params": {"protocolVersion": "1999-01-01"}}))
    assert out[-1]["result"]["protocolVersion"] == SUPPORTED_PROTOCOL_VERSIONS[0]


def test_tools_list_matches_registry() -> None:
    server, out = _server(StubBridge())
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}))
    tools = out[-1]["result"]["tools"]
    names = {t["name"] for t in tools}
    assert names == EXPECTED_TOOLS
    assert set(create_default_registry().names()) == EXPECTED_TOOLS
    for tool in tools:
        assert tool["inputSchema"]["type"] == "object"


def test_ping_notifications_and_unknown_methods() -> None:
    server, out = _server(StubBridge())
    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 1, "method": "ping"}))
    assert out[-1] == {"jsonrpc": "2.0", "id": 1, "result": {}}

    asyncio.run(server.dispatch({"jsonrpc": "2.0", "method": "notifications/initialized"}))
    assert len(out) == 1

    asyncio.run(server.dispatch({"jsonrpc": "2.0", "id": 3, "method": "resources/list"}))
    assert out[-1]["error"]["code"] == -32601


def test_start_and_close_drive_the_bridge() -> None:
    bridge = StubBridge()
    server, _out = _server(bridge)
    server.start()
    asyncio.run(server.close())
    assert bridge.started and bridge.stopped


# ═══════════════════════════════════════════════════════════════════════════════
# TOOL DISPATCH TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def test_server_call_tool_diagnose_layout() -> None:
    bridge = StubBridge(answers=PAGE_ANSWERS)
    server, out = _server(bridge)

    result = _call(server, out, "diagnose_layout", {"selector": "#modal"})

    assert result["isError"] is False
    report = _payload(result)
    assert report["element"] == "#modal"
    assert report["issues"][0]["type"] == "offscreen-left"
    assert report["issues"][0]["pixels"] == 9999
    assert report["summary"]["highSeverity"] == 2


def test_server_call_tool_invalid_selector_is_structured_error() -> None:
    bridge = StubBridge(answers=PAGE_ANSWERS)
    server, out = _server(bridge)

    result = _call(server, out, "diagnose_layout", {"selector": "1abc"})

    assert result["isError"] is True
    payload = _payload(result)
    assert payload["ok"] is False
    assert payload["tool"] == "diagnose_layout"
    assert "start with a number" in payload["error"]
    assert payload["suggestion"]
    assert payload["details"]["kind"] == "invalid_selector"
    assert bridge.calls == []


def test_server_call_tool_not_connected_reports_bridge_status() -> None:
    server, out = _server(StubBridge(connected=False))

    result = _call(server, out, "diagnose_layout", {"selector": "#modal"})

    assert result["isError"] is True
    payload = _payload(result)
    assert payload["error"] == "Browser extension not connected"
    assert "Connect to Tab" in payload["suggestion"]
    assert payload["details"]["kind"] == "not_connected"
    assert payload["details"]["bridge"]["state"] == "reconnecting"


def test_server_call_tool_timeout_maps_to_timeout_kind() -> None:
    answers = dict(PAGE_ANSWERS)
    answers["DOM.getBoxModel"] = BridgeTimeoutError("DOM.getBoxModel timed out after 10s")
    server, out = _server(StubBridge(answers=answers))

    payload = _payload(_call(server, out, "diagnose_layout", {"selector": "#modal"}))

    assert payload["details"]["kind"] == "timeout"
    assert "timed out" in payload["error"]
    assert payload["suggestion"]


def test_server_call_tool_bridge_status_never_touches_the_browser() -> None:
    bridge = StubBridge(connected=False)
    server, out = _server(bridge)

    result = _call(server, out, "bridge_status", {})

    assert result["isError"] is False
    assert _payload(result)["bridge"]["connected"] is False
    assert bridge.calls == []


def test_server_call_tool_connect_browser_switches_port() -> None:
    bridge = StubBridge()
    server, out = _server(bridge)

    result = _call(server, out, "connect_browser", {"port": 9300})

    assert result["isError"] is False
    assert _payload(result)["success"] is True
    assert bridge.config.port == 9300
    assert bridge.reconnects == 1
    assert bridge.calls == ["DOM.enable", "CSS.enable", "Page.enable", "Overlay.enable"]


@pytest.mark.parametrize("port", [70000, 0, "not-a-port"])
def test_server_call_tool_connect_browser_rejects_bad_port_and_keeps_config(port: Any) -> None:
    bridge = StubBridge()
    server, out = _server(bridge)

    result = _call(server, out, "connect_browser", {"port": port})

    assert result["isError"] is True
    payload = _payload(result)
    assert payload["details"]["kind"] == "invalid_argument"
    assert payload["details"]["currentPort"] == 9224
    assert payload["suggestion"]
    assert bridge.config.port == 9224
    assert bridge.reconnects == 0
    assert bridge.calls == []


def test_server_call_tool_unknown_tool() -> None:
    server, out = _server(StubBridge())
    payload = _payload(_call(server, out, "does_not_exist", {}))
    assert payload["error"] == "Unknown tool: does_not_exist"


def test_server_call_tool_find_similar_rejects_unknown_issue_type() -> None:
    bridge = StubBridge()
    server, out = _server(bridge)

    payload = _payload(_call(server, out, "find_similar_elements", {"issueType": "wobbly"}))

    assert payload["details"]["kind"] == "invalid_argument"
    assert "hidden-display" in payload["suggestion"]
    assert bridge.calls == []
