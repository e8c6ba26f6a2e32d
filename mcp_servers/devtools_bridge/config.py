from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9224
DEFAULT_MAX_FRAME_BYTES = 32 * 1024 * 1024

_LOOPBACK_NAMES = {"localhost", "ip6-localhost"}


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def is_loopback_host(host: str) -> bool:
    host = (host or "").strip().lower().strip("[]")
    if host in _LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


@dataclass
class BridgeConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    # Caller-side deadline. Must stay below the downstream deadline so the caller
    # always gives up first and never waits on a request the extension already dropped.
    request_timeout: float = 10.0
    downstream_timeout: float = 12.0
    reconnect_interval: float = 2.0
    connect_timeout: float = 3.0
    reconnect_timeout: float = 5.0
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES

    @property
    def url(self) -> str:
        host = self.host
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        return f"ws://{host}:{int(self.port)}"

    @property
    def downstream_timeout_ms(self) -> int:
        return int(self.downstream_timeout * 1000)

    @classmethod
    def from_env(cls) -> BridgeConfig:
        host = (os.environ.get("MCP_DEVTOOLS_HOST") or DEFAULT_HOST).strip()
        cfg = cls(
            host=host,
            port=_int_env("MCP_DEVTOOLS_PORT", DEFAULT_PORT),
            request_timeout=_float_env("MCP_DEVTOOLS_REQUEST_TIMEOUT", 10.0),
            downstream_timeout=_float_env("MCP_DEVTOOLS_DOWNSTREAM_TIMEOUT", 12.0),
            reconnect_interval=_float_env("MCP_DEVTOOLS_RECONNECT_INTERVAL", 2.0),
            connect_timeout=_float_env("MCP_DEVTOOLS_CONNECT_TIMEOUT", 3.0),
            reconnect_timeout=_float_env("MCP_DEVTOOLS_RECONNECT_TIMEOUT", 5.0),
            max_frame_bytes=_int_env("MCP_DEVTOOLS_MAX_FRAME_BYTES", DEFAULT_MAX_FRAME_BYTES),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        """Raise ValueError when the configuration cannot work."""
        if not is_loopback_host(self.host):
            raise ValueError(f"Relay host must be a loopback address, got {self.host!r}")
        if not 0 <= int(self.port) <= 65535:
            raise ValueError(f"Invalid relay port: {self.port}")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.request_timeout >= self.downstream_timeout:
            raise ValueError(
                f"request_timeout ({self.request_timeout}s) must be shorter than "
                f"downstream_timeout ({self.downstream_timeout}s)"
            )
        if self.reconnect_interval <= 0:
            raise ValueError("reconnect_interval must be positive")
        if self.max_frame_bytes <= 4:
            raise ValueError("max_frame_bytes is too small")
