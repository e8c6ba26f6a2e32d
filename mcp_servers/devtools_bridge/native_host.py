"""Native messaging host for the DevTools bridge.

Launched by the browser when the extension calls `connectNative()`:
- Extension <-> native host: length-prefixed JSON frames on stdin/stdout
- MCP server <-> native host: loopback WebSocket (see relay_server.py)

The process lives exactly as long as the extension keeps stdin open.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, BinaryIO

from . import protocol
from .config import BridgeConfig
from .errors import FramingError, PortInUseError
from .framing import FrameDecoder, write_frame
from .relay_server import RelayServer

logger = logging.getLogger("mcp.devtools_bridge.native_host")

_READ_CHUNK = 64 * 1024


class NativeHost:
    def __init__(
        self,
        config: BridgeConfig,
        *,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self.config = config
        self._stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._stdout = stdout or sys.stdout.buffer
        self._write_lock = asyncio.Lock()
        self._decoder = FrameDecoder(config.max_frame_bytes, on_error=self._on_framing_error)
        self.relay = RelayServer(config, self.send_downstream, on_peer_change=self._on_peer_change)

    def _on_framing_error(self, error: FramingError) -> None:
        logger.warning("native host: %s", error)

    async def send_downstream(self, envelope: dict[str, Any]) -> None:
        async with self._write_lock:
            await write_frame(self._stdout, envelope, max_frame_bytes=self.config.max_frame_bytes)

    async def _on_peer_change(self, connected: bool) -> None:
        await self.send_downstream(protocol.status(connected))

    async def _stdin_loop(self) -> None:
        while True:
            chunk = await asyncio.to_thread(os.read, self._stdin_fd, _READ_CHUNK)
            if not chunk:
                logger.info("native host: stdin closed, shutting down")
                return
            for envelope in self._decoder.feed(chunk):
                try:
                    await self.relay.handle_downstream(envelope)
                except Exception:
                    logger.exception("native host: failed to route %s", envelope.get("type"))

    async def run(self) -> int:
        await self.relay.start()
        try:
            await self._stdin_loop()
        finally:
            await self.relay.close()
        return 0


def _configure_logging() -> None:
    level = (os.environ.get("MCP_DEVTOOLS_LOG_LEVEL") or "INFO").strip().upper()
    log_path = (os.environ.get("MCP_DEVTOOLS_HOST_LOG") or "").strip()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        **({"filename": log_path} if log_path else {"stream": sys.stderr}),
    )


def main() -> None:
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    _configure_logging()
    try:
        config = BridgeConfig.from_env()
    except ValueError as exc:
        logger.error("native host: invalid configuration: %s", exc)
        raise SystemExit(2) from None
    try:
        raise SystemExit(asyncio.run(NativeHost(config).run()))
    except PortInUseError as exc:
        logger.error("native host: %s", exc)
        raise SystemExit(2) from None
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()
