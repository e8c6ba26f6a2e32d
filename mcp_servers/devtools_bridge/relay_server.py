"""
Loopback WebSocket relay with a single active caller peer.

- Caller (bridge client) connects over WebSocket; command requests are stamped
  with the downstream deadline and written to the extension.
- Extension envelopes are forwarded to whichever peer is currently active.
- A new peer always replaces the previous one (the MCP server may restart or
  reconnect at any time); a stale peer's close never clears its successor.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from . import protocol
from .config import BridgeConfig
from .errors import NoActivePeerError, PortInUseError

logger = logging.getLogger("mcp.devtools_bridge.relay")

Downstream = Callable[[dict[str, Any]], Awaitable[None]]
PeerChange = Callable[[bool], Awaitable[None]]

SUPERSEDED_CLOSE_CODE = 4000


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "The relay server requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class RelayServer:
    def __init__(
        self,
        config: BridgeConfig,
        downstream: Downstream,
        *,
        on_peer_change: PeerChange | None = None,
    ) -> None:
        self.config = config
        self._downstream = downstream
        self._on_peer_change = on_peer_change
        self._server: Any | None = None
        self._peer: Any | None = None
        self._closing: set[asyncio.Task] = set()
        self.peers_accepted = 0
        self.peers_replaced = 0
        self.forwarded_downstream = 0
        self.forwarded_upstream = 0
        self.dropped = 0

    @property
    def has_peer(self) -> bool:
        return self._peer is not None

    @property
    def port(self) -> int:
        """Actual bound port (differs from config when configured with port 0)."""
        srv = self._server
        if srv is not None:
            for sock in getattr(srv, "sockets", None) or []:
                with contextlib.suppress(Exception):
                    return int(sock.getsockname()[1])
        return int(self.config.port)

    def status(self) -> dict[str, Any]:
        return {
            "listening": self._server is not None,
            "host": self.config.host,
            "port": self.port,
            "peerConnected": self.has_peer,
            "peersAccepted": int(self.peers_accepted),
            "peersReplaced": int(self.peers_replaced),
            "forwardedDownstream": int(self.forwarded_downstream),
            "forwardedUpstream": int(self.forwarded_upstream),
            "dropped": int(self.dropped),
        }

    async def start(self) -> None:
        websockets = _import_websockets()
        try:
            self._server = await websockets.serve(
                self._handler,
                self.config.host,
                int(self.config.port),
                # Browser pages always send Origin; the bridge client never does.
                origins=[None],
                max_size=int(self.config.max_frame_bytes),
                ping_interval=None,
            )
        except OSError as exc:
            if getattr(exc, "errno", None) in {errno.EADDRINUSE, errno.EACCES}:
                raise PortInUseError(
                    f"Relay port {self.config.host}:{self.config.port} is unavailable: {exc}",
                    details={"host": self.config.host, "port": int(self.config.port)},
                ) from exc
            raise
        logger.info("relay: listening on %s:%d", self.config.host, self.port)

    async def close(self) -> None:
        srv, self._server = self._server, None
        peer, self._peer = self._peer, None
        if peer is not None:
            with contextlib.suppress(Exception):
                await peer.close()
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()
        for task in list(self._closing):
            task.cancel()

    async def _handler(self, ws: Any) -> None:
        previous = self._peer
        self._peer = ws
        self.peers_accepted += 1
        if previous is not None:
            self.peers_replaced += 1
            logger.info("relay: new peer replaces the active one")
            task = asyncio.get_running_loop().create_task(self._close_superseded(previous))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        else:
            logger.info("relay: peer connected")
        await self._notify_peer_change(True)

        try:
            async for raw in ws:
                await self._on_peer_message(ws, raw)
        except Exception as exc:
            logger.debug("relay: peer connection ended: %s", exc)
        finally:
            if self._peer is ws:
                self._peer = None
                logger.info("relay: peer disconnected")
                await self._notify_peer_change(False)

    async def _close_superseded(self, ws: Any) -> None:
        with contextlib.suppress(Exception):
            await ws.close(code=SUPERSEDED_CLOSE_CODE, reason="superseded")

    async def _notify_peer_change(self, connected: bool) -> None:
        if self._on_peer_change is None:
            return
        try:
            await self._on_peer_change(connected)
        except Exception as exc:
            logger.warning("relay: failed to report peer status downstream: %s", exc)

    async def _on_peer_message(self, ws: Any, raw: Any) -> None:
        msg = protocol.parse_envelope(raw)
        if msg is None:
            self.dropped += 1
            logger.warning("relay: dropping malformed message from peer")
            return

        mtype = msg["type"]
        if mtype == protocol.KEEP_ALIVE:
            await ws.send(protocol.dumps(protocol.keep_alive_ack()))
            return

        if mtype == protocol.COMMAND_REQUEST:
            msg = {**msg, "timeoutMs": self.config.downstream_timeout_ms}

        try:
            await self._downstream(msg)
            self.forwarded_downstream += 1
        except Exception as exc:
            logger.warning("relay: downstream write failed: %s", exc)
            if mtype == protocol.COMMAND_REQUEST:
                reply = protocol.command_response(msg.get("id"), error=f"Relay could not reach the extension: {exc}")
                with contextlib.suppress(Exception):
                    await ws.send(protocol.dumps(reply))

    async def forward(self, envelope: dict[str, Any]) -> None:
        """Send an envelope to the active caller peer."""
        ws = self._peer
        if ws is None:
            raise NoActivePeerError("No caller is connected to the relay")
        await ws.send(protocol.dumps(envelope))

    async def handle_downstream(self, envelope: dict[str, Any]) -> None:
        """Route one envelope that arrived from the extension."""
        mtype = envelope.get("type")
        if mtype == protocol.KEEP_ALIVE:
            await self._downstream(protocol.keep_alive_ack())
            return
        try:
            await self.forward(envelope)
            self.forwarded_upstream += 1
        except NoActivePeerError:
            self.dropped += 1
            logger.info("relay: no active peer, dropping %s", mtype)
        except Exception as exc:
            self.dropped += 1
            logger.warning("relay: failed to forward %s to peer: %s", mtype, exc)
