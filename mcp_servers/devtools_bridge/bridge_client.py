"""
Caller-side bridge client: one WebSocket connection to the relay, with
request/response correlation and an explicit reconnect state machine.

States::

    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...

DISCONNECTED is terminal only after stop(). Retries are unbounded and spaced by
`reconnect_interval`; timers are injectable so tests can drive them by hand.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import errno
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from . import protocol
from .config import BridgeConfig
from .errors import BridgeTimeoutError, ConnectionLostError, NotConnectedError, RemoteCommandError

logger = logging.getLogger("mcp.devtools_bridge.client")


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "The DevTools bridge requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timers(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimers:
    """Timers backed by the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, float(delay)), callback)


Connector = Callable[[str], Awaitable[Any]]


@dataclass(slots=True)
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    timer: TimerHandle | None = None
    started_at: float = field(default_factory=time.monotonic)


def _is_connection_refused(exc: BaseException) -> bool:
    if isinstance(exc, ConnectionRefusedError):
        return True
    if getattr(exc, "errno", None) == errno.ECONNREFUSED:
        return True
    return "connection refused" in str(exc).lower() or "connect call failed" in str(exc).lower()


def websocket_connector(config: BridgeConfig) -> Connector:
    async def _connect(url: str) -> Any:
        websockets = _import_websockets()
        return await websockets.connect(
            url,
            ping_interval=None,
            max_size=int(config.max_frame_bytes),
            open_timeout=max(0.1, float(config.connect_timeout)),
        )

    return _connect


class BridgeClient:
    """Correlates command requests with responses over a single relay connection."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        connector: Connector | None = None,
        timers: Timers | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self._connector = connector or websocket_connector(self.config)
        self._timers = timers or LoopTimers()

        self._state = ConnectionState.DISCONNECTED
        self._connected = asyncio.Event()
        self._listeners: list[Callable[[ConnectionState], None]] = []
        self._ws: Any | None = None
        self._task: asyncio.Task | None = None
        self._retry_handle: TimerHandle | None = None
        self._generation = 0
        self._attempts = 0
        self._stopped = False
        self._last_error: str | None = None

        self._pending: dict[int, PendingRequest] = {}
        self._next_id = 1
        self.late_responses = 0
        self.remote_connected: bool | None = None

    # ── state ──────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_state_listener(self, listener: Callable[[ConnectionState], None]) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("bridge: %s -> %s", self._state.value, state.value)
        self._state = state
        if state is ConnectionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("bridge: state listener failed")

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "connected": self.is_connected,
            "url": self.config.url,
            "attempts": int(self._attempts),
            "pending": len(self._pending),
            "nextId": int(self._next_id),
            "lateResponses": int(self.late_responses),
            **({"lastError": self._last_error} if self._last_error else {}),
            **({"extensionConnected": self.remote_connected} if self.remote_connected is not None else {}),
        }

    # ── lifecycle ──────────────────────────────────────────────────────────

    def start(self) -> None:
        """Schedule the first connection attempt without waiting for it."""
        self._stopped = False
        if self._state is ConnectionState.DISCONNECTED:
            self._begin_attempt()

    async def ensure_connected(self, timeout: float | None = None) -> bool:
        """Trigger a connection attempt if none is live and wait up to `timeout` for it."""
        if self.is_connected:
            return True
        if self._stopped:
            return False
        if self._state is not ConnectionState.CONNECTING:
            # Skip the pending retry delay and connect now.
            self._begin_attempt()
        wait = self.config.connect_timeout if timeout is None else timeout
        return await self._wait_connected(wait)

    async def reconnect(self, timeout: float | None = None) -> bool:
        """Tear down the current socket (or in-flight attempt) and connect afresh."""
        self._stopped = False
        self._attempts = 0
        self._begin_attempt()
        wait = self.config.reconnect_timeout if timeout is None else timeout
        return await self._wait_connected(wait)

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_retry()
        self._generation += 1
        task, self._task = self._task, None
        ws, self._ws = self._ws, None
        self._reject_all("Bridge client stopped")
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        if ws is not None:
            await _close_quietly(ws)
        self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_connected(self, timeout: float) -> bool:
        if self.is_connected:
            return True
        if timeout > 0:
            try:
                await asyncio.wait_for(self._connected.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self.is_connected

    def _cancel_retry(self) -> None:
        handle, self._retry_handle = self._retry_handle, None
        if handle is not None:
            handle.cancel()

    def _begin_attempt(self) -> None:
        self._cancel_retry()
        self._generation += 1
        gen = self._generation

        old_task, self._task = self._task, None
        if old_task is not None and not old_task.done():
            old_task.cancel()
        old_ws, self._ws = self._ws, None
        if old_ws is not None:
            self._reject_all("Connection replaced by a new attempt")
            asyncio.get_running_loop().create_task(_close_quietly(old_ws))

        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run_connection(gen))

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        gen = self._generation
        self._retry_handle = self._timers.call_later(self.config.reconnect_interval, lambda: self._on_retry(gen))

    def _on_retry(self, gen: int) -> None:
        if self._stopped or gen != self._generation:
            return
        self._retry_handle = None
        self._begin_attempt()

    async def _run_connection(self, gen: int) -> None:
        self._attempts += 1
        attempt = self._attempts
        try:
            ws = await self._connector(self.config.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if gen == self._generation:
                self._on_connect_failed(exc, attempt)
            return

        if gen != self._generation or self._stopped:
            await _close_quietly(ws)
            return

        self._ws = ws
        self._attempts = 0
        self._last_error = None
        self._set_state(ConnectionState.CONNECTED)

        error: BaseException | None = None
        try:
            async for raw in ws:
                if gen != self._generation:
                    break
                self._on_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc
        finally:
            if gen == self._generation:
                self._on_connection_lost(error)
            await _close_quietly(ws)

    def _on_connect_failed(self, exc: BaseException, attempt: int) -> None:
        self._last_error = str(exc) or type(exc).__name__
        if _is_connection_refused(exc):
            # Expected while the native host is not running yet.
            logger.debug("bridge: connection refused at %s", self.config.url)
        else:
            logger.warning("bridge: connect to %s failed: %s", self.config.url, self._last_error)
        if attempt == 1 or attempt % 10 == 0:
            logger.info(
                "bridge: relay unavailable (attempt %d), retrying every %.1fs",
                attempt,
                self.config.reconnect_interval,
            )
        if self._stopped:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_retry()

    def _on_connection_lost(self, error: BaseException | None) -> None:
        self._ws = None
        if error is not None:
            self._last_error = str(error) or type(error).__name__
        logger.info("bridge: connection to relay closed%s", f" ({self._last_error})" if error else "")
        self._reject_all("Connection to relay lost")
        if self._stopped:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_retry()

    # ── requests ───────────────────────────────────────────────────────────

    async def dispatch(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        """Send one remote command and wait for its correlated response."""
        if not self.is_connected and not await self.ensure_connected():
            raise NotConnectedError(f"Not connected to relay at {self.config.url}", details=self.status())
        ws = self._ws

        req_id = self._next_id
        self._next_id += 1
        deadline = self.config.request_timeout if timeout is None else float(timeout)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        pending = PendingRequest(id=req_id, method=method, future=future)
        pending.timer = self._timers.call_later(deadline, lambda: self._expire(req_id, deadline))
        self._pending[req_id] = pending

        try:
            await ws.send(protocol.dumps(protocol.command_request(req_id, method, params)))
        except Exception as exc:
            self._forget(req_id)
            if future.done() and not future.cancelled() and future.exception() is not None:
                # The connection dropped mid-send and already rejected this request.
                raise future.exception() from exc
            raise NotConnectedError(f"Failed to send {method}: {exc}") from exc

        try:
            return await future
        finally:
            # Covers caller cancellation; settled requests are already gone.
            self._forget(req_id)

    def _forget(self, req_id: int) -> None:
        pending = self._pending.pop(req_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()

    def _expire(self, req_id: int, deadline: float) -> None:
        pending = self._pending.pop(req_id, None)
        if pending is None:
            return
        if not pending.future.done():
            pending.future.set_exception(
                BridgeTimeoutError(
                    f"{pending.method} timed out after {deadline:g}s",
                    details={"id": req_id, "method": pending.method},
                )
            )

    def _reject_all(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for req in pending:
            if req.timer is not None:
                req.timer.cancel()
            if not req.future.done():
                req.future.set_exception(ConnectionLostError(reason, details={"id": req.id, "method": req.method}))
        if pending:
            logger.info("bridge: rejected %d pending request(s): %s", len(pending), reason)

    def _on_message(self, raw: Any) -> None:
        msg = protocol.parse_envelope(raw)
        if msg is None:
            logger.debug("bridge: ignoring malformed message")
            return

        mtype = msg["type"]
        if mtype == protocol.COMMAND_RESPONSE:
            try:
                req_id = int(msg.get("id"))
            except (TypeError, ValueError):
                logger.debug("bridge: response without a usable id")
                return
            pending = self._pending.pop(req_id, None)
            if pending is None:
                self.late_responses += 1
                logger.debug("bridge: ignoring late or unknown response id=%s", req_id)
                return
            if pending.timer is not None:
                pending.timer.cancel()
            if pending.future.done():
                return
            err = protocol.response_error_message(msg)
            if err is not None:
                pending.future.set_exception(RemoteCommandError(err, method=pending.method))
            else:
                pending.future.set_result(msg.get("result"))
            return

        if mtype == protocol.STATUS:
            self.remote_connected = bool(msg.get("connected"))
            logger.info("bridge: extension status connected=%s", self.remote_connected)
            return

        if mtype in (protocol.KEEP_ALIVE, protocol.KEEP_ALIVE_ACK):
            logger.debug("bridge: %s", mtype)
            return

        logger.debug("bridge: ignoring envelope type=%s", mtype)


async def _close_quietly(ws: Any) -> None:
    with contextlib.suppress(Exception):
        await ws.close()
