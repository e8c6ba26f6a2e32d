from __future__ import annotations

import asyncio
import contextlib
import json
import os
import select
import socket
import struct
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]


def _free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = int(s.getsockname()[1])
    s.close()
    return port


def _read_exact(fp, n: int, *, timeout_s: float) -> bytes:
    buf = bytearray()
    fd = fp.fileno()
    deadline = time.time() + max(0.01, float(timeout_s))
    while len(buf) < n:
        remaining = deadline - time.time()
        if remaining <= 0:
            raise TimeoutError(f"timeout while reading {n} bytes")
        r, _w, _x = select.select([fp], [], [], remaining)
        if not r:
            continue
        chunk = os.read(fd, n - len(buf))
        if not chunk:
            raise EOFError("unexpected EOF")
        buf.extend(chunk)
    return bytes(buf)


def _read_native_message(fp, *, timeout_s: float) -> dict[str, Any]:
    header = _read_exact(fp, 4, timeout_s=timeout_s)
    (length,) = struct.unpack("<I", header)
    raw = _read_exact(fp, int(length), timeout_s=timeout_s)
    data = json.loads(raw.decode("utf-8"))
    assert isinstance(data, dict)
    return data


def _write_native_message(fp, msg: dict[str, Any]) -> None:
    raw = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    fp.write(struct.pack("<I", len(raw)))
    fp.write(raw)
    fp.flush()


def _spawn_host(port: int) -> subprocess.Popen:
    env = os.environ.copy()
    env["MCP_DEVTOOLS_PORT"] = str(port)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(ROOT), env.get("PYTHONPATH", "")) if p)
    env.pop("MCP_DEVTOOLS_HOST_LOG", None)
    return subprocess.Popen(
        [sys.executable, "-m", "mcp_servers.devtools_bridge.native_host"],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=str(ROOT),
        env=env,
    )


async def _connect_with_retry(websockets, url: str, timeout_s: float = 5.0):
    deadline = time.time() + timeout_s
    while True:
        try:
            return await websockets.connect(url)
        except OSError:
            if time.time() > deadline:
                raise
            await asyncio.sleep(0.05)


def test_native_host_relays_between_peer_and_extension() -> None:
    try:
        import websockets  # type: ignore[import-not-found]
    except Exception:
        pytest.skip("websockets is not installed")

    port = _free_port()
    proc = _spawn_host(port)
    assert proc.stdin is not None
    assert proc.stdout is not None

    async def _run() -> None:
        ws = await _connect_with_retry(websockets, f"ws://127.0.0.1:{port}")
        try:
            # 1) Peer attach is announced to the extension.
            status = await asyncio.to_thread(_read_native_message, proc.stdout, timeout_s=5.0)
            assert status == {"type": "status", "connected": True}

            # 2) Peer -> extension: request carries the downstream deadline.
            await ws.send(json.dumps({"type": "command-request", "id": 1, "method": "DOM.enable", "params": {}}))
            req = await asyncio.to_thread(_read_native_message, proc.stdout, timeout_s=5.0)
            assert req["type"] == "command-request"
            assert req["id"] == 1
            assert req["timeoutMs"] == 12000

            # 3) Extension -> peer.
            _write_native_message(proc.stdin, {"type": "command-response", "id": 1, "result": {"ok": True}})
            reply = json.loads(await asyncio.wait_for(ws.recv(), 5))
            assert reply == {"type": "command-response", "id": 1, "result": {"ok": True}}

            # 4) Extension keep-alive is acknowledged on stdout.
            _write_native_message(proc.stdin, {"type": "keep-alive", "timestamp": 1})
            ack = await asyncio.to_thread(_read_native_message, proc.stdout, timeout_s=5.0)
            assert ack["type"] == "keep-alive-ack"
        finally:
            await ws.close()

    try:
        asyncio.run(_run())
        proc.stdin.close()
        assert proc.wait(timeout=10) == 0
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait(timeout=5)
        with contextlib.suppress(Exception):
            proc.stdout.close()
        with contextlib.suppress(Exception):
            proc.stderr.close()


def test_native_host_exits_with_error_when_port_is_taken() -> None:
    try:
        import websockets  # type: ignore[import-not-found]  # noqa: F401
    except Exception:
        pytest.skip("websockets is not installed")

    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    proc = _spawn_host(int(holder.getsockname()[1]))
    try:
        _out, err = proc.communicate(timeout=10)
        assert proc.returncode == 2
        assert b"unavailable" in err
    finally:
        holder.close()
        if proc.poll() is None:
            proc.kill()
