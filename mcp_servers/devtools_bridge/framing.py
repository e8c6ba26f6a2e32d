"""Length-prefixed JSON framing for the relay <-> extension stdio hop.

Wire format: ``[uint32 little-endian length][UTF-8 JSON object]``.

The decoder is incremental and never fatal: a frame whose header cannot be
trusted puts it into resync mode, where it scans for the next bare JSON object
and then falls back to framed mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from collections.abc import Callable
from typing import Any, BinaryIO

from .config import DEFAULT_MAX_FRAME_BYTES
from .errors import FramingError

logger = logging.getLogger("mcp.devtools_bridge.framing")

_HEADER = struct.Struct("<I")
_PRINTABLE = frozenset(range(0x20, 0x7F)) | {0x09, 0x0A, 0x0D}
_OPEN_BRACE = 0x7B
_CLOSE_BRACE = 0x7D
_QUOTE = 0x22
_BACKSLASH = 0x5C


def encode_frame(envelope: dict[str, Any], *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> bytes:
    """Serialize one envelope into a length-prefixed frame."""
    raw = json.dumps(envelope, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if len(raw) > max_frame_bytes:
        raise FramingError(f"Frame payload too large: {len(raw)} > {max_frame_bytes} bytes")
    return _HEADER.pack(len(raw)) + raw


def _looks_like_json_header(header: bytes) -> bool:
    return header[0] == _OPEN_BRACE and all(b in _PRINTABLE for b in header[1:])


def _default_on_error(error: FramingError) -> None:
    logger.warning("framing: %s", error)


class FrameDecoder:
    """Incremental frame decoder with resynchronization.

    `feed()` may be called with chunks of any size; the emitted envelopes only
    depend on the concatenated byte stream, not on how it was split.
    """

    def __init__(
        self,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        on_error: Callable[[FramingError], None] | None = None,
    ) -> None:
        self.max_frame_bytes = int(max_frame_bytes)
        self._on_error = on_error or _default_on_error
        self._buf = bytearray()
        self._resync = False
        # Resync scan state, kept across feed() calls.
        self._scan_pos = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self.frames_decoded = 0
        self.bytes_skipped = 0
        self.errors = 0

    @property
    def resyncing(self) -> bool:
        return self._resync

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if chunk:
            self._buf.extend(chunk)
        out: list[dict[str, Any]] = []
        while True:
            if self._resync:
                if not self._step_resync(out):
                    break
            elif not self._step_framed(out):
                break
        return out

    def _report(self, message: str) -> None:
        self.errors += 1
        self._on_error(FramingError(message))

    def _emit(self, raw: bytes, out: list[dict[str, Any]]) -> bool:
        try:
            obj = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return False
        if not isinstance(obj, dict):
            return False
        self.frames_decoded += 1
        out.append(obj)
        return True

    def _step_framed(self, out: list[dict[str, Any]]) -> bool:
        if len(self._buf) < _HEADER.size:
            return False
        header = bytes(self._buf[: _HEADER.size])
        (length,) = _HEADER.unpack(header)
        if length == 0 or length > self.max_frame_bytes or _looks_like_json_header(header):
            self._report(f"untrusted frame header (length={length}); resynchronizing")
            self._enter_resync()
            return True
        end = _HEADER.size + length
        if len(self._buf) < end:
            return False
        raw = bytes(self._buf[_HEADER.size : end])
        del self._buf[:end]
        if not self._emit(raw, out):
            self._report(f"dropped frame with invalid JSON object payload ({length} bytes)")
        return True

    def _enter_resync(self) -> None:
        self._resync = True
        self._reset_scan()

    def _reset_scan(self) -> None:
        self._scan_pos = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def _skip(self, n: int) -> None:
        if n <= 0:
            return
        del self._buf[:n]
        self.bytes_skipped += n

    def _framed_header_ahead(self) -> bool | None:
        """Whether the buffer starts with a plausible frame header (None: need more bytes)."""
        if len(self._buf) <= _HEADER.size:
            return None
        header = bytes(self._buf[: _HEADER.size])
        (length,) = _HEADER.unpack(header)
        if _looks_like_json_header(header) or not 0 < length <= self.max_frame_bytes:
            return False
        return self._buf[_HEADER.size] == _OPEN_BRACE

    def _step_resync(self, out: list[dict[str, Any]]) -> bool:
        if self._depth == 0:
            start = self._buf.find(_OPEN_BRACE)
            if start < 0:
                self._skip(len(self._buf))
                return False
            self._skip(start)
            self._reset_scan()
            # A length header whose low byte is 0x7B also starts with "{".
            framed = self._framed_header_ahead()
            if framed is None:
                return False
            if framed:
                self._resync = False
                logger.info("framing: resynchronized on a frame header after skipping %d bytes", self.bytes_skipped)
                return True

        buf = self._buf
        pos = self._scan_pos
        limit = min(len(buf), self.max_frame_bytes)
        while pos < limit:
            b = buf[pos]
            pos += 1
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif b == _BACKSLASH:
                    self._escaped = True
                elif b == _QUOTE:
                    self._in_string = False
                continue
            if b == _QUOTE:
                self._in_string = True
            elif b == _OPEN_BRACE:
                self._depth += 1
            elif b == _CLOSE_BRACE:
                self._depth -= 1
                if self._depth == 0:
                    raw = bytes(buf[:pos])
                    if self._emit(raw, out):
                        del self._buf[:pos]
                        self._reset_scan()
                        self._resync = False
                        logger.info("framing: resynchronized after skipping %d bytes", self.bytes_skipped)
                        return True
                    # Not a JSON object after all: drop this brace and keep scanning.
                    self._skip(1)
                    self._reset_scan()
                    return True
        self._scan_pos = pos
        if pos >= self.max_frame_bytes:
            # Candidate object larger than any legal frame: abandon it.
            self._skip(1)
            self._reset_scan()
            return True
        return False


async def write_frame(stream: BinaryIO, envelope: dict[str, Any], *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
    """Write one frame to a blocking binary stream without blocking the loop."""
    data = encode_frame(envelope, max_frame_bytes=max_frame_bytes)

    def _write() -> None:
        stream.write(data)
        stream.flush()

    await asyncio.to_thread(_write)
