from __future__ import annotations

import asyncio
import io
import json
import struct

import pytest

from mcp_servers.devtools_bridge.errors import FramingError
from mcp_servers.devtools_bridge.framing import FrameDecoder, encode_frame, write_frame


def _envelopes() -> list[dict]:
    return [
        {"type": "command-request", "id": 1, "method": "DOM.getDocument", "params": {"depth": -1}},
        {"type": "command-response", "id": 1, "result": {"root": {"nodeId": 1, "nodeName": "#document"}}},
        {"type": "status", "connected": True},
        {"type": "command-response", "id": 2, "error": {"message": "No node with given id found"}},
        {"type": "keep-alive-ack", "timestamp": 1700000000000, "note": "brace } and \"quote\" inside ünïcode"},
    ]


def _decode_bytewise(data: bytes, **kwargs) -> list[dict]:
    decoder = FrameDecoder(**kwargs)
    out: list[dict] = []
    for i in range(len(data)):
        out.extend(decoder.feed(data[i : i + 1]))
    return out


def test_encode_then_decode_reproduces_envelopes() -> None:
    envelopes = _envelopes()
    stream = b"".join(encode_frame(e) for e in envelopes)
    assert FrameDecoder().feed(stream) == envelopes


def test_frame_header_is_little_endian_byte_length() -> None:
    env = {"type": "status", "connected": False, "label": "é"}
    frame = encode_frame(env)
    (length,) = struct.unpack("<I", frame[:4])
    assert length == len(frame) - 4
    assert json.loads(frame[4:].decode("utf-8")) == env


def test_partial_frames_are_buffered_until_complete() -> None:
    env = _envelopes()[0]
    frame = encode_frame(env)
    decoder = FrameDecoder()
    assert decoder.feed(frame[:3]) == []
    assert decoder.feed(frame[3:10]) == []
    assert decoder.buffered == 10
    assert decoder.feed(frame[10:]) == [env]
    assert decoder.buffered == 0


def test_bytewise_and_contiguous_decoding_agree_with_corruption() -> None:
    envelopes = _envelopes()
    stream = (
        encode_frame(envelopes[0])
        + struct.pack("<I", 0)
        + b"garbage without braces"
        + json.dumps(envelopes[2]).encode("utf-8")
        + encode_frame(envelopes[3])
        + b'{"type":"keep-alive"}'
        + encode_frame(envelopes[4])
    )
    contiguous = FrameDecoder().feed(stream)
    assert _decode_bytewise(stream) == contiguous
    assert contiguous[0] == envelopes[0]
    assert envelopes[2] in contiguous
    assert contiguous[-1] == envelopes[4]


def test_unprefixed_json_triggers_resync_and_is_recovered() -> None:
    bare = {"type": "status", "connected": True}
    framed = {"type": "keep-alive"}
    errors: list[FramingError] = []
    decoder = FrameDecoder(on_error=errors.append)

    out = decoder.feed(json.dumps(bare).encode("utf-8") + encode_frame(framed))

    assert out == [bare, framed]
    assert len(errors) == 1
    assert not decoder.resyncing


def test_oversized_length_prefix_is_skipped() -> None:
    env = {"type": "keep-alive"}
    errors: list[FramingError] = []
    decoder = FrameDecoder(max_frame_bytes=1024, on_error=errors.append)

    out = decoder.feed(struct.pack("<I", 1025) + encode_frame(env))

    assert out == [env]
    assert errors and "untrusted frame header" in str(errors[0])
    assert decoder.bytes_skipped > 0


def test_resync_ignores_braces_inside_strings() -> None:
    tricky = {"type": "status", "connected": True, "msg": 'a } b { c \\" }'}
    raw = b"\x00\x00\x00\x00" + json.dumps(tricky).encode("utf-8")
    assert FrameDecoder().feed(raw) == [tricky]
    assert _decode_bytewise(raw) == [tricky]


def test_resync_abandons_candidates_larger_than_the_ceiling() -> None:
    env = {"type": "keep-alive"}
    stream = struct.pack("<I", 0) + b"{" + b"x" * 200 + encode_frame(env)

    assert FrameDecoder(max_frame_bytes=64).feed(stream) == [env]
    assert _decode_bytewise(stream, max_frame_bytes=64) == [env]


def test_invalid_json_payload_is_dropped_and_decoding_continues() -> None:
    env = {"type": "keep-alive"}
    bad_payload = b"not json!"
    errors: list[FramingError] = []
    decoder = FrameDecoder(on_error=errors.append)

    out = decoder.feed(struct.pack("<I", len(bad_payload)) + bad_payload + encode_frame(env))

    assert out == [env]
    assert decoder.errors == 1
    assert len(errors) == 1


def test_non_object_payload_is_not_an_envelope() -> None:
    decoder = FrameDecoder(on_error=lambda _e: None)
    payload = b"[1,2,3]"
    assert decoder.feed(struct.pack("<I", len(payload)) + payload) == []
    assert decoder.errors == 1


def test_encode_rejects_payload_over_ceiling() -> None:
    with pytest.raises(FramingError):
        encode_frame({"type": "status", "blob": "x" * 100}, max_frame_bytes=32)


def test_write_frame_writes_one_complete_frame() -> None:
    buf = io.BytesIO()
    env = {"type": "status", "connected": True}

    asyncio.run(write_frame(buf, env))

    assert FrameDecoder().feed(buf.getvalue()) == [env]


@pytest.mark.parametrize("length", [123, 379])
def test_resync_lands_on_frame_header_starting_with_a_brace(length: int) -> None:
    base = {"type": "status", "connected": True, "pad": ""}
    overhead = len(json.dumps(base, separators=(",", ":")).encode("utf-8"))
    padded = dict(base, pad="x" * (length - overhead))
    frame = encode_frame(padded)
    assert frame[0] == ord("{")
    followers = [{"type": "status", "connected": bool(i % 2), "seq": i} for i in range(3)]
    stream = b"\xff\xff\xff\xff" + frame + b"".join(encode_frame(e) for e in followers)

    contiguous = FrameDecoder(on_error=lambda _e: None).feed(stream)

    assert contiguous == [padded, *followers]
    assert _decode_bytewise(stream, on_error=lambda _e: None) == contiguous
