import asyncio
import json
import struct
from typing import Any, Dict

from .errors import ParseError, TransportError

"""
framing.py — tiny length-prefixed JSON framing for asyncio streams.

Protocol (simple on purpose):
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap at 4 MiB so a buggy peer can't make us allocate silly amounts of memory.
- Every frame is a JSON object with a `type` discriminator.

Failure split:
- Bad JSON inside a well-sized frame -> ParseError. The whole frame was
  consumed, so the stream is still aligned and the caller may keep reading.
- Oversized frame -> TransportError. We can't skip it safely, the stream is done.
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Compact JSON with its length prefix, ready for `writer.write()`."""
    # Keep non-ASCII as UTF-8 (not \u escapes); messages are short and often emoji.
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise TransportError("Frame exceeds maximum size")
    return LENGTH_STRUCT.pack(len(payload)) + payload


def decode_payload(payload: bytes) -> Dict[str, Any]:
    """Parse one frame body. Raises ParseError on anything that isn't a JSON object."""
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo to avoid leaking big data.
        raise ParseError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise ParseError(f"Frame must be a JSON object, got {type(obj).__name__}")
    return obj


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one framed JSON message and return it as a dict.

    Raises:
        asyncio.IncompleteReadError: peer went away (EOF), possibly mid-frame.
        TransportError: the length prefix is over the cap.
        ParseError: the body is not a JSON object.
    """
    len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Quick sanity check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise TransportError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)
    return decode_payload(payload)


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict to compact JSON and write it as a framed message."""
    writer.write(encode_frame(obj))
    await writer.drain()  # Let the transport flush; important under backpressure.
