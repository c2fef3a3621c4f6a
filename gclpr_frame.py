"""
gclpr_frame.py — Length-prefixed binary framing.

Frame layout (big-endian):
  [4 B payload length N] [N B payload]

The codec works over any binary file-like object: a buffered socket file
(socket.makefile), io.BytesIO in tests, etc.  A declared length above
MAX_FRAME_SIZE is rejected before any payload byte is read, so a garbled or
hostile prefix cannot make us allocate large buffers.  There are no retries
at this layer.
"""

import struct
from typing import BinaryIO

MAX_FRAME_SIZE = 16 * 1024 * 1024   # 16 MiB
LENGTH_STRUCT  = struct.Struct(">I")
HEADER_SIZE    = LENGTH_STRUCT.size


class FrameError(Exception):
    pass


class ConnectionClosed(FrameError):
    """Stream ended cleanly on a frame boundary."""
    pass


class ShortRead(FrameError):
    """Stream ended inside a frame header or payload."""
    pass


class FrameTooLarge(FrameError):
    pass


class FrameWriteError(FrameError):
    pass


# ─────────────────────────────────────────────────────────────────────────────

def _read_exact(stream: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _write_all(stream: BinaryIO, data: bytes, what: str) -> None:
    written = stream.write(data)
    # Raw (unbuffered) streams may report a partial write.
    if written is not None and written != len(data):
        raise FrameWriteError(
            f"frame: short write of {what}: {written} of {len(data)} bytes"
        )


def write_frame(stream: BinaryIO, payload: bytes) -> None:
    """Write `payload` as one frame and flush the stream."""
    if len(payload) > MAX_FRAME_SIZE:
        raise FrameTooLarge(
            f"frame: payload size {len(payload)} exceeds maximum {MAX_FRAME_SIZE}"
        )
    _write_all(stream, LENGTH_STRUCT.pack(len(payload)), "length")
    _write_all(stream, payload, "payload")
    stream.flush()


def read_frame(stream: BinaryIO) -> bytes:
    """
    Read one frame and return its payload.

    Raises:
      ConnectionClosed — EOF before the first header byte
      ShortRead        — EOF inside the header or the payload
      FrameTooLarge    — declared length above MAX_FRAME_SIZE
    """
    hdr = _read_exact(stream, HEADER_SIZE)
    if not hdr:
        raise ConnectionClosed("frame: connection closed")
    if len(hdr) < HEADER_SIZE:
        raise ShortRead(f"frame: truncated length ({len(hdr)} of {HEADER_SIZE} bytes)")

    (size,) = LENGTH_STRUCT.unpack(hdr)
    if size > MAX_FRAME_SIZE:
        raise FrameTooLarge(f"frame: payload size {size} exceeds maximum {MAX_FRAME_SIZE}")

    payload = _read_exact(stream, size)
    if len(payload) < size:
        raise ShortRead(f"frame: truncated payload ({len(payload)} of {size} bytes)")
    return payload
