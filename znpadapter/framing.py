"""Serial framing of Z-Stack monitor-and-test packets."""

from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from functools import reduce

from .protocol import PACKET_FLAG

log = logging.getLogger(__name__)

_MAX_DATA = 0xFF
_OVERHEAD = 5


class FrameError(ValueError):
    """A frame cannot be built from the given command and data."""


@dataclass(frozen=True)
class Frame:
    """One packet: a 16-bit command and its data."""

    command: int
    data: bytes = b""

    def encode(self) -> bytes:
        return encode_frame(self.command, self.data)


def checksum(data: bytes) -> int:
    """XOR of all bytes."""
    return reduce(operator.xor, data, 0)


def encode_frame(command: int, data: bytes = b"") -> bytes:
    """Build a wire frame: flag, length, command (big-endian), data, FCS."""
    data = bytes(data)
    if len(data) > _MAX_DATA:
        raise FrameError(f"frame data is {len(data)} bytes, at most {_MAX_DATA} allowed")
    if not 0 <= int(command) <= 0xFFFF:
        raise FrameError(f"command {command!r} does not fit in 16 bits")
    body = bytes([len(data)]) + int(command).to_bytes(2, "big") + data
    return bytes([PACKET_FLAG]) + body + bytes([checksum(body)])


class FrameDecoder:
    """Accumulates received bytes and splits them into frames.

    A single leading zero byte is skipped. A buffer that does not start with
    the packet flag, or holds fewer than five bytes, is discarded, as is one
    whose frame fails the checksum.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def feed(self, data: bytes) -> list[Frame]:
        """Add received bytes and return the frames completed by them."""
        buffer = self._buffer
        buffer += data
        frames: list[Frame] = []

        while buffer:
            if buffer[0] == 0:
                del buffer[0]

            if len(buffer) < _OVERHEAD or buffer[0] != PACKET_FLAG:
                buffer.clear()
                break

            end = buffer[1] + _OVERHEAD
            if len(buffer) < end:
                break

            raw = bytes(buffer[:end])
            if checksum(raw[1:-1]) != raw[-1]:
                log.warning("Frame %s FCS mismatch", raw.hex(":"))
                buffer.clear()
                break

            frames.append(Frame(int.from_bytes(raw[2:4], "big"), raw[4:-1]))
            del buffer[:end]

        return frames