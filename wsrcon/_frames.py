import logging
import struct
from enum import IntEnum
from dataclasses import dataclass
from typing import Optional, Tuple, Union


# The MIT License (MIT)
#
# Copyright (c) 2017 Benno Rice and contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
# THE SOFTWARE.


logger = logging.getLogger("wsrcon.frames")


class CloseReason(IntEnum):
    """
    Close status codes used by the console (RFC 6455, Section 7.4.1).
    """

    NORMAL_CLOSURE = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    #: Reported when a close frame carries no status code. Never sent.
    NO_STATUS_RCVD = 1005
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009


class Opcode(IntEnum):
    """
    Frame opcodes (RFC 6455, Section 5.2). Only text, close and ping frames are acted upon.
    """

    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA


# Payload length constants
PAYLOAD_LENGTH_TWO_BYTE = 126
PAYLOAD_LENGTH_EIGHT_BYTE = 127
MAX_PAYLOAD_NORMAL = 125
MAX_PAYLOAD_TWO_BYTE = 2**16 - 1

# MASK and PAYLOAD LEN are packed into a byte
MASK_MASK = 0x80
PAYLOAD_LEN_MASK = 0x7F

# FIN, RSV[123] and OPCODE are packed into a single byte
FIN_MASK = 0x80
OPCODE_MASK = 0x0F

# Opcode bytes of the frames the server sends (FIN always set)
TEXT_FRAME = FIN_MASK | Opcode.TEXT
CLOSE_FRAME = FIN_MASK | Opcode.CLOSE
PONG_FRAME = FIN_MASK | Opcode.PONG


class Event:
    """
    Base class for decoded frames.
    """

    pass  # noqa


@dataclass(frozen=True)
class TextMessage(Event):
    """A complete text frame. ``data`` holds the raw (unmasked) payload bytes,
    the codec does not validate UTF-8."""

    data: bytes

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class CloseConnection(Event):
    """The peer requested the connection to be closed."""

    code: int = CloseReason.NO_STATUS_RCVD
    reason: Optional[str] = None


@dataclass(frozen=True)
class Pong(Event):
    payload: bytes = b""


@dataclass(frozen=True)
class Ping(Event):
    """The peer sent a ping. It must be answered with a pong carrying the same payload."""

    payload: bytes = b""

    def response(self) -> Pong:
        """Generate an RFC-compliant :class:`Pong` response to this ping."""
        return Pong(payload=self.payload)


_XOR_TABLE = [bytes(a ^ b for a in range(256)) for b in range(256)]


def unmask(data: bytes, masking_key: bytes) -> bytes:
    """
    XOR ``data`` with the 4-byte ``masking_key``, i.e. ``data[i] ^ masking_key[i % 4]``.
    """
    if not data:
        return bytes(data)
    data_array = bytearray(data)
    a, b, c, d = (_XOR_TABLE[n] for n in masking_key)
    data_array[::4] = data_array[::4].translate(a)
    data_array[1::4] = data_array[1::4].translate(b)
    data_array[2::4] = data_array[2::4].translate(c)
    data_array[3::4] = data_array[3::4].translate(d)
    return bytes(data_array)


def _parse_close_payload(payload: bytes) -> CloseConnection:
    if len(payload) < 2:
        return CloseConnection()
    (code,) = struct.unpack("!H", payload[:2])
    reason = payload[2:].decode("utf-8", errors="replace") or None
    return CloseConnection(code=code, reason=reason)


def parse_frame(data: Union[bytes, bytearray, memoryview]) -> Tuple[Optional[Event], int]:
    """
    Parse a single frame from the start of ``data`` without modifying it.

    Returns a tuple ``(event, consumed)``. ``consumed == 0`` means that the buffer does not
    yet contain a complete frame (need more data). Frames which are consumed but not
    surfaced (pong, binary, continuation, unknown opcodes) yield ``(None, consumed)``.
    """
    if len(data) < 2:
        return None, 0

    opcode = data[0] & OPCODE_MASK
    has_mask = bool(data[1] & MASK_MASK)
    payload_len = data[1] & PAYLOAD_LEN_MASK
    offset = 2

    if payload_len == PAYLOAD_LENGTH_TWO_BYTE:
        if len(data) < offset + 2:
            return None, 0
        (payload_len,) = struct.unpack("!H", data[offset:offset + 2])
        offset += 2
    elif payload_len == PAYLOAD_LENGTH_EIGHT_BYTE:
        if len(data) < offset + 8:
            return None, 0
        (payload_len,) = struct.unpack("!Q", data[offset:offset + 8])
        offset += 8

    masking_key = None
    if has_mask:
        if len(data) < offset + 4:
            return None, 0
        masking_key = bytes(data[offset:offset + 4])
        offset += 4

    if len(data) < offset + payload_len:
        return None, 0

    payload = bytes(data[offset:offset + payload_len])
    consumed = offset + payload_len
    if masking_key is not None:
        payload = unmask(payload, masking_key)

    if opcode == Opcode.TEXT:
        logger.debug(f"Decoded WebSocket text frame: {payload[:100]!r}")
        return TextMessage(payload), consumed
    elif opcode == Opcode.CLOSE:
        logger.debug("Received WebSocket close frame")
        return _parse_close_payload(payload), consumed
    elif opcode == Opcode.PING:
        logger.debug("Received WebSocket ping frame")
        return Ping(payload), consumed
    elif opcode == Opcode.PONG:
        logger.debug("Received WebSocket pong frame")
    elif opcode == Opcode.BINARY:
        logger.debug("Received binary frame (not supported), ignoring")
    elif opcode == Opcode.CONTINUATION:
        logger.debug("Received continuation frame (not supported), ignoring")
    else:
        logger.debug(f"Received unknown opcode {opcode:#x}, ignoring")
    return None, consumed


def decode_frame(buffer: bytearray) -> Tuple[Optional[Event], int]:
    """
    Decode a single frame from ``buffer`` and remove the consumed bytes from it in place.
    If the frame is incomplete, the buffer is left untouched and ``(None, 0)`` is returned.
    """
    event, consumed = parse_frame(buffer)
    if consumed:
        del buffer[:consumed]
    return event, consumed


def _encode_length(length: int) -> bytes:
    if length <= MAX_PAYLOAD_NORMAL:
        return struct.pack("!B", length)
    elif length <= MAX_PAYLOAD_TWO_BYTE:
        return struct.pack("!BH", PAYLOAD_LENGTH_TWO_BYTE, length)
    else:
        return struct.pack("!BQ", PAYLOAD_LENGTH_EIGHT_BYTE, length)


def encode_frame(payload: Union[bytes, str], opcode_byte: int = TEXT_FRAME) -> bytes:
    """
    Serialize ``payload`` into a single unmasked frame. ``opcode_byte`` is the full first
    header byte (FIN bit included), e.g. ``0x81`` for a final text frame.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return bytes([opcode_byte]) + _encode_length(len(payload)) + bytes(payload)


def encode_pong(payload: bytes = b"") -> bytes:
    return encode_frame(payload, PONG_FRAME)


def encode_close(code: int = CloseReason.NORMAL_CLOSURE, reason: str = "") -> bytes:
    payload = struct.pack("!H", code) + reason.encode("utf-8")
    return encode_frame(payload, CLOSE_FRAME)
