"""Frame codec for the rover serial link.

Frame layout::

    +--------------------------+-----------------+------------+
    |          Header          |     Payload     |  Checksum  |
    | type:2 subtype:2 len:4   |   0-15 bytes    |  2 bytes   |
    +--------------------------+-----------------+------------+

- Header: major type in bits 7-6, subtype in bits 5-4, payload length in 3-0
- Checksum: CRC-16/CCITT (poly 0x1021, init 0xFFFF, no reflection) over
  header + payload, big-endian
"""

from __future__ import annotations

from typing import Tuple

from .errors import ChecksumMismatch, EncodingError, Truncated
from .messages import MAX_PAYLOAD_LENGTH, MajorType, Message

HEADER_SIZE = 1
CHECKSUM_SIZE = 2
MAX_FRAME_SIZE = HEADER_SIZE + MAX_PAYLOAD_LENGTH + CHECKSUM_SIZE

TYPE_SHIFT = 6
SUBTYPE_SHIFT = 4
TYPE_MASK = 0x03
SUBTYPE_MASK = 0x03
LENGTH_MASK = 0x0F

CRC16_POLY = 0x1021
CRC16_INIT = 0xFFFF


def crc16_ccitt(data: bytes) -> int:
    crc = CRC16_INIT
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC16_POLY) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def pack_header(major_type: int, subtype: int, payload_length: int) -> int:
    if not 0 <= major_type <= TYPE_MASK:
        raise EncodingError(f"Major type out of range: {major_type}")
    if not 0 <= subtype <= SUBTYPE_MASK:
        raise EncodingError(f"Subtype out of range: {subtype}")
    if not 0 <= payload_length <= MAX_PAYLOAD_LENGTH:
        raise EncodingError(f"Payload too large: {payload_length} > {MAX_PAYLOAD_LENGTH} bytes")
    return (major_type << TYPE_SHIFT) | (subtype << SUBTYPE_SHIFT) | payload_length


def unpack_header(header: int) -> Tuple[int, int, int]:
    return (
        (header >> TYPE_SHIFT) & TYPE_MASK,
        (header >> SUBTYPE_SHIFT) & SUBTYPE_MASK,
        header & LENGTH_MASK,
    )


def frame_size(header: int) -> int:
    return HEADER_SIZE + (header & LENGTH_MASK) + CHECKSUM_SIZE


def encode(message: Message) -> bytes:
    header = pack_header(int(message.major_type), message.subtype, message.payload_length)
    body = bytes([header]) + message.payload
    return body + crc16_ccitt(body).to_bytes(CHECKSUM_SIZE, "big")


def message_checksum(message: Message) -> int:
    """Checksum a confirmation frame must echo to acknowledge ``message``."""
    frame = encode(message)
    return int.from_bytes(frame[-CHECKSUM_SIZE:], "big")


def decode(data: bytes) -> Message:
    """Decode the frame starting at ``data[0]``; bytes past it are ignored."""
    if len(data) < HEADER_SIZE:
        raise Truncated(HEADER_SIZE, len(data))

    header = data[0]
    size = frame_size(header)
    if len(data) < size:
        raise Truncated(size, len(data))

    body = bytes(data[: size - CHECKSUM_SIZE])
    received = int.from_bytes(data[size - CHECKSUM_SIZE : size], "big")
    expected = crc16_ccitt(body)
    if received != expected:
        raise ChecksumMismatch(expected, received)

    major_type, subtype, _ = unpack_header(header)
    return Message(MajorType(major_type), subtype, body[HEADER_SIZE:])
