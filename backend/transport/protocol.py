"""
UDP frame packet codec.

Every datagram carries one fragment of one captured frame:

    [ 4 bytes: frame_id ][ 2 bytes: part_index ][ 2 bytes: total_parts ]
    [ 4 bytes: payload_length ][ payload_length bytes: payload ]

All fields are big-endian unsigned integers.
"""

import math
import struct
from dataclasses import dataclass

from config import MAX_PACKET_SIZE, MAX_PARTS

HEADER_FORMAT = "!IHHI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 12

FRAME_ID_MASK = 0xFFFFFFFF


class PacketError(ValueError):
    """Raised when a datagram does not carry a valid fragment."""


@dataclass(frozen=True)
class PacketHeader:
    frame_id: int
    part_index: int
    total_parts: int
    payload_length: int


def max_payload_size(max_packet_size: int = MAX_PACKET_SIZE) -> int:
    return max_packet_size - HEADER_SIZE


def count_parts(frame_size: int, max_packet_size: int = MAX_PACKET_SIZE) -> int:
    """Number of fragments needed to carry *frame_size* bytes."""
    return math.ceil(frame_size / max_payload_size(max_packet_size))


def pack_header(header: PacketHeader) -> bytes:
    return struct.pack(
        HEADER_FORMAT,
        header.frame_id & FRAME_ID_MASK,
        header.part_index,
        header.total_parts,
        header.payload_length,
    )


def build_packet(
    frame_id: int,
    part_index: int,
    total_parts: int,
    frame: bytes,
    max_packet_size: int = MAX_PACKET_SIZE,
) -> bytes:
    """Slice fragment *part_index* out of *frame* and prefix its header."""
    chunk_size = max_payload_size(max_packet_size)
    offset = part_index * chunk_size
    payload = frame[offset : offset + chunk_size]
    header = PacketHeader(frame_id, part_index, total_parts, len(payload))
    return pack_header(header) + payload


def parse_packet(
    data: bytes,
    max_packet_size: int = MAX_PACKET_SIZE,
    max_parts: int = MAX_PARTS,
) -> tuple[PacketHeader, bytes]:
    """
    Validate a datagram and split it into header and payload.

    Raises PacketError for short datagrams, empty or oversized payloads,
    a part index outside the frame, or a part count above *max_parts*.
    """
    if len(data) < HEADER_SIZE:
        raise PacketError(f"Datagram shorter than header: {len(data)} bytes")

    header = PacketHeader(*struct.unpack_from(HEADER_FORMAT, data))

    if header.payload_length <= 0 or header.payload_length > max_payload_size(max_packet_size):
        raise PacketError(f"Invalid payload length {header.payload_length}")
    if header.part_index >= header.total_parts:
        raise PacketError(
            f"Part index {header.part_index} outside frame of {header.total_parts} parts"
        )
    if header.total_parts > max_parts:
        raise PacketError(f"Too many parts: {header.total_parts}")

    payload = data[HEADER_SIZE : HEADER_SIZE + header.payload_length]
    if len(payload) != header.payload_length:
        raise PacketError(
            f"Truncated payload: expected {header.payload_length}, got {len(payload)}"
        )
    return header, payload
