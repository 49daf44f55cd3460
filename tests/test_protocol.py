"""
Tests for transport/protocol.py: fragment header packing and validation.
"""

import struct

import pytest

from transport.protocol import (
    HEADER_SIZE,
    PacketError,
    PacketHeader,
    build_packet,
    count_parts,
    max_payload_size,
    pack_header,
    parse_packet,
)


class TestHeader:
    def test_header_is_twelve_bytes(self):
        assert HEADER_SIZE == 12

    def test_big_endian_layout(self):
        raw = pack_header(PacketHeader(frame_id=1, part_index=2, total_parts=3, payload_length=4))
        assert raw == b"\x00\x00\x00\x01" b"\x00\x02" b"\x00\x03" b"\x00\x00\x00\x04"

    def test_frame_id_wraps_to_32_bits(self):
        raw = pack_header(PacketHeader(2**32 + 7, 0, 1, 1))
        assert struct.unpack("!I", raw[:4])[0] == 7


class TestFragmentation:
    def test_max_payload(self):
        assert max_payload_size(1200) == 1188

    def test_count_parts(self):
        assert count_parts(1, 1200) == 1
        assert count_parts(1188, 1200) == 1
        assert count_parts(1189, 1200) == 2
        assert count_parts(0, 1200) == 0

    def test_build_packet_slices_frame(self):
        frame = bytes(range(256)) * 10  # 2560 bytes, 3 parts at 1200
        total = count_parts(len(frame), 1200)
        packets = [build_packet(9, i, total, frame, 1200) for i in range(total)]

        payloads = []
        for packet in packets:
            assert len(packet) <= 1200
            header, payload = parse_packet(packet, 1200)
            assert header.frame_id == 9
            assert header.total_parts == 3
            payloads.append(payload)
        assert b"".join(payloads) == frame

    def test_last_part_is_short(self):
        frame = b"x" * 1200
        header, payload = parse_packet(build_packet(1, 1, 2, frame, 1200), 1200)
        assert header.payload_length == 12
        assert payload == b"x" * 12


class TestParseRejects:
    def _packet(self, frame_id=1, part=0, total=1, length=4, payload=b"abcd"):
        return struct.pack("!IHHI", frame_id, part, total, length) + payload

    def test_short_datagram(self):
        with pytest.raises(PacketError):
            parse_packet(b"\x00" * 11)

    def test_zero_payload_length(self):
        with pytest.raises(PacketError):
            parse_packet(self._packet(length=0, payload=b""))

    def test_oversized_payload_length(self):
        with pytest.raises(PacketError):
            parse_packet(self._packet(length=1189, payload=b"x" * 1189), 1200)

    def test_part_index_outside_frame(self):
        with pytest.raises(PacketError):
            parse_packet(self._packet(part=3, total=3))

    def test_too_many_parts(self):
        with pytest.raises(PacketError):
            parse_packet(self._packet(total=201), max_parts=200)

    def test_truncated_payload(self):
        with pytest.raises(PacketError):
            parse_packet(self._packet(length=10, payload=b"abcd"))

    def test_valid_packet_ignores_trailing_bytes(self):
        header, payload = parse_packet(self._packet() + b"junk")
        assert payload == b"abcd"
        assert header.payload_length == 4
