import pytest

from tonewaves import fec
from tonewaves.errors import EmptyPayload, FrameTooSmall, UncorrectableError
from tonewaves.frame import (
    decode_frame,
    decode_header_group,
    encode_frame,
    group_count,
    max_group_count,
    payload_lengths,
    recover_frame,
)
from tonewaves.protocols import PROTOCOLS, lookup
from tonewaves.symbols import FILL_BYTE, from_symbols, to_symbols


class TestSymbolMapping:
    """Test cases for the byte <-> symbol group mapping."""

    def test_nibble_order(self):
        """Test that the high nibble of each byte comes first."""
        assert to_symbols(b"\xa5\x0f\xf0") == [(0xA, 0x5, 0x0, 0xF, 0xF, 0x0)]

    def test_padding(self):
        """Test that a short trailing triplet is padded with the fill byte."""
        groups = to_symbols(b"\x12\x34\x56\x78")
        assert len(groups) == 2
        assert groups[1] == (0x7, 0x8, FILL_BYTE >> 4, FILL_BYTE & 0xF, 0, 0)

    def test_empty_input(self):
        assert to_symbols(b"") == []
        assert from_symbols([], 0) == b""

    def test_round_trip_truncates_padding(self):
        data = bytes(range(256))
        groups = to_symbols(data)
        assert len(groups) == 86
        assert from_symbols(groups, len(data)) == data
        assert from_symbols(groups, 10) == data[:10]

    def test_levels_in_range(self):
        for group in to_symbols(bytes(range(256))):
            assert len(group) == 6
            assert all(0 <= level < 16 for level in group)

    def test_too_few_symbols(self):
        with pytest.raises(FrameTooSmall):
            from_symbols(to_symbols(b"abc"), 4)

    @pytest.mark.parametrize("group", [(0, 1, 2, 3, 4), (0, 1, 2, 3, 4, 16), (0, 1, 2, 3, 4, -1)])
    def test_malformed_group(self, group):
        with pytest.raises(ValueError):
            from_symbols([group], 3)

    def test_negative_length(self):
        with pytest.raises(ValueError):
            from_symbols([], -1)


class TestFrameCodec:
    """Test cases for frame encoding through symbol groups."""

    def test_header_is_first_group(self):
        params = lookup(0)
        groups = encode_frame(b"hello", params)
        assert decode_header_group(groups[0]) == 5

    def test_group_count_matches_encoding(self):
        for params in PROTOCOLS.values():
            for length in (1, 2, 3, 17, 100, fec.max_payload_length(params)):
                groups = encode_frame(b"x" * length, params)
                assert len(groups) == group_count(length, params)

    def test_round_trip(self):
        """Test payload -> groups -> payload for text and binary data."""
        params = lookup("audible-fast")
        for payload in (b"hi", "Hello 世界 🌍".encode("utf-8"), bytes(range(140))):
            assert decode_frame(encode_frame(payload, params), params) == payload

    def test_extra_groups_are_ignored(self):
        params = lookup(0)
        groups = encode_frame(b"hello", params)
        assert decode_frame(groups + [(15,) * 6, (0,) * 6], params) == b"hello"

    def test_missing_groups(self):
        params = lookup(0)
        groups = encode_frame(b"hello world", params)
        with pytest.raises(FrameTooSmall):
            decode_frame(groups[:-2], params)

    def test_no_groups(self):
        with pytest.raises(FrameTooSmall):
            decode_frame([], lookup(0))

    def test_corrupted_group_is_repaired(self):
        """Test that a whole wrong symbol group (3 bytes) is within capacity."""
        params = lookup(0)
        payload = b"A" * 40
        groups = encode_frame(payload, params)
        groups[5] = (0,) * 6
        assert decode_frame(groups, params) == payload

    def test_empty_header(self):
        params = lookup(0)
        header = to_symbols(fec.encode_header(0))
        with pytest.raises(EmptyPayload):
            decode_frame(header, params)

    def test_oversized_header(self):
        params = lookup(0)
        groups = to_symbols(fec.encode_header(250) + bytes(255))
        with pytest.raises(UncorrectableError):
            decode_frame(groups, params)

    def test_lost_header_group(self):
        """Test that a frame whose header group is silenced still decodes."""
        params = lookup(0)
        payload = b"A" * 40
        groups = encode_frame(payload, params)
        groups[0] = (0,) * 6
        assert decode_frame(groups, params) == payload


class TestHeaderlessRecovery:
    """Test cases for recovering frames without a readable header."""

    def test_payload_lengths(self):
        params = lookup(0)
        for n_groups in range(1, max_group_count(params) + 1):
            for length in payload_lengths(n_groups, params):
                assert group_count(length, params) == n_groups
        assert 40 in payload_lengths(group_count(40, params), params)

    def test_payload_lengths_too_few_groups(self):
        assert payload_lengths(1, lookup(0)) == []

    def test_max_group_count(self):
        params = lookup(0)
        assert max_group_count(params) == group_count(fec.max_payload_length(params), params)

    def test_recover_frame(self):
        params = lookup("audible-fast")
        payload = b"no header needed"
        groups = encode_frame(payload, params)
        groups[0] = (15, 0, 15, 0, 15, 0)
        groups[2] = (0,) * 6
        assert recover_frame(groups, params) == payload

    def test_recover_frame_needs_whole_frame(self):
        params = lookup(0)
        groups = encode_frame(b"hello world", params)
        with pytest.raises(UncorrectableError):
            recover_frame(groups[:-1], params)
