# frame.py
#
# Glue between the Reed-Solomon framing and the symbol mapper. The first
# symbol group of every frame is the 3-byte header.

import math

from tonewaves import fec
from tonewaves.errors import FrameTooSmall, UncorrectableError
from tonewaves.protocols import BYTES_PER_GROUP
from tonewaves.symbols import from_symbols, to_symbols


def encode_frame(payload, params):
    """Payload to symbol groups, header group first."""
    return to_symbols(fec.encode(payload, params).data)


def group_count(payload_length, params):
    """Symbol groups in a frame carrying `payload_length` bytes, header included."""
    return int(math.ceil(fec.frame_length(payload_length, params) / float(BYTES_PER_GROUP)))


def max_group_count(params):
    return group_count(fec.max_payload_length(params), params)


def payload_lengths(n_groups, params):
    """Payload lengths whose frames span exactly `n_groups` symbol groups."""
    return [
        n for n in range(1, fec.max_payload_length(params) + 1)
        if group_count(n, params) == n_groups
    ]


def decode_header_group(group):
    """Payload length declared by a frame's first symbol group."""
    return fec.decode_header(from_symbols([group], fec.HEADER_LENGTH))


def _frame_bytes(groups):
    return from_symbols(groups, len(groups) * BYTES_PER_GROUP)


def decode_frame(groups, params):
    """Symbol groups back to the payload.

    Raises UncorrectableError, FrameTooSmall or EmptyPayload when the groups do
    not hold a valid frame.
    """
    if not groups:
        raise FrameTooSmall("No symbol groups to decode")
    return fec.decode(_frame_bytes(groups), params)


def recover_frame(groups, params):
    """Decodes groups as a frame spanning exactly all of them, ignoring the header.

    Used when the header group is unreadable: each payload length that fills
    len(groups) groups is tried in turn.
    """
    data = _frame_bytes(groups)
    for payload_length in payload_lengths(len(groups), params):
        try:
            return fec.decode_body(data, payload_length, params)
        except UncorrectableError:
            continue
    raise UncorrectableError(f"No frame spanning {len(groups)} symbol groups decodes")
