# symbols.py
#
# Maps frame bytes to symbol groups and back. Each group carries one byte
# triplet as six 4-bit tone levels, most significant nibble first:
#
#   b0 b1 b2  ->  (b0 >> 4, b0 & 15, b1 >> 4, b1 & 15, b2 >> 4, b2 & 15)

from tonewaves.errors import FrameTooSmall
from tonewaves.protocols import BYTES_PER_GROUP, CHUNKS_PER_GROUP, TONES_PER_CHUNK

FILL_BYTE = 0x00


def to_symbols(data):
    """Splits bytes into symbol groups, zero-padding the last triplet."""
    data = bytes(data)
    pad = -len(data) % BYTES_PER_GROUP
    padded = data + bytes([FILL_BYTE]) * pad
    groups = []
    for i in range(0, len(padded), BYTES_PER_GROUP):
        levels = []
        for byte_val in padded[i:i + BYTES_PER_GROUP]:
            levels.append(byte_val >> 4)
            levels.append(byte_val & 0x0F)
        groups.append(tuple(levels))
    return groups


def from_symbols(groups, declared_length):
    """Joins symbol groups back into bytes, keeping `declared_length` of them."""
    if declared_length < 0:
        raise ValueError(f"Declared length must not be negative: {declared_length}")
    out = bytearray()
    for group in groups:
        if len(group) != CHUNKS_PER_GROUP:
            raise ValueError(f"Symbol group must have {CHUNKS_PER_GROUP} levels, got {len(group)}")
        for level in group:
            if not 0 <= level < TONES_PER_CHUNK:
                raise ValueError(f"Tone level out of range: {level}")
        for hi, lo in zip(group[0::2], group[1::2]):
            out.append((hi << 4) | lo)
    if len(out) < declared_length:
        raise FrameTooSmall(f"Symbols carry {len(out)} bytes, {declared_length} declared")
    return bytes(out[:declared_length])
