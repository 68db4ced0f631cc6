# fec.py
#
# Reed-Solomon framing. A frame is a 3-byte header followed by a body:
#
#   header = length byte + 2 parity bytes                   (corrects 1 byte)
#   body   = length byte + payload + CRC-32 + parity bytes  (corrects parity/2 bytes)
#
# The header fits exactly one symbol group, so a receiver knows how many
# groups to expect as soon as the first one arrives. The body repeats the
# length inside its own codeword: when the header is damaged beyond repair,
# every frame length that fits is tried and the one whose body decodes with a
# matching length byte and CRC wins. The CRC also catches the rare case where
# too many errors push the decoder onto a different codeword.

import functools
import logging
import math
import zlib

from pydantic import BaseModel, ConfigDict
from reedsolo import RSCodec, ReedSolomonError

from tonewaves.errors import EmptyPayload, FrameTooSmall, ModemError, PayloadTooLarge, UncorrectableError

logger = logging.getLogger(__name__)

# --- Configuration ---
MAX_BLOCK_SIZE = 255        # Max total bytes for Reed-Solomon over GF(256)
MAX_PAYLOAD_LENGTH = 140    # Longest payload carried by one transmission
HEADER_ECC_BYTES = 2
HEADER_LENGTH = 1 + HEADER_ECC_BYTES
LENGTH_FIELD = 1            # length byte repeated at the start of the body
CRC_LENGTH = 4
MIN_ECC_BYTES = 4


class EncodedFrame(BaseModel):
    """Header and body bytes for one transmission."""

    model_config = ConfigDict(frozen=True)

    payload_length: int
    header: bytes
    body: bytes
    ecc_length: int

    @property
    def data(self):
        return self.header + self.body

    @property
    def correction_capacity(self):
        return self.ecc_length // 2


@functools.lru_cache(maxsize=None)
def _codec(n_ecc, nsize):
    return RSCodec(n_ecc, nsize=nsize)


def ecc_length(data_len, redundancy):
    """Parity bytes for `data_len` body bytes before clamping to the block size."""
    return 2 * int(math.ceil(data_len * redundancy / 2.0))


def body_layout(payload_length, params):
    """Returns (data_len, n_ecc) for the body carrying `payload_length` bytes."""
    data_len = LENGTH_FIELD + payload_length + CRC_LENGTH
    n_ecc = ecc_length(data_len, params.redundancy)
    if n_ecc == 0:
        raise FrameTooSmall(f"Protocol {params.name} leaves no room for redundancy")
    n_ecc = min(max(n_ecc, MIN_ECC_BYTES), MAX_BLOCK_SIZE - data_len)
    if n_ecc < 2:
        raise FrameTooSmall(
            f"A {payload_length}-byte payload leaves {max(n_ecc, 0)} parity bytes in a "
            f"{MAX_BLOCK_SIZE}-byte block"
        )
    return data_len, n_ecc


def max_payload_length(params):
    """Largest payload whose body fits one Reed-Solomon block unclamped."""
    for n in range(MAX_PAYLOAD_LENGTH, 0, -1):
        data_len = LENGTH_FIELD + n + CRC_LENGTH
        if data_len + max(ecc_length(data_len, params.redundancy), MIN_ECC_BYTES) <= MAX_BLOCK_SIZE:
            return n
    return 0


def frame_length(payload_length, params):
    """Total header and body bytes for a payload of `payload_length` bytes."""
    data_len, n_ecc = body_layout(payload_length, params)
    return HEADER_LENGTH + data_len + n_ecc


def encode_header(payload_length):
    return bytes(_codec(HEADER_ECC_BYTES, HEADER_LENGTH).encode(bytes([payload_length])))


def decode_header(header):
    """Returns the payload length declared by a 3-byte header."""
    if len(header) < HEADER_LENGTH:
        raise FrameTooSmall(f"Header needs {HEADER_LENGTH} bytes, got {len(header)}")
    try:
        decoded = _codec(HEADER_ECC_BYTES, HEADER_LENGTH).decode(bytearray(header[:HEADER_LENGTH]))[0]
    except ReedSolomonError as e:
        raise UncorrectableError(f"Header is unreadable: {e}") from e
    payload_length = decoded[0]
    if payload_length == 0:
        raise EmptyPayload("Header declares an empty payload")
    return payload_length


def encode(payload, params):
    """Adds a header, a CRC-32 and Reed-Solomon parity to a payload."""
    payload = bytes(payload)
    if not payload:
        raise EmptyPayload("Payload is empty")
    limit = max_payload_length(params)
    if len(payload) > limit:
        raise PayloadTooLarge(len(payload), limit)

    data_len, n_ecc = body_layout(len(payload), params)
    data = bytes([len(payload)]) + payload
    data_with_crc = data + zlib.crc32(data).to_bytes(CRC_LENGTH, "big")
    body = bytes(_codec(n_ecc, data_len + n_ecc).encode(data_with_crc))
    logger.debug(
        f"Framed {len(payload)} bytes: {data_len} data + {n_ecc} parity, "
        f"corrects up to {n_ecc // 2} bytes"
    )
    return EncodedFrame(
        payload_length=len(payload),
        header=encode_header(len(payload)),
        body=body,
        ecc_length=n_ecc,
    )


def decode_body(received, payload_length, params):
    """Decodes `received` as a frame carrying exactly `payload_length` bytes.

    The header bytes are skipped. Raises FrameTooSmall when `received` is
    shorter than that frame and UncorrectableError when the body does not
    decode to a matching length byte and CRC.
    """
    data_len, n_ecc = body_layout(payload_length, params)
    body = bytes(received[HEADER_LENGTH:HEADER_LENGTH + data_len + n_ecc])
    if len(body) < data_len + n_ecc:
        raise FrameTooSmall(f"Frame body needs {data_len + n_ecc} bytes, got {len(body)}")

    try:
        decoded = _codec(n_ecc, data_len + n_ecc).decode(bytearray(body))[0]
    except ReedSolomonError as e:
        raise UncorrectableError(f"Reed-Solomon decoding failed: {e}") from e

    data, crc = bytes(decoded[:-CRC_LENGTH]), bytes(decoded[-CRC_LENGTH:])
    if int.from_bytes(crc, "big") != zlib.crc32(data):
        raise UncorrectableError("CRC mismatch after error correction")
    if data[0] != payload_length:
        raise UncorrectableError(f"Body carries length {data[0]}, frame was read as {payload_length}")
    return data[LENGTH_FIELD:]


def decode(received, params):
    """Recovers the payload from received header and body bytes.

    The header's length is tried first. If the header is unreadable, or the
    body does not decode at its length, every other length whose frame fits in
    `received` is tried. Raises the header-path error when none decodes, so
    corrupted data is never returned.
    """
    received = bytes(received)
    limit = max_payload_length(params)
    declared = None
    try:
        declared = decode_header(received[:HEADER_LENGTH])
        if declared > limit:
            raise UncorrectableError(f"Header declares {declared} bytes, maximum is {limit}")
        return decode_body(received, declared, params)
    except ModemError as e:
        error = e

    for payload_length in range(1, limit + 1):
        if frame_length(payload_length, params) > len(received):
            break
        if payload_length == declared:
            continue
        try:
            payload = decode_body(received, payload_length, params)
        except UncorrectableError:
            continue
        logger.debug(f"Header path failed ({error}), frame recovered at {payload_length} bytes")
        return payload
    raise error
