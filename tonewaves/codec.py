# codec.py
#
# Entry points: payload -> waveform and waveform -> payload.
#
#   encode: protocol lookup -> frame (RS + CRC) -> symbol groups -> render
#   decode: demodulator (markers + tones) -> symbol groups -> frame decode
#
# Decoding returns a DecodeResult rather than raising, so callers can tell
# "nothing was transmitted" apart from "a transmission was heard but could
# not be repaired".

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict

from tonewaves import fec, frame, modulator
from tonewaves.demodulator import Demodulator, FrameComplete, FrameFailed, MarkerFound
from tonewaves.errors import InvalidParameters, MarkerNotFound, ModemError, UncorrectableError
from tonewaves.pcm import as_float_samples, to_pcm
from tonewaves.protocols import DEFAULT_PROTOCOL, MarkerKind, configure, lookup

logger = logging.getLogger(__name__)

AUTO = None
# Tried in order when decoding with protocol=AUTO; the first success wins.
AUTO_DETECT_ORDER = (0, 1, 2, 3, 4, 5)


class DecodeStatus(Enum):
    DECODED = "decoded"
    NOT_DETECTED = "not_detected"
    FAILED = "failed"


class DecodeResult(BaseModel):
    """Outcome of decode_message().

    Attributes:
      status: DECODED, NOT_DETECTED (no start marker) or FAILED.
      payload: The recovered bytes when DECODED.
      error: The failure (UncorrectableError, Timeout, ...) when FAILED.
      protocol_id: Protocol the result was produced with.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    status: DecodeStatus
    payload: bytes | None = None
    error: ModemError | None = None
    protocol_id: int | None = None

    @property
    def ok(self):
        return self.status is DecodeStatus.DECODED

    @property
    def text(self):
        if self.payload is None:
            return None
        return self.payload.decode("utf-8", errors="replace")

    def unwrap(self):
        """Returns the payload, or raises MarkerNotFound / the decode failure."""
        if self.status is DecodeStatus.DECODED:
            return self.payload
        if self.status is DecodeStatus.NOT_DETECTED:
            raise MarkerNotFound("No transmission detected")
        raise self.error


def _as_payload(payload):
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return bytes(payload)


def max_payload_length(protocol=DEFAULT_PROTOCOL):
    """Longest payload, in bytes, one transmission can carry."""
    return fec.max_payload_length(lookup(protocol))


def encode_message(payload, protocol=DEFAULT_PROTOCOL, volume=None, sample_rate=None):
    """Encodes bytes (or UTF-8 text) into a float32 waveform.

    Raises UnknownProtocol, InvalidParameters, EmptyPayload, PayloadTooLarge or
    FrameTooSmall before any audio is generated.
    """
    params = configure(protocol, volume=volume, sample_rate=sample_rate)
    payload = _as_payload(payload)
    groups = frame.encode_frame(payload, params)
    wave = modulator.render(groups, params)
    logger.info(
        f"Encoded {len(payload)} bytes with {params.name}: {len(groups)} symbol groups, "
        f"{len(wave) / params.sample_rate:.2f}s of audio"
    )
    return wave


def encode_pcm(payload, protocol=DEFAULT_PROTOCOL, volume=None, sample_rate=None):
    """Like encode_message(), but returns little-endian integer PCM bytes."""
    params = configure(protocol, volume=volume, sample_rate=sample_rate)
    samples = to_pcm(encode_message(payload, params), params.bit_depth)
    return samples.astype(samples.dtype.newbyteorder("<")).tobytes()


def _decode_with(samples, params, config):
    demodulator = Demodulator(params, config)
    events = demodulator.feed(samples)
    events.extend(demodulator.finish())
    marker_seen = False
    for event in events:
        if isinstance(event, MarkerFound) and event.kind is MarkerKind.START:
            marker_seen = True
        if isinstance(event, FrameComplete):
            return DecodeResult(
                status=DecodeStatus.DECODED, payload=event.payload, protocol_id=params.protocol_id
            )
        if isinstance(event, FrameFailed):
            return DecodeResult(
                status=DecodeStatus.FAILED, error=event.reason, protocol_id=params.protocol_id
            )
    if marker_seen:
        return DecodeResult(
            status=DecodeStatus.FAILED,
            error=UncorrectableError("Start marker found but no frame could be read"),
            protocol_id=params.protocol_id,
        )
    return DecodeResult(status=DecodeStatus.NOT_DETECTED, protocol_id=params.protocol_id)


def decode_message(samples, protocol=DEFAULT_PROTOCOL, sample_rate=None, config=None):
    """Decodes the first transmission found in `samples`.

    `samples` may be a float array, integer PCM or 16-bit PCM bytes. Pass
    protocol=AUTO to try every protocol in AUTO_DETECT_ORDER.
    """
    samples = as_float_samples(samples)
    if protocol is AUTO:
        return _auto_detect(samples, sample_rate, config)
    params = configure(protocol, sample_rate=sample_rate)
    return _decode_with(samples, params, config)


def _auto_detect(samples, sample_rate, config):
    failure = None
    for protocol_id in AUTO_DETECT_ORDER:
        try:
            params = configure(protocol_id, sample_rate=sample_rate)
        except InvalidParameters:
            # Band not representable at this sample rate.
            continue
        result = _decode_with(samples, params, config)
        if result.ok:
            logger.debug(f"Auto-detected protocol {params.name}")
            return result
        if result.status is DecodeStatus.FAILED and failure is None:
            failure = result
    if failure is not None:
        return failure
    return DecodeResult(status=DecodeStatus.NOT_DETECTED)
