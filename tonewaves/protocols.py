# protocols.py
#
# The protocol table. Each entry fixes the tone band, the symbol timing and the
# amount of Reed-Solomon redundancy used for one transmission. The table is
# built once at import time and is never mutated; callers that need a
# different volume or sample rate get a new, validated copy via configure().

from enum import Enum
from types import MappingProxyType
from typing import Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from tonewaves.errors import InvalidParameters, UnknownProtocol

# --- Configuration ---
TONE_SPACING = 46.875            # Hz between adjacent tones (48000 / 1024)
BASE_FREQ_AUDIBLE = 1875.0       # 40 tone slots above DC
BASE_FREQ_ULTRASONIC = 15000.0   # 320 tone slots above DC
TONES_PER_CHUNK = 16             # one tone per nibble value
CHUNKS_PER_GROUP = 6             # nibbles in a symbol group
BYTES_PER_GROUP = 3
MARKER_FRAMES = 16               # marker length in analysis frames
MARKER_PAIRS = 16                # tone slot pairs used by a marker
DEFAULT_SAMPLE_RATE = 48000
DEFAULT_VOLUME = 50
DEFAULT_BIT_DEPTH = 16
DEFAULT_PROTOCOL = 0


class MarkerKind(Enum):
    START = "start"
    END = "end"


def marker_slots(kind):
    """Returns (on, off) tone slot indices for a marker.

    Slot pair i covers slots 2i and 2i+1. The start marker sounds slot
    2i + (i % 2) of every pair and the end marker sounds the other one.
    """
    on, off = [], []
    for i in range(MARKER_PAIRS):
        first, second = 2 * i + (i % 2), 2 * i + 1 - (i % 2)
        if kind is MarkerKind.START:
            on.append(first)
            off.append(second)
        else:
            on.append(second)
            off.append(first)
    return tuple(on), tuple(off)


class ProtocolParameters(BaseModel):
    """Immutable parameter set for one modem protocol.

    Attributes:
      protocol_id: Numeric id used to select the protocol.
      name: Human-readable name, also accepted by lookup().
      base_freq: Frequency of tone slot 0 in Hz.
      tone_spacing: Distance between tone slots in Hz.
      frames_per_symbol: Length of one symbol group in analysis frames.
      marker_frames: Length of each marker in analysis frames.
      redundancy: Reed-Solomon parity bytes per data byte.
      sample_rate: Output and expected input sample rate in Hz.
      volume: Output level, 1-100.
      bit_depth: Bit depth used when rendering integer PCM.
      ultrasonic: Whether the band sits above the audible range.
    """

    model_config = ConfigDict(frozen=True)

    protocol_id: int = Field(..., ge=0, description="Numeric protocol id.")
    name: str = Field(..., description="Human-readable protocol name.")
    base_freq: float = Field(..., gt=0, description="Frequency of tone slot 0 in Hz.")
    tone_spacing: float = Field(TONE_SPACING, gt=0, description="Tone spacing in Hz.")
    tones_per_chunk: Literal[16] = TONES_PER_CHUNK
    chunks_per_group: Literal[6] = CHUNKS_PER_GROUP
    frames_per_symbol: int = Field(..., ge=2, description="Frames per symbol group.")
    marker_frames: int = Field(MARKER_FRAMES, ge=4, description="Frames per marker.")
    redundancy: float = Field(..., ge=0, description="Parity bytes per data byte.")
    sample_rate: int = Field(DEFAULT_SAMPLE_RATE, gt=0, description="Sample rate in Hz.")
    volume: int = Field(DEFAULT_VOLUME, gt=0, le=100, description="Output level, 1-100.")
    bit_depth: Literal[8, 16, 32] = DEFAULT_BIT_DEPTH
    ultrasonic: bool = False

    @model_validator(mode="after")
    def _check_nyquist(self):
        if 2 * self.max_frequency >= self.sample_rate:
            raise ValueError(
                f"Sample rate {self.sample_rate} Hz cannot carry tones up to "
                f"{self.max_frequency:.1f} Hz"
            )
        return self

    @property
    def tone_count(self):
        return self.tones_per_chunk * self.chunks_per_group

    @property
    def max_frequency(self):
        return self.base_freq + (self.tone_count - 1) * self.tone_spacing

    @property
    def samples_per_frame(self):
        # Exactly one period of the tone spacing; 1024 samples at 48 kHz.
        return int(round(self.sample_rate / self.tone_spacing))

    @property
    def symbol_samples(self):
        return self.frames_per_symbol * self.samples_per_frame

    @property
    def symbol_duration(self):
        return self.symbol_samples / self.sample_rate

    @property
    def marker_samples(self):
        return self.marker_frames * self.samples_per_frame

    @property
    def amplitude(self):
        return self.volume / 100.0

    def tone_frequency(self, chunk, level):
        """Frequency for nibble value `level` in chunk position `chunk`."""
        if not 0 <= chunk < self.chunks_per_group:
            raise ValueError(f"Chunk index out of range: {chunk}")
        if not 0 <= level < self.tones_per_chunk:
            raise ValueError(f"Tone level out of range: {level}")
        return self.base_freq + (self.tones_per_chunk * chunk + level) * self.tone_spacing

    def tone_frequencies(self):
        """All tone slot frequencies, chunk-major, as a float64 array."""
        return self.base_freq + np.arange(self.tone_count) * self.tone_spacing


def _protocol(protocol_id, band, speed, frames_per_symbol, redundancy):
    ultrasonic = band == "ultrasonic"
    return ProtocolParameters(
        protocol_id=protocol_id,
        name=f"{band}-{speed}",
        base_freq=BASE_FREQ_ULTRASONIC if ultrasonic else BASE_FREQ_AUDIBLE,
        frames_per_symbol=frames_per_symbol,
        redundancy=redundancy,
        ultrasonic=ultrasonic,
    )


# Fast trades noise tolerance for throughput; slow is the most robust.
PROTOCOLS = MappingProxyType({
    p.protocol_id: p
    for p in (
        _protocol(0, "audible", "normal", 6, 0.4),
        _protocol(1, "audible", "fast", 3, 0.25),
        _protocol(2, "audible", "slow", 9, 0.6),
        _protocol(3, "ultrasonic", "normal", 6, 0.4),
        _protocol(4, "ultrasonic", "fast", 3, 0.25),
        _protocol(5, "ultrasonic", "slow", 9, 0.6),
    )
})

_BY_NAME = MappingProxyType({p.name: p for p in PROTOCOLS.values()})


def lookup(protocol):
    """Resolves a protocol id, name or ProtocolParameters instance."""
    if isinstance(protocol, ProtocolParameters):
        return protocol
    if isinstance(protocol, str):
        params = _BY_NAME.get(protocol.strip().lower())
    elif isinstance(protocol, (int, np.integer)) and not isinstance(protocol, bool):
        params = PROTOCOLS.get(int(protocol))
    else:
        params = None
    if params is None:
        raise UnknownProtocol(f"Unknown protocol: {protocol!r}")
    return params


def configure(protocol, volume=None, sample_rate=None):
    """Looks up a protocol and applies caller overrides."""
    params = lookup(protocol)
    overrides = {}
    if volume is not None:
        overrides["volume"] = volume
    if sample_rate is not None:
        overrides["sample_rate"] = sample_rate
    if not overrides:
        return params
    try:
        return ProtocolParameters.model_validate({**params.model_dump(), **overrides})
    except ValidationError as e:
        raise InvalidParameters(str(e)) from e
