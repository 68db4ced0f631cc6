# pcm.py
#
# Conversion between raw mono PCM and the float32 samples the modem works on.
# Container formats (WAV headers and the like) are left to the caller.

import numpy as np

_FULL_SCALE = {8: 127.0, 16: 32767.0, 32: 2147483647.0}


def as_float_samples(samples):
    """Converts PCM samples to a 1-D float32 array in [-1, 1].

    Accepts float arrays, int16/int32/uint8 arrays and little-endian 16-bit
    PCM bytes. Multi-channel input is averaged down to mono.
    """
    if isinstance(samples, (bytes, bytearray, memoryview)):
        data = np.frombuffer(samples, dtype="<i2")
    else:
        data = np.asarray(samples)

    if data.dtype == np.int16:
        data = data.astype(np.float32) / 32768.0
    elif data.dtype == np.int32:
        data = data.astype(np.float32) / 2147483648.0
    elif data.dtype == np.uint8:
        data = (data.astype(np.float32) - 128.0) / 128.0
    elif np.issubdtype(data.dtype, np.floating):
        data = data.astype(np.float32, copy=False)
    else:
        raise TypeError(f"Unsupported sample format: {data.dtype}")

    if data.ndim > 1:
        data = np.mean(data, axis=1, dtype=np.float32)
    return data


def to_pcm(samples, bit_depth=16):
    """Quantizes float samples to signed (or, for 8-bit, offset) integer PCM."""
    if bit_depth not in _FULL_SCALE:
        raise ValueError(f"Unsupported bit depth: {bit_depth}")
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.round(clipped * _FULL_SCALE[bit_depth])
    if bit_depth == 8:
        return (scaled + 128).astype(np.uint8)
    if bit_depth == 16:
        return scaled.astype(np.int16)
    return scaled.astype(np.int32)
