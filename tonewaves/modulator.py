# modulator.py
#
# Renders symbol groups into audio. A transmission is
#
#   start marker | one segment per symbol group | end marker
#
# where every segment is the equal-amplitude sum of its tones. Each segment
# starts at phase zero and fades in and out over half a millisecond so
# segment boundaries do not click or smear energy into neighbouring tones.

import logging

import numpy as np

from tonewaves.protocols import CHUNKS_PER_GROUP, MarkerKind, marker_slots

logger = logging.getLogger(__name__)

FADE_DURATION = 0.0005  # seconds of fade at each segment edge


def fade_samples(params):
    return max(1, int(round(params.sample_rate * FADE_DURATION)))


def _tone_segment(frequencies, n_samples, params):
    t = np.arange(n_samples) / float(params.sample_rate)
    wave = np.zeros(n_samples)
    for freq in frequencies:
        wave += np.sin(2 * np.pi * freq * t)
    wave *= params.amplitude / len(frequencies)

    fade = fade_samples(params)
    if fade < n_samples // 2:
        ramp = np.linspace(0.0, 1.0, fade)
        wave[:fade] *= ramp
        wave[-fade:] *= ramp[::-1]
    return wave


def marker(params, kind=MarkerKind.START):
    """Renders the start or end marker chord."""
    on, _ = marker_slots(kind)
    frequencies = params.tone_frequencies()[list(on)]
    return _tone_segment(frequencies, params.marker_samples, params).astype(np.float32)


def symbol_segment(group, params):
    """Renders one symbol group: one tone per chunk at the group's level."""
    if len(group) != CHUNKS_PER_GROUP:
        raise ValueError(f"Symbol group must have {CHUNKS_PER_GROUP} levels, got {len(group)}")
    frequencies = [params.tone_frequency(chunk, level) for chunk, level in enumerate(group)]
    return _tone_segment(frequencies, params.symbol_samples, params).astype(np.float32)


def render(groups, params):
    """Generates the waveform for a sequence of symbol groups."""
    segments = [marker(params, MarkerKind.START)]
    segments.extend(symbol_segment(group, params) for group in groups)
    segments.append(marker(params, MarkerKind.END))
    wave = np.concatenate(segments).astype(np.float32)
    logger.debug(
        f"Rendered {len(groups)} symbol groups with {params.name}: "
        f"{len(wave)} samples ({len(wave) / params.sample_rate:.2f}s)"
    )
    return wave


def transmission_samples(n_groups, params):
    """Number of samples render() produces for `n_groups` groups."""
    return 2 * params.marker_samples + n_groups * params.symbol_samples
