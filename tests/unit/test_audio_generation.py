import numpy as np
import pytest

from tonewaves.modulator import fade_samples, marker, render, symbol_segment, transmission_samples
from tonewaves.protocols import MarkerKind, configure, lookup, marker_slots
from tonewaves.spectrum import ToneBank


def dominant_levels(segment, params):
    """Strongest tone level per chunk over the middle of a segment."""
    frame = params.samples_per_frame
    bank = ToneBank(params.tone_frequencies(), frame, params.sample_rate)
    start = (len(segment) - frame) // 2
    levels = bank.magnitudes(segment[start:start + frame]).reshape(6, 16)
    return tuple(int(level) for level in np.argmax(levels, axis=1))


class TestAudioGeneration:
    """Test cases for audio generation functions."""

    def test_symbol_segment_length(self):
        """Test that a symbol group lasts frames_per_symbol frames."""
        for protocol_id in (0, 1, 2):
            params = lookup(protocol_id)
            segment = symbol_segment((0,) * 6, params)
            assert segment.dtype == np.float32
            assert len(segment) == params.frames_per_symbol * 1024

    def test_symbol_segment_tones(self):
        """Test that each chunk carries the tone for its level."""
        params = lookup(0)
        group = (3, 15, 0, 8, 12, 1)
        assert dominant_levels(symbol_segment(group, params), params) == group

    def test_ultrasonic_segment_tones(self):
        params = lookup("ultrasonic-normal")
        group = (9, 2, 14, 6, 0, 11)
        assert dominant_levels(symbol_segment(group, params), params) == group

    def test_bad_group(self):
        with pytest.raises(ValueError):
            symbol_segment((1, 2, 3), lookup(0))
        with pytest.raises(ValueError):
            symbol_segment((1, 2, 3, 4, 5, 16), lookup(0))

    def test_amplitude_follows_volume(self):
        """Test that the peak never exceeds the configured volume."""
        for volume in (10, 50, 100):
            params = configure(0, volume=volume)
            wave = render([(15, 0, 15, 0, 15, 0)], params)
            assert np.max(np.abs(wave)) <= volume / 100.0 + 1e-6

    def test_fades(self):
        """Test that segments start at zero and ramp up."""
        params = lookup(0)
        segment = symbol_segment((5,) * 6, params)
        fade = fade_samples(params)
        assert fade == 24
        assert segment[0] == 0.0
        assert segment[-1] == 0.0
        assert np.max(np.abs(segment[:fade // 4])) < np.max(np.abs(segment[fade:4 * fade]))

    def test_deterministic(self):
        params = lookup(1)
        groups = [(1, 2, 3, 4, 5, 6), (6, 5, 4, 3, 2, 1)]
        assert np.array_equal(render(groups, params), render(groups, params))


class TestMarkers:
    """Test cases for marker generation."""

    def test_marker_length(self):
        params = lookup(0)
        assert len(marker(params, MarkerKind.START)) == 16 * 1024
        assert len(marker(params, MarkerKind.END)) == 16 * 1024

    def test_marker_tones(self):
        """Test that the start marker sounds its on-slots and not its off-slots."""
        params = lookup(0)
        frame = params.samples_per_frame
        bank = ToneBank(params.tone_frequencies(), frame, params.sample_rate)
        for kind in MarkerKind:
            wave = marker(params, kind)
            levels = bank.magnitudes(wave[4 * frame:5 * frame])
            on, off = marker_slots(kind)
            assert np.all(levels[list(on)] > 10 * levels[list(off)])

    def test_render_layout(self):
        """Test start marker, symbol segments and end marker placement."""
        params = lookup(1)
        groups = [(1, 2, 3, 4, 5, 6), (7, 8, 9, 10, 11, 12)]
        wave = render(groups, params)
        assert len(wave) == transmission_samples(len(groups), params)

        m = params.marker_samples
        s = params.symbol_samples
        assert np.array_equal(wave[:m], marker(params, MarkerKind.START))
        assert np.array_equal(wave[m:m + s], symbol_segment(groups[0], params))
        assert np.array_equal(wave[-m:], marker(params, MarkerKind.END))

    def test_hi_fast_audible_length(self):
        """Test the duration of a two-byte message on the fast audible protocol."""
        params = lookup("audible-fast")
        # 2 + 1 length + 4 CRC + 4 parity + 3 header = 14 bytes -> 5 groups.
        assert transmission_samples(5, params) == 2 * 16 * 1024 + 5 * 3 * 1024
