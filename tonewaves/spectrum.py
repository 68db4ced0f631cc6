# spectrum.py
#
# Tone magnitudes at an arbitrary set of frequencies. Instead of an FFT plus a
# nearest-bin lookup, the windows are projected directly onto precomputed
# complex exponentials, so every tone is measured at its exact frequency
# whatever the sample rate.

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view


class ToneBank:
    """DFT evaluated at fixed frequencies over a fixed-length window."""

    def __init__(self, frequencies, window_length, sample_rate):
        self.frequencies = np.asarray(frequencies, dtype=np.float64)
        self.window_length = int(window_length)
        self.sample_rate = sample_rate
        t = np.arange(self.window_length) / float(sample_rate)
        self._basis = np.exp(-2j * np.pi * np.outer(t, self.frequencies))
        # A full-window sine of amplitude A measures as A.
        self._scale = 2.0 / self.window_length

    def magnitudes(self, window):
        """Tone amplitudes for a single window."""
        window = np.asarray(window, dtype=np.float64)
        if window.shape[-1] != self.window_length:
            raise ValueError(f"Window must have {self.window_length} samples, got {window.shape[-1]}")
        return np.abs(window @ self._basis) * self._scale

    def sliding(self, samples, hop):
        """Tone amplitudes for every window starting at 0, hop, 2*hop, ...

        Returns an array of shape (n_windows, n_frequencies); empty when the
        samples are shorter than one window.
        """
        samples = np.asarray(samples, dtype=np.float64)
        if len(samples) < self.window_length:
            return np.zeros((0, len(self.frequencies)))
        windows = sliding_window_view(samples, self.window_length)[::hop]
        return np.abs(windows @ self._basis) * self._scale


def tone_clarity(levels):
    """Share of the magnitude held by the strongest tone of each chunk.

    `levels` has shape (chunks, tones). A clean, well-aligned symbol scores
    close to 1; noise or a window straddling two symbols scores lower.
    """
    total = float(np.sum(levels))
    if total <= 0.0:
        return 0.0
    return float(np.sum(np.max(levels, axis=1))) / total
