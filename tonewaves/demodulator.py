# demodulator.py
#
# Incremental receiver. Samples are pushed in with feed() and come back out as
# events; the receiver keeps whatever it needs between calls:
#
#   SEEKING_START_MARKER -> RECEIVING -> SEEKING_END_MARKER -> DONE | FAILED
#
# Marker search slides a one-frame DFT window over the stream and looks for
# the start chord. Once a marker has been seen, candidate data origins around
# its end are scored on the header group and the clearest one is kept. The
# header fixes how many symbol groups follow; each is decoded by picking the
# strongest of the 16 tones in every chunk. When the header is unreadable but
# data tones follow the marker, groups are collected until some frame length
# decodes. After the last group the end marker is looked for.
#
# A Demodulator is single-writer state. Use one instance per capture stream.

import logging
import math
from collections import deque
from enum import Enum

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from tonewaves import fec, frame
from tonewaves.errors import ModemError, Timeout, UncorrectableError
from tonewaves.pcm import as_float_samples
from tonewaves.protocols import CHUNKS_PER_GROUP, MARKER_PAIRS, TONES_PER_CHUNK, MarkerKind, marker_slots
from tonewaves.spectrum import ToneBank, tone_clarity

logger = logging.getLogger(__name__)

WINDOW_BATCH = 256  # marker windows analysed per DFT batch


class DemodulatorConfig(BaseModel):
    """Detection thresholds for the demodulator.

    Attributes:
      hop_divisor: Marker search step, as a fraction of a frame.
      marker_snr: Required ratio of marker tone level to the noise reference.
      marker_bit_tolerance: Marker slot pairs allowed to point the wrong way.
      min_marker_fraction: Share of the marker a run must cover to count.
      min_amplitude: Marker tone level below which a window counts as silence.
      noise_window: Number of trailing non-marker windows in the noise floor.
      clarity_tolerance: Share of the best alignment score that still counts
        as aligned when centring on the best plateau.
      min_header_clarity: Tone clarity a header group needs before its
        length is trusted.
      min_clarity: Tone clarity the group after the header needs for a frame
        with an unreadable header to be received anyway.
      max_frame_seconds: Longest time a frame may take after its start marker.
        None derives it from the largest frame the protocol can carry.
      require_end_marker: Fail frames whose end marker is missing.
    """

    model_config = ConfigDict(frozen=True)

    hop_divisor: int = Field(8, ge=1, description="Marker search steps per frame.")
    marker_snr: float = Field(3.0, gt=1.0, description="Marker level over noise reference.")
    marker_bit_tolerance: int = Field(1, ge=0, le=4, description="Wrong-way slot pairs tolerated.")
    min_marker_fraction: float = Field(0.5, gt=0.0, le=1.0, description="Marker share a run must cover.")
    min_amplitude: float = Field(1e-4, ge=0.0, description="Silence gate for marker tones.")
    noise_window: int = Field(64, ge=1, description="Windows in the trailing noise floor.")
    clarity_tolerance: float = Field(0.9, gt=0.0, le=1.0, description="Alignment plateau threshold.")
    min_header_clarity: float = Field(0.3, ge=0.0, le=1.0, description="Header group clarity gate.")
    min_clarity: float = Field(0.6, gt=0.0, le=1.0, description="Clarity gate without a header.")
    max_frame_seconds: float | None = Field(None, gt=0.0, description="Frame duration limit.")
    require_end_marker: bool = Field(False, description="Fail frames without an end marker.")


class DemodState(Enum):
    SEEKING_START_MARKER = "seeking_start_marker"
    RECEIVING = "receiving"
    SEEKING_END_MARKER = "seeking_end_marker"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = (DemodState.DONE, DemodState.FAILED, DemodState.CANCELLED)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class MarkerFound(Event):
    """A start or end marker; `position` is the estimated sample where it ends."""

    kind: MarkerKind
    position: int


class SymbolDecoded(Event):
    index: int
    group: tuple[int, ...]


class FrameComplete(Event):
    payload: bytes


class FrameFailed(Event):
    reason: ModemError


class Demodulator:
    """Push-model receiver for one protocol."""

    def __init__(self, params, config=None):
        self.params = params
        self.config = config or DemodulatorConfig()

        self._frame = params.samples_per_frame
        self._hop = max(1, self._frame // self.config.hop_divisor)
        self._gap_limit = self._frame
        self._max_run = params.marker_samples + 2 * self._frame
        self._min_span = max(
            self._hop, int(params.marker_samples * self.config.min_marker_fraction) - self._frame
        )

        tones = params.tone_frequencies()
        self._marker_bank = ToneBank(tones, self._frame, params.sample_rate)
        # Symbols are analysed over whole frames, half a frame in from each
        # edge, so small alignment errors stay inside the symbol.
        self._symbol_margin = self._frame // 2
        self._symbol_bank = ToneBank(
            tones, (params.frames_per_symbol - 1) * self._frame, params.sample_rate
        )

        start_on, start_off = marker_slots(MarkerKind.START)
        end_on, end_off = marker_slots(MarkerKind.END)
        self._start_slots = (np.array(start_on), np.array(start_off))
        self._end_slots = (np.array(end_on), np.array(end_off))

        self._max_groups = frame.max_group_count(params)
        if self.config.max_frame_seconds is not None:
            self._max_frame_samples = int(self.config.max_frame_seconds * params.sample_rate)
        else:
            max_groups = math.ceil((fec.HEADER_LENGTH + fec.MAX_BLOCK_SIZE) / 3.0)
            self._max_frame_samples = max_groups * params.symbol_samples + 4 * self._frame

        self._noise = deque(maxlen=self.config.noise_window)
        self.reset()

    # --- Public API ---

    @property
    def state(self):
        return self._state

    @property
    def symbols(self):
        """Symbol groups decoded so far for the current frame."""
        return list(self._groups)

    def reset(self):
        """Discards all state and re-arms the start marker search."""
        self._state = DemodState.SEEKING_START_MARKER
        self._buffer = np.zeros(0, dtype=np.float32)
        self._offset = 0
        self._scan = 0
        self._run_start = None
        self._run_last = None
        self._noise.clear()
        self._clear_frame()
        self._end_scan = None
        self._end_limit = None
        self.detected = False
        self.result = None

    def cancel(self):
        """Stops consuming samples and drops any partial frame."""
        self._buffer = np.zeros(0, dtype=np.float32)
        self._clear_frame()
        self._state = DemodState.CANCELLED
        self.result = None
        logger.debug("Demodulator cancelled")

    def feed(self, samples):
        """Consumes samples and returns the events they produced."""
        if self._state in _TERMINAL:
            return []
        chunk = as_float_samples(samples)
        if chunk.size:
            self._buffer = np.concatenate([self._buffer, chunk])
        events = []
        self._process(events)
        self._trim()
        return events

    def finish(self):
        """Signals the end of the stream and settles any open frame."""
        if self._state in _TERMINAL:
            return []
        events = []
        if self._state is DemodState.SEEKING_START_MARKER:
            # Silence after the stream lets a marker run at the very end close.
            pad = np.zeros(self._gap_limit + self._hop + self._frame, dtype=np.float32)
            self._buffer = np.concatenate([self._buffer, pad])
            self._seek_start(events)
        if self._state is DemodState.RECEIVING:
            if self._blind:
                self._fail(events, self._frame_error or UncorrectableError(
                    "Stream ended before any frame length decoded"
                ))
            else:
                self._fail(events, Timeout("Stream ended before the frame was complete"))
        elif self._state is DemodState.SEEKING_END_MARKER:
            self._finalize(events, end_found=False)
        self._trim()
        return events

    # --- State machine ---

    @property
    def _end(self):
        return self._offset + len(self._buffer)

    def _clear_frame(self):
        self._candidates = None
        self._frame_start = None
        self._origin = None
        self._n_groups = None
        self._groups = []
        self._blind = False
        self._payload = None
        self._frame_error = None

    def _process(self, events):
        while True:
            if self._state is DemodState.SEEKING_START_MARKER:
                progressed = self._seek_start(events)
            elif self._state is DemodState.RECEIVING:
                progressed = self._receive(events)
            elif self._state is DemodState.SEEKING_END_MARKER:
                progressed = self._seek_end(events)
            else:
                return
            if not progressed:
                return

    def _noise_floor(self):
        if not self._noise:
            return 0.0
        return float(np.median(self._noise))

    def _marker_match(self, levels, slots):
        on, off = slots
        on_levels, off_levels = levels[on], levels[off]
        if np.count_nonzero(on_levels > off_levels) < MARKER_PAIRS - self.config.marker_bit_tolerance:
            return False
        on_mean = float(np.mean(on_levels))
        if on_mean < self.config.min_amplitude:
            return False
        reference = max(float(np.mean(off_levels)), self._noise_floor())
        return on_mean >= self.config.marker_snr * reference

    def _windows(self, position, limit=None):
        # Marker windows from `position`, at most WINDOW_BATCH of them at a time.
        start = position - self._offset
        stop = start + (WINDOW_BATCH - 1) * self._hop + self._frame
        if limit is not None:
            stop = min(stop, limit - self._offset)
        return self._marker_bank.sliding(self._buffer[start:stop], self._hop)

    def _seek_start(self, events):
        while True:
            levels_per_window = self._windows(self._scan)
            if not len(levels_per_window):
                return False
            for levels in levels_per_window:
                position = self._scan
                self._scan += self._hop
                if self._marker_match(levels, self._start_slots):
                    if self._run_start is None:
                        self._run_start = position
                    self._run_last = position
                    # A chord held longer than a marker keeps only its tail.
                    self._run_start = max(self._run_start, position - self._max_run)
                    continue
                self._noise.append(float(np.mean(levels)))
                if self._run_start is not None and position - self._run_last > self._gap_limit:
                    if self._close_start_run(events):
                        return True

    def _close_start_run(self, events):
        run_start, run_last = self._run_start, self._run_last
        self._run_start = self._run_last = None
        if run_last - run_start < self._min_span:
            logger.debug(f"Ignoring short marker-like run at sample {run_start}")
            return False

        # The run's first window can open before the marker and its last one
        # can reach past it, so bracket the data origin from both ends.
        early = run_start + self.params.marker_samples
        late = run_last + self._frame
        lo = max(min(early, late) - self._frame // 2, self._offset)
        hi = max(early, late) + self._frame // 2
        self._clear_frame()
        self._candidates = np.arange(lo, hi + 1, max(1, self._hop // 2))
        self._frame_start = lo
        self._state = DemodState.RECEIVING

        position = (early + late) // 2
        events.append(MarkerFound(kind=MarkerKind.START, position=position))
        logger.debug(f"Start marker detected, data expected near sample {position}")
        return True

    def _timed_out(self, need):
        return need - self._frame_start > self._max_frame_samples

    def _receive(self, events):
        symbol_samples = self.params.symbol_samples
        if self._origin is None:
            # Alignment looks at the header group and the one after it.
            need = int(self._candidates[-1]) + 2 * symbol_samples
            if self._timed_out(need):
                return self._fail(events, Timeout("Frame exceeds the maximum frame duration"))
            if self._end < need:
                return False
            return self._align(events)

        index = len(self._groups)
        if self._payload is not None:
            self._end_scan = self._origin + index * symbol_samples - self._frame // 2
            self._end_limit = self._end_scan + self.params.marker_samples + self._frame
            self._state = DemodState.SEEKING_END_MARKER
            return True

        start = self._origin + index * symbol_samples + self._symbol_margin
        need = start + self._symbol_bank.window_length
        if self._timed_out(need):
            return self._fail(events, Timeout("Frame exceeds the maximum frame duration"))
        if self._end < need:
            return False

        group = self._decode_group(start)
        self._groups.append(group)
        events.append(SymbolDecoded(index=index, group=group))
        return self._try_frame(events)

    def _try_frame(self, events):
        n = len(self._groups)
        if not self._blind:
            if n < self._n_groups:
                return True
            try:
                self._payload = frame.decode_frame(self._groups, self.params)
                return True
            except ModemError as e:
                logger.debug(f"Frame unreadable at its declared length ({e}), trying longer frames")
                self._frame_error = e
                self._blind = True
        else:
            try:
                self._payload = frame.recover_frame(self._groups, self.params)
                logger.debug(f"Frame recovered without its header: {n} symbol groups")
                return True
            except UncorrectableError:
                pass
        if n >= self._max_groups:
            return self._fail(events, self._frame_error or UncorrectableError(
                "No frame length up to the protocol maximum decodes"
            ))
        return True

    def _levels(self, start):
        i = start - self._offset
        window = self._buffer[i:i + self._symbol_bank.window_length]
        return self._symbol_bank.magnitudes(window).reshape(CHUNKS_PER_GROUP, TONES_PER_CHUNK)

    def _decode_group(self, start):
        # np.argmax keeps the lowest index on ties.
        return tuple(int(level) for level in np.argmax(self._levels(start), axis=1))

    def _candidate_levels(self, offsets, step, index):
        # Tone levels of symbol group `index` for every candidate origin.
        i = int(offsets[0]) + index * self.params.symbol_samples + self._symbol_margin - self._offset
        span = self._buffer[i:i + (len(offsets) - 1) * step + self._symbol_bank.window_length]
        return self._symbol_bank.sliding(span, step).reshape(-1, CHUNKS_PER_GROUP, TONES_PER_CHUNK)

    def _align(self, events):
        offsets = self._candidates
        step = int(offsets[1] - offsets[0]) if len(offsets) > 1 else 1
        headers = self._candidate_levels(offsets, step, 0)
        following = self._candidate_levels(offsets, step, 1)

        header_clarity = np.full(len(offsets), -1.0)
        lengths = {}
        limit = fec.max_payload_length(self.params)
        for k, candidate in enumerate(headers):
            clarity = tone_clarity(candidate)
            if clarity < self.config.min_header_clarity:
                continue
            group = tuple(int(level) for level in np.argmax(candidate, axis=1))
            try:
                payload_length = frame.decode_header_group(group)
                n_groups = frame.group_count(payload_length, self.params)
            except ModemError:
                continue
            if payload_length > limit:
                continue
            header_clarity[k] = clarity
            lengths[k] = (payload_length, n_groups)

        if lengths:
            scores = header_clarity
        else:
            scores = np.array([tone_clarity(levels) for levels in following])
            if scores.max() < self.config.min_clarity:
                # A marker-like sound with no data after it: keep listening.
                logger.debug("No readable header or data tones after start marker, re-arming")
                self._candidates = None
                self._state = DemodState.SEEKING_START_MARKER
                return True

        best = int(np.argmax(scores))
        threshold = scores[best] * self.config.clarity_tolerance
        left = right = best
        while left > 0 and scores[left - 1] >= threshold:
            left -= 1
        while right < len(offsets) - 1 and scores[right + 1] >= threshold:
            right += 1
        choice = (left + right) // 2
        if lengths and choice not in lengths:
            choice = best

        self._origin = int(offsets[choice])
        self.detected = True
        if lengths:
            payload_length, self._n_groups = lengths[choice]
            logger.debug(
                f"Aligned frame at sample {self._origin}: {payload_length} bytes "
                f"in {self._n_groups} symbol groups"
            )
        else:
            self._blind = True
            logger.debug(f"Aligned frame at sample {self._origin} without a readable header")
        return True

    def _seek_end(self, events):
        limit = self._end_limit
        while self._end_scan <= limit:
            levels_per_window = self._windows(self._end_scan, limit + self._frame)
            if not len(levels_per_window):
                return False
            for levels in levels_per_window:
                position = self._end_scan
                self._end_scan += self._hop
                if self._marker_match(levels, self._end_slots):
                    if self._run_start is None:
                        self._run_start = position
                    self._run_last = position
                    if self._run_last - self._run_start >= self._min_span:
                        events.append(MarkerFound(kind=MarkerKind.END, position=position + self._frame))
                        logger.debug(f"End marker detected at sample {self._run_start}")
                        return self._finalize(events, end_found=True)
                elif self._run_start is not None and position - self._run_last > self._gap_limit:
                    self._run_start = self._run_last = None

        if self._end_scan > limit:
            logger.debug("No end marker after the last symbol group")
            return self._finalize(events, end_found=False)
        return False

    def _finalize(self, events, end_found):
        self._run_start = self._run_last = None
        if not end_found and self.config.require_end_marker:
            return self._fail(events, Timeout("No end marker after the frame"))
        payload = self._payload
        self._state = DemodState.DONE
        self.result = payload
        events.append(FrameComplete(payload=payload))
        logger.debug(f"Frame decoded: {len(payload)} bytes")
        return True

    def _fail(self, events, error):
        self._state = DemodState.FAILED
        self.result = error
        events.append(FrameFailed(reason=error))
        logger.debug(f"Frame failed: {error}")
        return True

    def _trim(self):
        if self._state in _TERMINAL:
            self._offset = self._end
            self._buffer = np.zeros(0, dtype=np.float32)
            return
        if self._state is DemodState.SEEKING_START_MARKER:
            keep = self._scan if self._run_start is None else min(self._scan, self._run_start)
            keep -= self._frame
        elif self._state is DemodState.RECEIVING:
            if self._origin is None:
                keep = int(self._candidates[0])
            else:
                keep = self._origin + len(self._groups) * self.params.symbol_samples - self._frame
        else:
            keep = self._end_scan
        drop = keep - self._offset
        if drop > 0:
            self._buffer = self._buffer[drop:]
            self._offset = keep
