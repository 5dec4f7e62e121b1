from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Protocol

import numpy as np

from PySide6 import QtCore

from audio.analyzer import ExternalProcessManager
from buffers import FrameSlot, PcmWindow, analysis_window_frames
from config import (
    COMPRESSION_GAIN,
    FFT_MIN_SIZE,
    PEAK_FLOOR,
    PEAK_HALF_LIFE_SEC,
    SMOOTHING_ALPHA,
    SPECTRUM_BARS,
    SPECTRUM_F_MAX_HZ,
    SPECTRUM_F_MIN_HZ,
    SPECTRUM_HZ,
)
from models import AnalyzerState, SpectrumFrame

logger = logging.getLogger(__name__)


class PcmProvider(Protocol):
    sample_rate: int

    @property
    def pcm_window(self) -> PcmWindow: ...


def log_bucket_edges(n_fft: int, sample_rate: int, bars: int,
                     f_min: float = SPECTRUM_F_MIN_HZ, f_max: float = SPECTRUM_F_MAX_HZ) -> np.ndarray:
    """
    rfft bin boundaries for `bars` log-spaced bands, shape (bars, 2) as [lo, hi).

    Every band covers at least one bin.
    """
    n_bins = n_fft // 2 + 1
    f_max = min(f_max, sample_rate / 2.0)
    f_min = min(f_min, f_max / 2.0)
    freqs = np.geomspace(f_min, f_max, bars + 1)
    idx = np.floor(freqs * n_fft / float(sample_rate)).astype(np.int64)
    edges = np.zeros((bars, 2), dtype=np.int64)
    for i in range(bars):
        lo = min(int(idx[i]), n_bins - 1)
        hi = max(lo + 1, min(int(idx[i + 1]), n_bins))
        edges[i] = (lo, hi)
    return edges


def compress(m: np.ndarray, gain: float = COMPRESSION_GAIN) -> np.ndarray:
    gain = max(1e-6, float(gain))
    return np.log1p(gain * np.maximum(m, 0.0)) / np.log1p(gain)


class SpectrumSource:
    """A producer of SpectrumFrames; next_frame returns None when nothing new is available."""
    name = ""

    def next_frame(self, now: float) -> Optional[SpectrumFrame]:
        raise NotImplementedError

    def reset(self) -> None:
        pass


class InternalFFT(SpectrumSource):
    """
    Spectrum from the most recent audible PCM.

    Hann window, rfft magnitudes, log bucketing, log1p compression, normalization
    against a decaying peak, optional EMA.
    """
    name = "internal"

    def __init__(
        self,
        pcm: PcmProvider,
        frame_rate: float = SPECTRUM_HZ,
        bars: int = SPECTRUM_BARS,
        channels: int = 1,
        smoothing: bool = True,
        compression_gain: float = COMPRESSION_GAIN,
        peak_half_life_sec: float = PEAK_HALF_LIFE_SEC,
    ):
        self._pcm = pcm
        self.frame_rate = float(frame_rate)
        self.bars = int(bars)
        self.channels = 2 if channels == 2 else 1
        self.smoothing = bool(smoothing)
        self.compression_gain = float(compression_gain)
        self.peak_half_life_sec = max(1e-3, float(peak_half_life_sec))
        self._sample_rate = 0
        self.fft_size = FFT_MIN_SIZE
        self._hann = np.hanning(self.fft_size).astype(np.float32)
        self._amp_scale = 1.0
        self._edges = np.zeros((self.bars, 2), dtype=np.int64)
        self.reset()

    def reset(self) -> None:
        self._last_generation = -1
        self._peak = PEAK_FLOOR
        self._last_now: Optional[float] = None
        self._ema: Optional[np.ndarray] = None

    def _configure(self, sample_rate: int) -> None:
        self._sample_rate = int(sample_rate)
        self.fft_size = analysis_window_frames(sample_rate, self.frame_rate, FFT_MIN_SIZE)
        self._hann = np.hanning(self.fft_size).astype(np.float32)
        # A full-scale sine maps to a magnitude of ~1.0.
        self._amp_scale = 2.0 / float(np.sum(self._hann))
        self._edges = log_bucket_edges(self.fft_size, self._sample_rate, self.bars)
        self.reset()

    def set_bars(self, bars: int) -> None:
        bars = max(1, int(bars))
        if bars == self.bars:
            return
        self.bars = bars
        if self._sample_rate:
            self._configure(self._sample_rate)
        else:
            self.reset()

    def _band_values(self, x: np.ndarray) -> np.ndarray:
        mags = np.abs(np.fft.rfft(x * self._hann)) * self._amp_scale
        edges = self._edges
        out = np.empty(edges.shape[0], dtype=np.float64)
        for i, (lo, hi) in enumerate(edges):
            out[i] = mags[lo:hi].mean()
        return compress(out, self.compression_gain)

    def next_frame(self, now: float) -> Optional[SpectrumFrame]:
        window = self._pcm.pcm_window
        sample_rate = int(self._pcm.sample_rate)
        generation, data = window.snapshot()
        if sample_rate != self._sample_rate:
            self._configure(sample_rate)
        if generation == self._last_generation:
            return None
        self._last_generation = generation

        if data.shape[0] == 0:
            self._ema = None
            return SpectrumFrame.silent(self.bars, self.channels, source=self.name)

        n = self.fft_size
        if data.shape[0] >= n:
            block = data[-n:, :]
        else:
            block = np.zeros((n, data.shape[1]), dtype=np.float32)
            block[n - data.shape[0]:, :] = data

        if self.channels == 2 and block.shape[1] >= 2:
            rows = [self._band_values(block[:, 0]), self._band_values(block[:, 1])]
        else:
            rows = [self._band_values(block.mean(axis=1))]
        values = np.nan_to_num(np.stack(rows), nan=0.0, posinf=0.0, neginf=0.0)

        dt = 0.0 if self._last_now is None else max(0.0, now - self._last_now)
        self._last_now = now
        decay = 0.5 ** (dt / self.peak_half_life_sec)
        self._peak = max(self._peak * decay, float(values.max()), PEAK_FLOOR)
        normalized = np.clip(values / self._peak, 0.0, 1.0)

        if self.smoothing:
            if self._ema is None or self._ema.shape != normalized.shape:
                self._ema = normalized
            else:
                self._ema = SMOOTHING_ALPHA * normalized + (1.0 - SMOOTHING_ALPHA) * self._ema
            normalized = self._ema

        normalized = normalized.astype(np.float32)
        right = normalized[1] if normalized.shape[0] == 2 else None
        return SpectrumFrame(left=normalized[0], right=right, timestamp=now, source=self.name)


class ExternalAnalyzer(SpectrumSource):
    """Bars read from the supervised analyzer process; values are range-normalized only."""
    name = "external"

    def __init__(self, manager: ExternalProcessManager):
        self.manager = manager

    def next_frame(self, now: float) -> Optional[SpectrumFrame]:
        state = self.manager.check_health(now)
        if state != AnalyzerState.RUNNING:
            return None
        bars = self.manager.latest_bars()
        if bars is None:
            return None
        return SpectrumFrame(left=np.clip(bars, 0.0, 1.0), timestamp=now, source=self.name)


class SpectrumService(QtCore.QObject):
    """
    Keeps the latest SpectrumFrame current at a fixed rate.

    The external analyzer is preferred; its transition to FAILED switches the active
    source to InternalFFT for good. The last frame is held whenever a source has
    nothing new.
    """
    sourceChanged = QtCore.Signal(str)

    def __init__(
        self,
        pcm: PcmProvider,
        manager: Optional[ExternalProcessManager] = None,
        frame_rate: float = SPECTRUM_HZ,
        bars: int = SPECTRUM_BARS,
        smoothing: bool = True,
        use_external: bool = True,
        parent=None,
    ):
        super().__init__(parent)
        self._pcm = pcm
        self.frame_rate = float(frame_rate)
        self.bars = int(bars)
        self._internal = InternalFFT(pcm, frame_rate=frame_rate, bars=bars, smoothing=smoothing)
        if use_external and manager is None:
            manager = ExternalProcessManager(framerate_hz=int(frame_rate), bars=bars)
        self._manager = manager
        self._external = ExternalAnalyzer(manager) if manager is not None else None
        self._lock = threading.Lock()
        if self._external is not None and manager.state != AnalyzerState.FAILED:
            self._active: SpectrumSource = self._external
        else:
            self._active = self._internal
        self._slot = FrameSlot(SpectrumFrame.silent(self.bars, source=self._active.name))
        self._thread: Optional[SpectrumThread] = None
        if manager is not None:
            # Direct: the FAILED transition is raised on worker threads.
            manager.stateChanged.connect(self._on_analyzer_state, QtCore.Qt.ConnectionType.DirectConnection)

    @property
    def manager(self) -> Optional[ExternalProcessManager]:
        return self._manager

    @property
    def active_source(self) -> SpectrumSource:
        return self._active

    @property
    def active_source_name(self) -> str:
        return self._active.name

    def set_bars(self, bars: int) -> None:
        """Resize frames to bars. A running analyzer is respawned with the new count."""
        bars = max(1, int(bars))
        if bars == self.bars:
            return
        with self._lock:
            self.bars = bars
            self._internal.set_bars(bars)
        manager = self._manager
        if manager is not None:
            manager.bars = bars
            if self._active is self._external and manager.state in (AnalyzerState.SPAWNING, AnalyzerState.RUNNING):
                manager.stop()
                manager.start()
        self._slot.update(SpectrumFrame.silent(bars, source=self._active.name))

    def _on_analyzer_state(self, state) -> None:
        if state == AnalyzerState.FAILED:
            self._switch_to_internal()

    def _switch_to_internal(self) -> None:
        with self._lock:
            if self._active is self._internal:
                return
            self._internal.reset()
            self._active = self._internal
        logger.info("Spectrum source switched to internal FFT")
        self.sourceChanged.emit(self._internal.name)

    def start(self, threaded: bool = True) -> None:
        if self._manager is not None and self._active is self._external:
            self._manager.start()
        if threaded and self._thread is None:
            self._thread = SpectrumThread(self, self.frame_rate)
            self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.stop()
            thread.join(timeout=2.0 / self.frame_rate)
        if self._manager is not None:
            self._manager.stop()
        self.reset()

    def reset(self) -> None:
        self._internal.reset()
        self._slot.update(SpectrumFrame.silent(self.bars, source=self._active.name))

    def produce_frame(self, now: Optional[float] = None) -> SpectrumFrame:
        if now is None:
            now = time.monotonic()
        source = self._active
        try:
            frame = source.next_frame(now)
            if frame is None and self._active is not source:
                frame = self._active.next_frame(now)
        except Exception:
            # Visualization faults must never propagate into playback.
            logger.exception("Spectrum source %s failed; holding last frame", source.name)
            frame = None
        if frame is not None:
            self._slot.update(frame)
        return self._slot.get_latest()

    def latest_frame(self) -> SpectrumFrame:
        return self._slot.get_latest()

    def oscilloscope_samples(self, frames: int) -> np.ndarray:
        """Most recent audible PCM as (frames, 2), zero-padded at the front."""
        frames = max(1, int(frames))
        _, data = self._pcm.pcm_window.snapshot()
        out = np.zeros((frames, 2), dtype=np.float32)
        if data.shape[0] == 0:
            return out
        take = data[-frames:, :]
        if take.shape[1] == 1:
            take = np.repeat(take, 2, axis=1)
        out[frames - take.shape[0]:, :] = take[:, :2]
        return out


class SpectrumThread(threading.Thread):
    """Drives SpectrumService.produce_frame at its frame rate."""

    def __init__(self, service: SpectrumService, frame_rate: float):
        super().__init__(daemon=True, name="spectrum")
        self._service = service
        self._interval = 1.0 / max(1.0, float(frame_rate))
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        next_at = time.monotonic()
        while not self._stop_event.is_set():
            self._service.produce_frame()
            next_at += self._interval
            delay = next_at - time.monotonic()
            if delay < 0:
                next_at = time.monotonic()
                delay = 0.0
            self._stop_event.wait(delay)
