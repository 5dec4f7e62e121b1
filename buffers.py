from __future__ import annotations

import math
import threading
from collections import deque
from typing import Optional

import numpy as np

from models import SpectrumFrame


def analysis_window_frames(sample_rate: int, frame_rate: float, min_frames: int) -> int:
    """Next power of two covering one frame interval of audio, at least min_frames."""
    needed = max(1, int(math.ceil(float(sample_rate) / max(1e-3, float(frame_rate)))))
    size = 1 << (needed - 1).bit_length()
    return max(int(min_frames), size)


class AudioRingBuffer:
    """
    Thread-safe audio buffer as deque of numpy arrays.

    push_blocking(frames): frames (n, ch) float32, waits while full
    pop_into(out): fills provided buffer, zero-padded on underrun
    """

    def __init__(self, channels: int, max_seconds: float, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self.max_frames = max(1, int(max_seconds * sample_rate))
        self._dq: deque[np.ndarray] = deque()
        self._frames = 0
        self._underruns = 0
        self._lock = threading.Lock()
        self._not_full = threading.Condition(self._lock)

    def clear(self) -> None:
        with self._not_full:
            self._dq.clear()
            self._frames = 0
            self._not_full.notify_all()

    def frames_available(self) -> int:
        with self._lock:
            return self._frames

    def push(self, frames: np.ndarray) -> None:
        self.push_blocking(frames, stop_event=None)

    def push_blocking(self, frames: np.ndarray, stop_event: Optional[threading.Event]) -> None:
        if frames.size == 0:
            return
        if frames.dtype != np.float32:
            frames = frames.astype(np.float32, copy=False)
        if frames.ndim != 2 or frames.shape[1] != self.channels:
            raise ValueError(f"frames must be (n,{self.channels}) float32, got {frames.shape} {frames.dtype}")

        if frames.shape[0] > self.max_frames:
            frames = frames[:self.max_frames, :]

        offset = 0
        total = frames.shape[0]
        with self._not_full:
            while offset < total:
                if stop_event is not None and stop_event.is_set():
                    return
                space = self.max_frames - self._frames
                if space <= 0:
                    self._not_full.wait(timeout=0.05)
                    continue
                take = min(space, total - offset)
                self._dq.append(frames[offset : offset + take])
                self._frames += take
                offset += take

    def pop_into(self, out: np.ndarray) -> int:
        if out.ndim != 2 or out.shape[1] != self.channels:
            raise ValueError(f"out must be (n,{self.channels}) float32, got {out.shape} {out.dtype}")

        n = out.shape[0]
        if n <= 0:
            return 0

        idx = 0
        with self._not_full:
            while idx < n and self._dq:
                chunk = self._dq[0]
                take = min(n - idx, chunk.shape[0])
                out[idx : idx + take] = chunk[:take]
                idx += take
                if take == chunk.shape[0]:
                    self._dq.popleft()
                else:
                    self._dq[0] = chunk[take:, :]
                self._frames -= take
                self._not_full.notify_all()
            if idx < n:
                self._underruns += 1

        if idx < n:
            out[idx:n, :].fill(0)
        return idx

    def consume_underruns(self) -> int:
        with self._lock:
            underruns = self._underruns
            self._underruns = 0
            return underruns


class PcmWindow:
    """
    Single-slot handoff of the most recent audible PCM.

    The audio thread calls publish(); it owns the scratch array and swaps a fresh
    snapshot in by reference. Readers call snapshot() and never block the writer.
    An unread window is simply replaced by the next one.
    """

    def __init__(self, channels: int, window_frames: int):
        self.channels = int(channels)
        self.window_frames = max(1, int(window_frames))
        self._scratch = np.zeros((self.window_frames, self.channels), dtype=np.float32)
        self._filled = 0
        self._published = np.zeros((0, self.channels), dtype=np.float32)
        self._generation = 0

    def clear(self) -> None:
        self._filled = 0
        self._published = np.zeros((0, self.channels), dtype=np.float32)
        self._generation += 1

    def publish(self, frames: np.ndarray) -> None:
        if frames.size == 0:
            return
        if frames.ndim != 2 or frames.shape[1] != self.channels:
            raise ValueError(f"frames must be (n,{self.channels}), got {frames.shape}")
        window = self.window_frames
        n = frames.shape[0]
        if n >= window:
            self._scratch[:, :] = frames[-window:, :]
        else:
            self._scratch[:-n, :] = self._scratch[n:, :]
            self._scratch[-n:, :] = frames
        self._filled = min(window, self._filled + n)
        # Reference assignment is atomic; readers see the old or the new array, never a mix.
        self._published = self._scratch[window - self._filled :, :].copy()
        self._generation += 1

    def snapshot(self) -> tuple[int, np.ndarray]:
        return self._generation, self._published

    @property
    def generation(self) -> int:
        return self._generation


class FrameSlot:
    """
    Latest SpectrumFrame, published by reference swap.
    """

    def __init__(self, initial: SpectrumFrame):
        self._frame = initial

    def update(self, frame: SpectrumFrame) -> None:
        self._frame = frame

    def get_latest(self) -> SpectrumFrame:
        return self._frame
