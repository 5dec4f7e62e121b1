from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

try:
    import sounddevice as sd
    _sounddevice_import_error = None
except Exception as e:
    sd = None
    _sounddevice_import_error = e

from errors import OutputDeviceError
from models import BufferPreset

logger = logging.getLogger(__name__)

RenderFn = Callable[[np.ndarray], None]
ErrorFn = Callable[[str], None]


class SoundDeviceSink:
    """
    PortAudio output stream fed by a render callback.

    render(outdata) fills the device block in place on the PortAudio thread. Loss of the
    device, reported by the stream finishing on its own, goes to on_error.
    """

    def __init__(self, sample_rate: int, channels: int, preset: BufferPreset, device: Optional[int] = None):
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.preset = preset
        self.device = device
        self._stream = None
        self._render: Optional[RenderFn] = None
        self._on_error: Optional[ErrorFn] = None
        self._stopping = False
        self._lock = threading.Lock()
        self.underflows = 0
        self.callback_calls = 0
        self.callback_time_max = 0.0

    @property
    def active(self) -> bool:
        stream = self._stream
        return stream is not None and bool(stream.active)

    def start(self, render: RenderFn, on_error: ErrorFn) -> None:
        if sd is None:
            raise OutputDeviceError(f"sounddevice not available: {_sounddevice_import_error}")
        self._render = render
        self._on_error = on_error
        with self._lock:
            if self._stream is not None:
                if not self._stream.active:
                    try:
                        self._stream.start()
                    except sd.PortAudioError as e:
                        raise OutputDeviceError(f"Audio output error: {e}") from e
                return
            self._stopping = False
            try:
                self._stream = sd.OutputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=self.preset.blocksize_frames,
                    latency=self.preset.latency,
                    device=self.device,
                    callback=self._callback,
                    finished_callback=self._finished,
                )
                self._stream.start()
            except (sd.PortAudioError, ValueError) as e:
                self._stream = None
                raise OutputDeviceError(f"Audio output error: {e}") from e
        logger.info("Output stream opened: %d Hz, %d ch, blocksize=%d",
                    self.sample_rate, self.channels, self.preset.blocksize_frames)

    def _callback(self, outdata, frames, time_info, status):
        self.callback_calls += 1
        if status and getattr(status, "output_underflow", False):
            self.underflows += 1
        render = self._render
        if render is None:
            outdata.fill(0)
            return
        render(outdata)

    def _finished(self) -> None:
        if self._stopping:
            return
        on_error = self._on_error
        logger.warning("Output stream finished unexpectedly")
        if on_error is not None:
            on_error("Audio output device lost")

    def consume_underflows(self) -> int:
        count = self.underflows
        self.underflows = 0
        return count

    def stop(self) -> None:
        with self._lock:
            stream = self._stream
            self._stream = None
            self._stopping = True
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            logger.debug("Error closing output stream: %s", e)

    def close(self) -> None:
        self.stop()
        self._render = None
        self._on_error = None

