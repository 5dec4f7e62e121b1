from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Optional, Sequence, Union

import numpy as np

from PySide6 import QtCore

from audio.decoder import PcmSource, open_source
from audio.sink import SoundDeviceSink
from buffers import AudioRingBuffer, PcmWindow, analysis_window_frames
from config import (
    BUFFER_PRESETS,
    CANCEL_TIMEOUT_SEC,
    DEFAULT_BUFFER_PRESET,
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    END_OF_TRACK_TOLERANCE_SEC,
    FADE_IN_SEC,
    FADE_OUT_FRAMES,
    FFT_MIN_SIZE,
    METRICS_ENV,
    PREVIOUS_RESTART_SEC,
    SPECTRUM_HZ,
)
from dsp import EqualizerEngine
from errors import OutputDeviceError, TrackUnreadable
from metadata import probe_track
from models import (
    BufferPreset,
    EqualizerBand,
    PlaybackSnapshot,
    PlaybackState,
    RepeatMode,
    Track,
)
from playlist import Playlist
from utils import clamp, env_flag

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Track, float, int, int], PcmSource]
SinkFactory = Callable[[int, int, BufferPreset], SoundDeviceSink]
Prober = Callable[[str], Track]

# Decoder + EQ thread
# -----------------------------

class DecoderThread(threading.Thread):
    """
    Pulls float32 PCM from a source, equalizes it, pushes into ring buffer.
    """
    def __init__(self,
                 source: PcmSource,
                 ring: AudioRingBuffer,
                 buffer_preset: BufferPreset,
                 equalizer: EqualizerEngine,
                 state_cb,
                 fade_in: bool = False):
        super().__init__(daemon=True)
        self.source = source
        self.ring = ring
        self.sample_rate = source.sample_rate
        self.equalizer = equalizer
        self._state_cb = state_cb
        self._stop_event = threading.Event()
        self._buffer_preset = buffer_preset
        self._read_frames = max(1, buffer_preset.blocksize_frames * 2)
        self._fade_in_total = max(1, int(FADE_IN_SEC * self.sample_rate))
        self._fade_in_remaining = self._fade_in_total if fade_in else 0

    def stop(self):
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _maybe_apply_fade_in(self, y: np.ndarray) -> np.ndarray:
        if self._fade_in_remaining <= 0 or y.size == 0:
            return y
        frames = y.shape[0]
        fade_frames = min(frames, self._fade_in_remaining)
        start_index = self._fade_in_total - self._fade_in_remaining
        ramp = (np.arange(start_index, start_index + fade_frames) + 1) / float(self._fade_in_total)
        y = np.array(y, dtype=np.float32, copy=True)
        y[:fade_frames] *= ramp[:, None]
        self._fade_in_remaining -= fade_frames
        return y

    def _process_audio_block(self, x: np.ndarray) -> np.ndarray:
        y = self.equalizer.process(x)
        return self._maybe_apply_fade_in(y)

    def run(self):
        prebuffer_sec = min(0.6, self._buffer_preset.target_sec)
        target_sec = self._buffer_preset.target_sec
        high_sec = self._buffer_preset.high_sec
        ready_sent = False

        try:
            # Warm-up until prebuffered
            while not self._stop_event.is_set():
                x = self.source.read(self._read_frames)
                if x is None:
                    break
                y = self._process_audio_block(x)
                if y.size:
                    self.ring.push_blocking(y, stop_event=self._stop_event)
                if self.ring.frames_available() >= int(prebuffer_sec * self.sample_rate):
                    break
            if not self._stop_event.is_set():
                ready_sent = True
                self._state_cb("ready", None)

            # Main loop
            while not self._stop_event.is_set():
                x = self.source.read(self._read_frames)
                if x is None:
                    break
                y = self._process_audio_block(x)
                if y.size:
                    self.ring.push_blocking(y, stop_event=self._stop_event)

                # Backpressure: keep buffer in a healthy range.
                target_frames = min(int(target_sec * self.sample_rate), int(self.ring.max_frames * 0.95))
                high_frames = min(int(high_sec * self.sample_rate), self.ring.max_frames)
                if self.ring.frames_available() > high_frames:
                    while (not self._stop_event.is_set()) and self.ring.frames_available() > target_frames:
                        time.sleep(0.01)

        except (TrackUnreadable, OSError, ValueError) as e:
            self._state_cb("error", f"Decoder error: {e}")
        finally:
            self.source.close()
            if not self._stop_event.is_set():
                if not ready_sent:
                    self._state_cb("ready", None)
                self._state_cb("eof", None)


# -----------------------------
# Playback session
# -----------------------------

class PlaybackSession(QtCore.QObject):
    """
    Transport state, position, volume and repeat/shuffle policy for one playlist.

    Pipeline: source -> DecoderThread (EQ) -> AudioRingBuffer -> sink callback
    (volume) -> PcmWindow. The sink callback never takes the session lock.
    """
    stateChanged = QtCore.Signal(object)        # PlaybackState
    trackChanged = QtCore.Signal(object)        # Track
    errorOccurred = QtCore.Signal(str)
    trackFinished = QtCore.Signal()
    volumeChanged = QtCore.Signal(float)
    repeatModeChanged = QtCore.Signal(object)   # RepeatMode

    def __init__(
        self,
        source_factory: Optional[SourceFactory] = None,
        sink_factory: Optional[SinkFactory] = None,
        prober: Optional[Prober] = None,
        buffer_preset: Optional[str] = None,
        channels: int = DEFAULT_CHANNELS,
        metrics_enabled: bool = False,
        rng=None,
        parent=None,
    ):
        super().__init__(parent)
        self._source_factory = source_factory or open_source
        self._sink_factory = sink_factory or SoundDeviceSink
        self._prober = prober or probe_track

        preset_name = buffer_preset if buffer_preset in BUFFER_PRESETS else DEFAULT_BUFFER_PRESET
        self._buffer_preset_name = preset_name
        self._buffer_preset = BUFFER_PRESETS[preset_name]

        self.channels = int(channels)
        self.sample_rate = DEFAULT_SAMPLE_RATE
        self._lock = threading.RLock()

        self.state = PlaybackState.STOPPED
        self.track: Optional[Track] = None
        self.playlist = Playlist(rng=rng)
        self._repeat_mode = RepeatMode.SEQUENTIAL
        self._volume = 1.0

        self._equalizer = EqualizerEngine(self.sample_rate, self.channels)
        self._ring = self._make_ring()
        self._pcm_window = self._make_pcm_window()
        self._decoder: Optional[DecoderThread] = None
        self._decoder_gen = 0
        self._sink: Optional[SoundDeviceSink] = None
        self._sink_error: Optional[str] = None
        # Written by the PortAudio thread, drained under the session lock.
        self._sink_faults: deque[str] = deque()
        self._cb_underflows = 0
        self._primed = False
        self._decoder_eof = False

        self._position_sec = 0.0
        self._last_tick = time.monotonic()

        self._fade_out_ramp = np.linspace(1.0, 0.0, FADE_OUT_FRAMES, dtype=np.float32)
        self._metrics_enabled = bool(metrics_enabled) or env_flag(METRICS_ENV)
        self._metrics_last_log = time.monotonic()
        self._callback_time_total = 0.0
        self._callback_time_max = 0.0
        self._callback_calls = 0

    # Construction helpers
    # -----------------------------

    def _make_ring(self) -> AudioRingBuffer:
        return AudioRingBuffer(
            self.channels,
            max_seconds=self._buffer_preset.ring_max_seconds,
            sample_rate=self.sample_rate,
        )

    def _make_pcm_window(self) -> PcmWindow:
        frames = analysis_window_frames(self.sample_rate, SPECTRUM_HZ, FFT_MIN_SIZE)
        return PcmWindow(self.channels, frames)

    def _configure_rate(self, sample_rate: int) -> None:
        sample_rate = int(sample_rate) if sample_rate > 0 else DEFAULT_SAMPLE_RATE
        if sample_rate == self.sample_rate:
            return
        logger.debug("Output rate %d -> %d Hz", self.sample_rate, sample_rate)
        self.sample_rate = sample_rate
        self._equalizer = EqualizerEngine(sample_rate, self.channels, self._equalizer.bands)
        self._ring = self._make_ring()
        self._pcm_window = self._make_pcm_window()
        if self._sink is not None:
            self._sink.close()
            self._sink = None

    # Read-only views
    # -----------------------------

    @property
    def pcm_window(self) -> PcmWindow:
        return self._pcm_window

    @property
    def equalizer(self) -> EqualizerEngine:
        return self._equalizer

    @property
    def repeat_mode(self) -> RepeatMode:
        return self._repeat_mode

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def buffer_preset_name(self) -> str:
        return self._buffer_preset_name

    def get_position(self) -> float:
        return float(self._position_sec)

    def snapshot(self) -> PlaybackSnapshot:
        with self._lock:
            return PlaybackSnapshot(
                state=self.state,
                position_sec=self._position_sec,
                duration_sec=self.track.duration_sec if self.track else 0.0,
                track=self.track,
                volume=self._volume,
                repeat_mode=self._repeat_mode,
                index=self.playlist.index,
            )

    # Playlist + loading
    # -----------------------------

    def set_playlist(self, paths: Sequence[str], start_index: int = 0) -> None:
        with self._lock:
            self.playlist.set_items(paths, start_index)
            if len(self.playlist) == 0:
                self.stop()
                return
            self.load(self.playlist[self.playlist.index])

    def load(self, track: Union[Track, str]) -> Track:
        """
        Make track current, stopped at position 0.

        Raises TrackUnreadable and leaves the session untouched when the file cannot be
        probed.
        """
        with self._lock:
            if isinstance(track, str):
                track = self._prober(track)
            self._stop_pipeline(stop_sink=True)
            self._install_track(track)
            self._set_state(PlaybackState.STOPPED)
            self.trackChanged.emit(track)
            return track

    def _install_track(self, track: Track) -> None:
        self.track = track
        self._position_sec = 0.0
        self._last_tick = time.monotonic()
        idx = self.playlist.index_of(track.path)
        if idx >= 0:
            self.playlist.select(idx)
        self._configure_rate(track.sample_rate)
        logger.info("Loaded %s (%.1fs, %d Hz, %d ch)",
                    track.path, track.duration_sec, track.sample_rate, track.channels)

    # Pipeline
    # -----------------------------

    def _start_decoder(self, start_sec: float, fade_in: bool = False) -> None:
        assert self.track is not None
        source = self._source_factory(self.track, start_sec, self.sample_rate, self.channels)
        self._decoder_gen += 1
        gen = self._decoder_gen
        self._primed = False
        self._decoder_eof = False
        self._ring.clear()

        def state_cb(kind, msg):
            if gen != self._decoder_gen:
                return
            if kind == "ready":
                self._primed = True
            elif kind == "eof":
                self._decoder_eof = True
            elif kind == "error":
                logger.error("%s", msg)
                self._decoder_eof = True
                self.errorOccurred.emit(msg or "Unknown error")

        self._decoder = DecoderThread(
            source=source,
            ring=self._ring,
            buffer_preset=self._buffer_preset,
            equalizer=self._equalizer,
            state_cb=state_cb,
            fade_in=fade_in,
        )
        self._decoder.start()

    def _stop_decoder(self) -> None:
        decoder = self._decoder
        self._decoder = None
        self._decoder_gen += 1
        self._primed = False
        self._decoder_eof = False
        if decoder is None:
            return
        decoder.stop()
        decoder.source.interrupt()
        decoder.join(timeout=CANCEL_TIMEOUT_SEC)
        if decoder.is_alive():
            logger.debug("Decoder thread still draining after %.0f ms", CANCEL_TIMEOUT_SEC * 1000.0)

    def _stop_pipeline(self, stop_sink: bool) -> None:
        self._stop_decoder()
        if stop_sink and self._sink is not None:
            self._sink.stop()
        self._ring.clear()
        self._pcm_window.clear()
        self._equalizer.reset_state()

    def _ensure_sink(self) -> None:
        if self._sink is not None and self._sink_error is not None:
            self._sink.close()
            self._sink = None
        self._sink_error = None
        if self._sink is None:
            self._sink = self._sink_factory(self.sample_rate, self.channels, self._buffer_preset)
        self._sink.start(self._render, self._on_sink_error)

    def _start_pipeline(self, start_sec: float) -> None:
        """Starts decoding and output; on a device failure the session is left Paused."""
        self._start_decoder(start_sec)
        try:
            self._ensure_sink()
        except OutputDeviceError as e:
            logger.error("%s", e)
            self._set_state(PlaybackState.PAUSED)
            self.errorOccurred.emit(str(e))
            raise

    def _render(self, outdata: np.ndarray) -> None:
        start = time.perf_counter()
        self._callback_calls += 1
        if self.state != PlaybackState.PLAYING or not self._primed:
            outdata.fill(0)
            return

        frames = outdata.shape[0]
        filled = self._ring.pop_into(outdata)
        if filled < frames:
            fade_samples = min(filled, self._fade_out_ramp.shape[0])
            if fade_samples > 1:
                outdata[filled - fade_samples:filled] *= self._fade_out_ramp[:fade_samples, None]
        vol = self._volume
        if vol == 0.0:
            outdata.fill(0)
        elif vol != 1.0:
            outdata *= vol
        if filled:
            self._pcm_window.publish(outdata[:filled])

        elapsed = time.perf_counter() - start
        self._callback_time_total += elapsed
        if elapsed > self._callback_time_max:
            self._callback_time_max = elapsed

    def _on_sink_error(self, msg: str) -> None:
        # PortAudio thread: no lock, no signals. Applied by _poll_output.
        self._sink_faults.append(msg)

    def _poll_output(self) -> None:
        """Apply device loss and underruns reported since the last call: Paused, then errorOccurred."""
        messages = []
        while self._sink_faults:
            msg = self._sink_faults.popleft()
            self._sink_error = msg
            messages.append(msg)
        underflows = self._sink.consume_underflows() if self._sink is not None else 0
        self._cb_underflows += underflows
        if underflows and self.state == PlaybackState.PLAYING:
            messages.append(f"Audio output underrun ({underflows} blocks)")
        if not messages:
            return
        if self.state == PlaybackState.PLAYING:
            self._advance_clock()
            self._set_state(PlaybackState.PAUSED)
        for msg in messages:
            logger.warning("%s", msg)
            self.errorOccurred.emit(msg)

    # Transport
    # -----------------------------

    def play(self) -> bool:
        with self._lock:
            if self.track is None:
                return False
            self._poll_output()
            if self.state == PlaybackState.PLAYING:
                return True
            if self.state == PlaybackState.PAUSED:
                self._last_tick = time.monotonic()
                if self._decoder is None:
                    self._start_pipeline(self._position_sec)
                elif self._sink is None or self._sink_error is not None or not self._sink.active:
                    try:
                        self._ensure_sink()
                    except OutputDeviceError as e:
                        logger.error("%s", e)
                        self.errorOccurred.emit(str(e))
                        raise
                self._set_state(PlaybackState.PLAYING)
                return True

            self._start_pipeline(self._position_sec)
            self._last_tick = time.monotonic()
            self._set_state(PlaybackState.PLAYING)
            return True

    def pause(self) -> bool:
        with self._lock:
            if self.state == PlaybackState.PLAYING:
                self._advance_clock()
                self._set_state(PlaybackState.PAUSED)
            return self.state == PlaybackState.PAUSED

    def toggle(self) -> bool:
        with self._lock:
            if self.state == PlaybackState.PLAYING:
                return self.pause()
            return self.play()

    def stop(self) -> None:
        with self._lock:
            self._stop_pipeline(stop_sink=True)
            self._position_sec = 0.0
            self._set_state(PlaybackState.STOPPED)

    def seek(self, target_sec: float) -> None:
        with self._lock:
            if self.track is None:
                return
            target_sec = max(0.0, float(target_sec))
            dur = self.track.duration_sec
            if dur > 0 and target_sec + END_OF_TRACK_TOLERANCE_SEC >= dur:
                self._position_sec = dur
                self._handle_end_of_stream()
                return

            self._position_sec = target_sec
            self._last_tick = time.monotonic()
            if self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED):
                self._stop_decoder()
                self._pcm_window.clear()
                self._equalizer.reset_state()
                self._start_decoder(target_sec, fade_in=True)

    def set_volume(self, v: float) -> float:
        with self._lock:
            self._volume = clamp(float(v), 0.0, 1.0)
        self.volumeChanged.emit(self._volume)
        return self._volume

    def set_repeat_mode(self, mode: RepeatMode) -> None:
        with self._lock:
            previous = self._repeat_mode
            self._repeat_mode = mode
            if mode == RepeatMode.SHUFFLE and previous != RepeatMode.SHUFFLE:
                self.playlist.reshuffle()
        if mode != previous:
            self.repeatModeChanged.emit(mode)

    def cycle_repeat_mode(self) -> RepeatMode:
        mode = self._repeat_mode.cycle()
        self.set_repeat_mode(mode)
        return mode

    def next(self) -> bool:
        with self._lock:
            idx = self.playlist.advance(self._repeat_mode)
            if idx is None:
                return False
            return self._switch_to_index(idx)

    def previous(self) -> bool:
        with self._lock:
            if self.track is not None and self._position_sec > PREVIOUS_RESTART_SEC:
                self.seek(0.0)
                return True
            idx = self.playlist.retreat(self._repeat_mode)
            if idx is None:
                return False
            return self._switch_to_index(idx)

    def _switch_to_index(self, idx: int) -> bool:
        """Loads playlist entry idx keeping the transport state; unreadable files stop playback."""
        resume = self.state
        previous = self.track
        path = self.playlist[idx]
        # trackChanged goes out once the transport state for the new track is settled.
        try:
            track = self._prober(path)
            self._stop_pipeline(stop_sink=True)
            self._install_track(track)
            if resume in (PlaybackState.PLAYING, PlaybackState.PAUSED):
                self._start_pipeline(0.0)
        except TrackUnreadable as e:
            logger.error("Skipping playback: %s", e)
            self.errorOccurred.emit(str(e))
            self.stop()
            if self.track is not previous:
                self.trackChanged.emit(self.track)
            return False
        except OutputDeviceError:
            # Already Paused and reported by _start_pipeline.
            self.trackChanged.emit(track)
            return False
        self.trackChanged.emit(track)
        return True

    def _handle_end_of_stream(self) -> None:
        self.trackFinished.emit()
        idx = self.playlist.advance(self._repeat_mode)
        if idx is None:
            logger.info("End of playlist")
            self.stop()
            return
        self._switch_to_index(idx)

    # Clock
    # -----------------------------

    def _advance_clock(self, elapsed_sec: Optional[float] = None) -> None:
        now = time.monotonic()
        if elapsed_sec is None:
            elapsed_sec = now - self._last_tick
        self._last_tick = now
        if self.state == PlaybackState.PLAYING and elapsed_sec > 0:
            self._position_sec += float(elapsed_sec)
            dur = self.track.duration_sec if self.track is not None else 0.0
            if dur > 0:
                self._position_sec = min(self._position_sec, dur)

    def tick(self, elapsed_sec: Optional[float] = None) -> float:
        """
        Advance the playback clock and apply the repeat policy at natural completion.

        elapsed_sec overrides the wall clock, which tests and offline drivers use.
        """
        with self._lock:
            self._advance_clock(elapsed_sec)
            self._poll_output()
            self.log_metrics_if_needed()
            if self.state != PlaybackState.PLAYING or self.track is None:
                return self._position_sec

            # The clock runs ahead of the device; only a drained pipeline ends the track.
            drained = self._decoder_eof and self._primed and self._ring.frames_available() == 0
            if drained:
                self._handle_end_of_stream()
            return self._position_sec

    def log_metrics_if_needed(self) -> None:
        now = time.monotonic()
        if self.state != PlaybackState.PLAYING:
            self._metrics_last_log = now
            return
        elapsed = now - self._metrics_last_log
        if elapsed < 1.0:
            return
        self._metrics_last_log = now

        ring_underruns = self._ring.consume_underruns()
        cb_underflows = self._cb_underflows
        self._cb_underflows = 0
        if not self._metrics_enabled:
            return

        calls = self._callback_calls
        cb_avg_ms = (self._callback_time_total / calls) * 1000.0 if calls else 0.0
        cb_max_ms = self._callback_time_max * 1000.0
        self._callback_calls = 0
        self._callback_time_total = 0.0
        self._callback_time_max = 0.0
        ring_fill_frames = self._ring.frames_available()
        logger.info(
            "Audio metrics: buffer=%.2fs (frames=%d) ring_underruns=%.2f/s "
            "cb_underflows=%.2f/s cb_avg=%.2fms cb_max=%.2fms blocksize=%d",
            ring_fill_frames / float(self.sample_rate),
            ring_fill_frames,
            ring_underruns / elapsed,
            cb_underflows / elapsed,
            cb_avg_ms,
            cb_max_ms,
            self._buffer_preset.blocksize_frames,
        )

    # Equalizer
    # -----------------------------

    def equalizer_bands(self) -> tuple[EqualizerBand, ...]:
        return self._equalizer.bands

    def set_equalizer_bands(self, bands: Sequence[EqualizerBand]) -> None:
        self._equalizer.set_bands(bands)

    def reset_equalizer(self) -> None:
        self._equalizer.reset()

    # Lifecycle
    # -----------------------------

    def shutdown(self) -> None:
        with self._lock:
            self.stop()
            if self._sink is not None:
                self._sink.close()
                self._sink = None

    def _set_state(self, st: PlaybackState) -> None:
        if self.state != st:
            self.state = st
            logger.debug("Playback state -> %s", st.name)
            self.stateChanged.emit(st)
