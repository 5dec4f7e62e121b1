"""
Shared pytest fixtures for engine tests.
"""
import random
import sys
import time

import numpy as np
import pytest
from PySide6 import QtCore

from audio.decoder import PcmSource
from errors import OutputDeviceError, TrackUnreadable
from models import Track


@pytest.fixture(scope='session')
def qt_app():
    """Create QCoreApplication instance for tests."""
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication(sys.argv)
    yield app


def make_track(path, duration=10.0, sample_rate=44100, channels=2):
    return Track(path=path, duration_sec=duration, sample_rate=sample_rate, channels=channels, title=path)


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeSource(PcmSource):
    """Sine generator standing in for ffmpeg."""

    def __init__(self, track, start_sec, sample_rate, channels, freq=440.0, amplitude=0.5):
        self.track = track
        self.start_sec = start_sec
        self.sample_rate = sample_rate
        self.channels = channels
        self.freq = freq
        self.amplitude = amplitude
        self._pos = int(start_sec * sample_rate)
        self._total = int(track.duration_sec * sample_rate)
        self.closed = False

    @property
    def at_end(self):
        return self._pos >= self._total

    def read(self, max_frames):
        if self.closed or self._pos >= self._total:
            return None
        n = min(max_frames, self._total - self._pos)
        t = (np.arange(self._pos, self._pos + n) / float(self.sample_rate))
        self._pos += n
        mono = (self.amplitude * np.sin(2.0 * np.pi * self.freq * t)).astype(np.float32)
        return np.repeat(mono[:, None], self.channels, axis=1)

    def close(self):
        self.closed = True


class FakeSink:
    """Output sink that never touches an audio device."""

    def __init__(self, sample_rate, channels, preset, fail=False):
        self.sample_rate = sample_rate
        self.channels = channels
        self.preset = preset
        self.fail = fail
        self.render = None
        self.on_error = None
        self.started = 0
        self.stopped = 0
        self.closed = False
        self.underflows = 0
        self._active = False

    @property
    def active(self):
        return self._active

    def start(self, render, on_error):
        if self.fail:
            raise OutputDeviceError("Audio output error: no device")
        self.render = render
        self.on_error = on_error
        self.started += 1
        self._active = True

    def stop(self):
        self.stopped += 1
        self._active = False

    def close(self):
        self.stop()
        self.closed = True

    def consume_underflows(self):
        count = self.underflows
        self.underflows = 0
        return count

    def pull(self, frames):
        out = np.zeros((frames, self.channels), dtype=np.float32)
        self.render(out)
        return out


class SessionHarness:
    def __init__(self, paths, duration=10.0, unreadable=(), sink_fail=False, seed=0):
        from audio.engine import PlaybackSession

        self.tracks = {p: make_track(p, duration) for p in paths}
        self.unreadable = set(unreadable)
        self.sink_fail = sink_fail
        self.sinks = []
        self.sources = []
        self.errors = []
        self.states = []
        self.finished = 0
        self.session = PlaybackSession(
            source_factory=self._open_source,
            sink_factory=self._make_sink,
            prober=self._probe,
            buffer_preset="balanced",
            rng=random.Random(seed),
        )
        self.session.errorOccurred.connect(lambda value: self.errors.append(value))
        self.session.stateChanged.connect(lambda value: self.states.append(value))
        self.session.trackFinished.connect(self._on_finished)

    def _on_finished(self):
        self.finished += 1

    def _probe(self, path):
        if path in self.unreadable or path not in self.tracks:
            raise TrackUnreadable(path, "unsupported container")
        return self.tracks[path]

    def _open_source(self, track, start_sec, sample_rate, channels):
        src = FakeSource(track, start_sec, sample_rate, channels)
        self.sources.append(src)
        return src

    def _make_sink(self, sample_rate, channels, preset):
        sink = FakeSink(sample_rate, channels, preset, fail=self.sink_fail)
        self.sinks.append(sink)
        return sink

    @property
    def sink(self):
        return self.sinks[-1] if self.sinks else None

    def play_through(self, block=1024, timeout=10.0):
        """Render the current track through the sink until the session leaves it; returns frames rendered."""
        session = self.session
        finished = self.finished
        rendered = 0
        deadline = time.monotonic() + timeout
        while self.finished == finished and time.monotonic() < deadline:
            available = session._ring.frames_available()
            if session._primed and (available >= block or (session._decoder_eof and available > 0)):
                n = min(block, available)
                self.sink.pull(n)
                rendered += n
            else:
                time.sleep(0.001)
            session.tick(0.0)
        return rendered


@pytest.fixture
def harness(qt_app):
    """Factory for PlaybackSession wired to fake source, sink and prober."""
    created = []

    def _make(paths=("a.flac", "b.flac", "c.flac"), **kwargs):
        h = SessionHarness(list(paths), **kwargs)
        created.append(h)
        return h

    yield _make
    for h in created:
        h.session.shutdown()


@pytest.fixture
def settings_file(tmp_path):
    return str(tmp_path / "engine.ini")
