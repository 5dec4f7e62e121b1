"""
Tests for the ffmpeg-backed PCM source and the decoder thread.
"""
import stat
import sys
import threading

import numpy as np
import pytest

from audio import decoder
from audio.decoder import FfmpegSource, make_ffmpeg_cmd
from audio.engine import DecoderThread
from buffers import AudioRingBuffer
from config import BUFFER_PRESETS
from dsp import EqualizerEngine
from errors import TrackUnreadable
from tests.conftest import FakeSource, make_track


class OnesSource(FakeSource):
    def read(self, max_frames):
        if self._pos >= self._total:
            return None
        n = min(max_frames, self._total - self._pos)
        self._pos += n
        return np.ones((n, self.channels), dtype=np.float32)


FAKE_FFMPEG = """
import struct, sys
# 1000 stereo frames of a constant 0.25, written in odd-sized chunks.
data = struct.pack("<2000f", *([0.25] * 2000))
out = sys.stdout.buffer
for i in range(0, len(data), 333):
    out.write(data[i:i + 333])
    out.flush()
"""


@pytest.fixture
def fake_ffmpeg(tmp_path, monkeypatch):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    exe = bin_dir / "ffmpeg"
    exe.write_text(f"#!{sys.executable}\n{FAKE_FFMPEG}", encoding="utf-8")
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("PATH", str(bin_dir))
    return exe


def test_ffmpeg_command():
    cmd = make_ffmpeg_cmd("song.flac", 12.5, 48000, 2)
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-ss") + 1] == "12.5"
    assert cmd[cmd.index("-ar") + 1] == "48000"
    assert cmd[cmd.index("-f") + 1] == "f32le"


def test_missing_ffmpeg(monkeypatch):
    monkeypatch.setattr(decoder, "have_exe", lambda name: False)
    with pytest.raises(TrackUnreadable, match="ffmpeg"):
        FfmpegSource("song.flac", 0.0, 44100, 2)


def test_reads_whole_frames_until_eof(fake_ffmpeg):
    src = FfmpegSource("song.flac", 0.0, 44100, 2)
    total = 0
    try:
        while True:
            block = src.read(256)
            if block is None:
                break
            assert block.shape[1] == 2
            assert block.shape[0] <= 256
            np.testing.assert_allclose(block, 0.25)
            total += block.shape[0]
    finally:
        src.close()
    assert total == 1000
    assert src.at_end
    assert src.read(256) is None


class TestDecoderThread:
    def _run(self, source, fade_in=False):
        events = []
        done = threading.Event()
        ring = AudioRingBuffer(2, max_seconds=2.0, sample_rate=source.sample_rate)

        def state_cb(kind, msg):
            events.append(kind)
            if kind in ("eof", "error"):
                done.set()

        eq = EqualizerEngine(source.sample_rate, 2)
        t = DecoderThread(source, ring, BUFFER_PRESETS["balanced"], eq, state_cb, fade_in=fade_in)
        t.start()
        assert done.wait(5.0)
        t.join(1.0)
        self.thread = t
        return events, ring

    def test_short_track_reports_ready_then_eof(self):
        src = FakeSource(make_track("a.flac", duration=0.1), 0.0, 44100, 2)
        events, ring = self._run(src)
        assert events == ["ready", "eof"]
        assert ring.frames_available() == 4410
        assert src.closed

    def test_fade_in_ramps_from_silence(self):
        _, ring = self._run(OnesSource(make_track("a.flac", duration=0.1), 0.0, 44100, 2), fade_in=True)
        out = np.zeros((2000, 2), dtype=np.float32)
        ring.pop_into(out)
        assert out[0, 0] < 0.01
        assert out[-1, 0] == pytest.approx(1.0)
        assert np.all(np.diff(out[:882, 0]) >= 0)

    def test_source_error_is_reported(self):
        src = FakeSource(make_track("a.flac"), 0.0, 44100, 2)

        def broken(n):
            raise TrackUnreadable("a.flac", "corrupt frame")

        src.read = broken
        events, _ = self._run(src)
        assert "error" in events
        assert src.closed


    def test_finished_thread_joins_cleanly(self):
        self._run(FakeSource(make_track("a.flac", duration=0.05), 0.0, 44100, 2))
        self.thread.join()
        assert not self.thread.is_alive()
        assert not self.thread.stopped
