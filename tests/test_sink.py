"""
Tests for SoundDeviceSink against a stand-in sounddevice module.
"""
from types import SimpleNamespace

import numpy as np
import pytest

from audio import sink as sink_mod
from audio.sink import SoundDeviceSink
from config import BUFFER_PRESETS
from errors import OutputDeviceError


class PortAudioError(Exception):
    pass


class FakeStream:
    fail_open = False

    def __init__(self, **kwargs):
        if FakeStream.fail_open:
            raise PortAudioError("Error opening OutputStream: no default device")
        self.kwargs = kwargs
        self.active = False
        self.closed = False

    def start(self):
        self.active = True

    def stop(self):
        self.active = False
        if self.kwargs.get("finished_callback"):
            self.kwargs["finished_callback"]()

    def close(self):
        self.closed = True


@pytest.fixture
def fake_sd(monkeypatch):
    FakeStream.fail_open = False
    sd = SimpleNamespace(
        PortAudioError=PortAudioError,
        OutputStream=FakeStream,
    )
    monkeypatch.setattr(sink_mod, "sd", sd)
    return sd


@pytest.fixture
def sink(fake_sd):
    s = SoundDeviceSink(44100, 2, BUFFER_PRESETS["balanced"])
    yield s
    s.close()


def test_missing_backend(monkeypatch):
    monkeypatch.setattr(sink_mod, "sd", None)
    s = SoundDeviceSink(44100, 2, BUFFER_PRESETS["low"])
    with pytest.raises(OutputDeviceError):
        s.start(lambda out: None, lambda msg: None)


def test_open_failure_raises(sink):
    FakeStream.fail_open = True
    with pytest.raises(OutputDeviceError, match="no default device"):
        sink.start(lambda out: None, lambda msg: None)
    assert not sink.active


def test_callback_renders_and_counts_underflows(sink):
    sink.start(lambda out: out.fill(0.5), lambda msg: None)
    assert sink.active
    out = np.zeros((16, 2), dtype=np.float32)
    sink._callback(out, 16, None, SimpleNamespace(output_underflow=True))
    assert np.all(out == 0.5)
    assert sink.consume_underflows() == 1
    assert sink.consume_underflows() == 0


def test_unexpected_finish_reports_device_loss(sink):
    errors = []
    sink.start(lambda out: None, errors.append)
    sink._finished()
    assert errors == ["Audio output device lost"]


def test_requested_stop_is_silent(sink):
    errors = []
    sink.start(lambda out: None, errors.append)
    sink.stop()
    assert errors == []
    assert not sink.active

