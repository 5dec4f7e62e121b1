"""
Tests for PlaybackSession transport and repeat policy.
"""
import threading

import numpy as np
import pytest

from errors import OutputDeviceError, TrackUnreadable
from models import PlaybackState, RepeatMode
from tests.conftest import wait_until


class TestLoadAndTransport:
    def test_set_playlist_loads_first_track(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 0)
        assert h.session.track.path == "a.flac"
        assert h.session.state == PlaybackState.STOPPED
        assert h.session.get_position() == 0.0

    def test_load_unreadable_keeps_prior_state(self, harness):
        h = harness(unreadable=("bad.ogg",))
        h.session.set_playlist(list(h.tracks), 1)
        h.session.play()
        with pytest.raises(TrackUnreadable) as exc:
            h.session.load("bad.ogg")
        assert exc.value.path == "bad.ogg"
        assert h.session.track.path == "b.flac"
        assert h.session.state == PlaybackState.PLAYING

    def test_play_and_pause_are_idempotent(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        assert h.session.play() is True
        assert h.session.play() is True
        assert h.session.state == PlaybackState.PLAYING
        assert h.session.pause() is True
        assert h.session.pause() is True
        assert h.session.state == PlaybackState.PAUSED
        assert h.states.count(PlaybackState.PLAYING) == 1
        assert h.states.count(PlaybackState.PAUSED) == 1

    def test_play_without_track_is_refused(self, harness):
        h = harness()
        assert h.session.play() is False
        assert h.session.state == PlaybackState.STOPPED

    def test_toggle(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.toggle()
        assert h.session.state == PlaybackState.PLAYING
        h.session.toggle()
        assert h.session.state == PlaybackState.PAUSED
        h.session.toggle()
        assert h.session.state == PlaybackState.PLAYING

    def test_position_advances_only_while_playing(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.tick(1.0)
        assert h.session.get_position() == 0.0
        h.session.play()
        h.session.tick(1.5)
        assert h.session.get_position() == pytest.approx(1.5)
        h.session.pause()
        h.session.tick(2.0)
        assert h.session.get_position() == pytest.approx(1.5, abs=0.05)

    def test_stop_resets_position(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.tick(2.0)
        h.session.stop()
        assert h.session.state == PlaybackState.STOPPED
        assert h.session.get_position() == 0.0
        assert h.sink.stopped >= 1

    @pytest.mark.parametrize("requested,expected", [(1.5, 1.0), (-0.2, 0.0), (0.4, 0.4)])
    def test_volume_is_clamped(self, harness, requested, expected):
        h = harness()
        assert h.session.set_volume(requested) == pytest.approx(expected)
        assert h.session.volume == pytest.approx(expected)


class TestSeek:
    def test_seek_while_stopped_only_moves_position(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.seek(4.0)
        assert h.session.get_position() == 4.0
        assert h.sources == []

    def test_seek_while_playing_restarts_decoder_at_target(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.seek(6.0)
        assert h.session.state == PlaybackState.PLAYING
        assert h.sources[-1].start_sec == 6.0
        assert h.sources[0].closed or wait_until(lambda: h.sources[0].closed, timeout=1.0)

    def test_seek_keeps_paused_state(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.pause()
        h.session.seek(3.0)
        assert h.session.state == PlaybackState.PAUSED
        assert h.session.get_position() == 3.0

    def test_seek_beyond_duration_triggers_end_of_stream(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.seek(99.0)
        assert h.finished == 1
        assert h.session.track.path == "b.flac"
        assert h.session.get_position() == 0.0
        assert h.session.state == PlaybackState.PLAYING


class TestEndOfStream:
    def test_sequential_advances_then_stops(self, harness):
        h = harness(duration=1.0)
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        visited = [h.session.playlist.index]
        for _ in range(2):
            h.play_through()
            visited.append(h.session.playlist.index)
        assert visited == [0, 1, 2]
        h.play_through()
        assert h.session.state == PlaybackState.STOPPED
        assert h.session.get_position() == 0.0
        assert h.finished == 3

    def test_playlist_loop_wraps(self, harness):
        h = harness(duration=1.0)
        h.session.set_playlist(list(h.tracks), 2)
        h.session.set_repeat_mode(RepeatMode.PLAYLIST_LOOP)
        h.session.play()
        h.play_through()
        assert h.session.playlist.index == 0
        assert h.session.state == PlaybackState.PLAYING

    def test_single_loop_replays_same_track(self, harness):
        h = harness(duration=1.0)
        h.session.set_playlist(list(h.tracks), 1)
        h.session.set_repeat_mode(RepeatMode.SINGLE_LOOP)
        h.session.play()
        h.play_through()
        assert h.session.playlist.index == 1
        assert h.session.get_position() == 0.0
        assert h.sources[-1].start_sec == 0.0
        assert h.session.state == PlaybackState.PLAYING

    def test_every_frame_is_rendered_before_advancing(self, harness):
        h = harness(duration=1.0)
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        assert h.play_through() == 44100
        assert h.session.track.path == "b.flac"

    def test_clock_alone_does_not_end_track(self, harness):
        h = harness(duration=1.0)
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.tick(5.0)
        assert h.session.track.path == "a.flac"
        assert h.session.get_position() == 1.0
        assert h.finished == 0

    def test_shuffle_visits_every_track_once(self, harness):
        paths = [f"{i}.mp3" for i in range(6)]
        h = harness(paths, duration=0.5, seed=11)
        h.session.set_playlist(paths, 0)
        h.session.set_repeat_mode(RepeatMode.SHUFFLE)
        h.session.play()
        seen = []
        for _ in range(len(paths)):
            h.play_through()
            seen.append(h.session.playlist.index)
        assert sorted(seen) == list(range(len(paths)))

    def test_unreadable_next_track_stops_and_reports(self, harness):
        h = harness(duration=1.0, unreadable=("b.flac",))
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.play_through()
        assert h.session.state == PlaybackState.STOPPED
        assert any("b.flac" in msg for msg in h.errors)


class TestManualNavigation:
    def test_next_at_end_of_sequence_is_noop(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 2)
        assert h.session.next() is False
        assert h.session.track.path == "c.flac"

    def test_next_keeps_playing(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        assert h.session.next() is True
        assert h.session.track.path == "b.flac"
        assert h.session.state == PlaybackState.PLAYING

    def test_previous_wraps_in_playlist_loop(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 0)
        h.session.set_repeat_mode(RepeatMode.PLAYLIST_LOOP)
        assert h.session.previous() is True
        assert h.session.track.path == "c.flac"

    def test_previous_at_start_of_sequence_is_noop(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 0)
        assert h.session.previous() is False

    def test_previous_past_threshold_restarts_track(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 1)
        h.session.play()
        h.session.tick(5.0)
        assert h.session.previous() is True
        assert h.session.track.path == "b.flac"
        assert h.session.get_position() == 0.0

    def test_previous_in_shuffle_walks_history(self, harness):
        paths = [f"{i}.mp3" for i in range(5)]
        h = harness(paths, seed=4)
        h.session.set_playlist(paths, 0)
        h.session.set_repeat_mode(RepeatMode.SHUFFLE)
        h.session.next()
        first = h.session.playlist.index
        h.session.next()
        assert h.session.previous() is True
        assert h.session.playlist.index == first
        assert h.session.previous() is True
        assert h.session.playlist.index == 0

    def test_cycle_repeat_mode(self, harness):
        h = harness()
        modes = [h.session.cycle_repeat_mode() for _ in range(4)]
        assert modes == [
            RepeatMode.SHUFFLE,
            RepeatMode.PLAYLIST_LOOP,
            RepeatMode.SINGLE_LOOP,
            RepeatMode.SEQUENTIAL,
        ]


class TestOutput:
    def test_sink_failure_on_play_pauses_and_raises(self, harness):
        h = harness(sink_fail=True)
        h.session.set_playlist(list(h.tracks))
        with pytest.raises(OutputDeviceError):
            h.session.play()
        assert h.session.state == PlaybackState.PAUSED
        assert h.errors

    def test_device_loss_pauses(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.sink.on_error("Audio output device lost")
        h.session.tick(0.0)
        assert h.session.state == PlaybackState.PAUSED
        assert h.errors == ["Audio output device lost"]
        # Resuming opens a fresh stream.
        h.session.play()
        assert h.session.state == PlaybackState.PLAYING
        assert len(h.sinks) == 2

    def test_device_loss_is_applied_on_the_control_thread(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        reporter = threading.Thread(target=h.sink.on_error, args=("Audio output device lost",))
        reporter.start()
        reporter.join()
        assert h.session.state == PlaybackState.PLAYING
        assert h.errors == []
        h.session.tick(0.0)
        assert h.session.state == PlaybackState.PAUSED
        assert h.errors == ["Audio output device lost"]

    def test_output_underrun_pauses_and_notifies(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.sink.underflows = 2
        h.session.tick(0.0)
        assert h.session.state == PlaybackState.PAUSED
        assert h.errors == ["Audio output underrun (2 blocks)"]
        h.session.play()
        assert h.session.state == PlaybackState.PLAYING
        assert len(h.sinks) == 1

    def test_underruns_while_paused_are_only_counted(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        h.session.pause()
        h.sink.underflows = 1
        h.session.tick(0.0)
        assert h.session.state == PlaybackState.PAUSED
        assert h.errors == []

    def test_render_publishes_the_audible_block(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.set_volume(0.5)
        h.session.play()
        assert wait_until(lambda: h.session._primed)
        out = h.sink.pull(512)
        _, window = h.session.pcm_window.snapshot()
        assert window.shape == (512, 2)
        np.testing.assert_array_equal(out, window)
        assert 0.2 < np.max(np.abs(window)) <= 0.25 + 1e-6

    def test_render_is_silent_while_paused(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks))
        h.session.play()
        assert wait_until(lambda: h.session._primed)
        h.session.pause()
        out = h.sink.pull(256)
        assert not out.any()

    def test_snapshot(self, harness):
        h = harness()
        h.session.set_playlist(list(h.tracks), 1)
        snap = h.session.snapshot()
        assert snap.track.path == "b.flac"
        assert snap.index == 1
        assert snap.duration_sec == 10.0
        assert snap.repeat_mode == RepeatMode.SEQUENTIAL
