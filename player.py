from __future__ import annotations

import logging
from typing import Optional, Sequence

from PySide6 import QtCore

from audio.engine import PlaybackSession
from audio.spectrum import SpectrumService
from models import PlaybackState, RenderGrid, RepeatMode, Track, VisualizationConfig, VisualMode
from settings import EngineSettings
from visualizer import BAR_GLYPHS, BRAILLE_GLYPHS, map_frame

logger = logging.getLogger(__name__)


class PlayerEngine(QtCore.QObject):
    """
    Wires PlaybackSession, SpectrumService and EngineSettings together.

    The renderer calls render_grid() at its own tick; nothing here blocks on it.
    """
    errorOccurred = QtCore.Signal(str)

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        session: Optional[PlaybackSession] = None,
        spectrum: Optional[SpectrumService] = None,
        use_external_analyzer: bool = True,
        threaded_spectrum: bool = True,
        parent=None,
    ):
        super().__init__(parent)
        self.settings = settings or EngineSettings()
        self._viz_config = self.settings.visualization_config()
        self.session = session or PlaybackSession(buffer_preset=self.settings.buffer_preset())
        self.spectrum = spectrum or SpectrumService(
            self.session, bars=self._viz_config.bar_number, use_external=use_external_analyzer,
        )
        self.spectrum.set_bars(self._viz_config.bar_number)
        self._threaded_spectrum = bool(threaded_spectrum)

        self.session.set_volume(self.settings.volume())
        self.session.set_repeat_mode(self.settings.repeat_mode())
        self.session.set_equalizer_bands(self.settings.equalizer_bands())

        self.settings.visualizationChanged.connect(self._on_visualization_changed)
        self.settings.equalizerChanged.connect(self._on_equalizer_changed)
        self.session.stateChanged.connect(self._on_state_changed)
        self.session.trackChanged.connect(self._on_track_changed)
        self.session.volumeChanged.connect(self.settings.set_volume)
        self.session.repeatModeChanged.connect(self.settings.set_repeat_mode)
        self.session.errorOccurred.connect(self.errorOccurred)

    @property
    def visualization_config(self) -> VisualizationConfig:
        return self._viz_config

    # Settings notifications
    # -----------------------------

    def _on_visualization_changed(self, _config=None) -> None:
        self._viz_config = self.settings.visualization_config()
        self.spectrum.set_bars(self._viz_config.bar_number)

    def _on_equalizer_changed(self, _bands=None) -> None:
        self.session.set_equalizer_bands(self.settings.equalizer_bands())

    # Session notifications
    # -----------------------------

    def _on_state_changed(self, state: PlaybackState) -> None:
        if state == PlaybackState.PLAYING:
            self.spectrum.start(threaded=self._threaded_spectrum)
        elif state == PlaybackState.STOPPED:
            self.spectrum.stop()

    def _on_track_changed(self, _track: Track) -> None:
        # The analyzer does not outlive the track it was started for.
        self.spectrum.stop()
        if self.session.state == PlaybackState.PLAYING:
            self.spectrum.start(threaded=self._threaded_spectrum)

    # Commands
    # -----------------------------

    def open_playlist(self, paths: Sequence[str], start_index: int = 0, resume: bool = False) -> None:
        self.session.set_playlist(paths, start_index)
        track = self.session.track
        if resume and track is not None:
            pos = self.settings.resume_position(track.path)
            if pos > 0:
                self.session.seek(pos)

    def cycle_repeat_mode(self) -> RepeatMode:
        return self.session.cycle_repeat_mode()

    def reset_equalizer(self) -> None:
        self.session.reset_equalizer()
        self.settings.reset_equalizer()

    def tick(self) -> None:
        """Advance the session clock; also steps the spectrum when it has no thread of its own."""
        self.session.tick()
        if not self._threaded_spectrum and self.session.state == PlaybackState.PLAYING:
            self.spectrum.produce_frame()

    def render_grid(self, width: int, height: int) -> RenderGrid:
        config = self._viz_config
        try:
            if config.mode == VisualMode.OSCILLOSCOPE:
                samples = self.spectrum.oscilloscope_samples(max(1, width) * 2)
                return map_frame(config, width, height, samples=samples)
            return map_frame(config, width, height, frame=self.spectrum.latest_frame())
        except Exception:
            logger.exception("Visualization mapping failed")
            glyphs = BRAILLE_GLYPHS if config.mode == VisualMode.OSCILLOSCOPE else BAR_GLYPHS
            return RenderGrid.blank(width, height, glyphs)

    def shutdown(self) -> None:
        track = self.session.track
        if track is not None:
            self.settings.set_resume_position(track.path, self.session.get_position())
        self.spectrum.stop()
        self.session.shutdown()
        self.settings.sync()
