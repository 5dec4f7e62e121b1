from __future__ import annotations

import logging
from typing import Optional, Sequence

from PySide6 import QtCore

from config import EQ_CENTER_FREQS, EQ_DEFAULT_Q, EQ_GAIN_LIMIT_DB
from models import BarChannels, EqualizerBand, RepeatMode, VisualizationConfig, VisualMode
from utils import clamp, safe_float

logger = logging.getLogger(__name__)

ORGANIZATION = "cli-music-player"
APPLICATION = "cli-music-player"


class EngineSettings(QtCore.QObject):
    """
    Persisted user settings the engine reads: visualization, equalizer, transport.

    Writes emit visualizationChanged / equalizerChanged so the engine can re-read.
    """
    visualizationChanged = QtCore.Signal(object)    # VisualizationConfig
    equalizerChanged = QtCore.Signal(object)        # tuple[EqualizerBand, ...]

    def __init__(self, settings: Optional[QtCore.QSettings] = None, parent=None):
        super().__init__(parent)
        self.settings = settings or QtCore.QSettings(ORGANIZATION, APPLICATION)

    @classmethod
    def from_file(cls, path: str, parent=None) -> "EngineSettings":
        return cls(QtCore.QSettings(path, QtCore.QSettings.Format.IniFormat), parent)

    def sync(self) -> None:
        self.settings.sync()

    # Visualization
    # -----------------------------

    def visualization_config(self) -> VisualizationConfig:
        s = self.settings
        default = VisualizationConfig()
        channels = str(s.value("visual/bar_channels", default.bar_channels.value))
        mode = str(s.value("visual/mode", default.mode.value))
        return VisualizationConfig(
            bar_number=max(1, int(safe_float(str(s.value("visual/bar_number", default.bar_number)),
                                             default.bar_number))),
            bar_channels=BarChannels.MONO if channels == BarChannels.MONO.value else BarChannels.STEREO,
            reverse=s.value("visual/reverse", default.reverse, type=bool),
            gap=s.value("visual/gap", default.gap, type=bool),
            smooth=s.value("visual/smooth", default.smooth, type=bool),
            mode=VisualMode.OSCILLOSCOPE if mode == VisualMode.OSCILLOSCOPE.value else VisualMode.BARS,
        )

    def set_visualization_config(self, config: VisualizationConfig) -> None:
        s = self.settings
        s.setValue("visual/bar_number", int(config.bar_number))
        s.setValue("visual/bar_channels", config.bar_channels.value)
        s.setValue("visual/reverse", bool(config.reverse))
        s.setValue("visual/gap", bool(config.gap))
        s.setValue("visual/smooth", bool(config.smooth))
        s.setValue("visual/mode", config.mode.value)
        self.visualizationChanged.emit(config)

    # Equalizer
    # -----------------------------

    @staticmethod
    def _normalize_eq_gains(values: object, band_count: int) -> list[float]:
        if isinstance(values, (tuple, list)):
            gains = [safe_float(str(v), 0.0) for v in values]
        elif isinstance(values, str) and values:
            # Single-entry lists come back from INI files as a bare string.
            gains = [safe_float(values, 0.0)]
        else:
            gains = []
        if len(gains) < band_count:
            gains.extend([0.0] * (band_count - len(gains)))
        return [clamp(float(g), -EQ_GAIN_LIMIT_DB, EQ_GAIN_LIMIT_DB) for g in gains[:band_count]]

    def eq_gains(self) -> list[float]:
        return self._normalize_eq_gains(self.settings.value("eq/gains", []), len(EQ_CENTER_FREQS))

    def equalizer_bands(self) -> tuple[EqualizerBand, ...]:
        return tuple(
            EqualizerBand(center_hz=f, gain_db=g, q=EQ_DEFAULT_Q)
            for f, g in zip(EQ_CENTER_FREQS, self.eq_gains())
        )

    def set_eq_gains(self, gains_db: Sequence[float]) -> None:
        gains = self._normalize_eq_gains(list(gains_db), len(EQ_CENTER_FREQS))
        self.settings.setValue("eq/gains", gains)
        self.equalizerChanged.emit(self.equalizer_bands())

    def reset_equalizer(self) -> None:
        self.set_eq_gains([0.0] * len(EQ_CENTER_FREQS))

    # Transport
    # -----------------------------

    def repeat_mode(self) -> RepeatMode:
        return RepeatMode.from_setting(str(self.settings.value("playback/repeat", RepeatMode.SEQUENTIAL.value)))

    def set_repeat_mode(self, mode: RepeatMode) -> None:
        self.settings.setValue("playback/repeat", mode.value)

    def volume(self) -> float:
        return clamp(safe_float(str(self.settings.value("audio/volume", 1.0)), 1.0), 0.0, 1.0)

    def set_volume(self, volume: float) -> None:
        self.settings.setValue("audio/volume", float(clamp(float(volume), 0.0, 1.0)))

    def buffer_preset(self) -> Optional[str]:
        value = self.settings.value("audio/buffer_preset", None)
        return str(value) if value else None

    def resume_position(self, path: str) -> float:
        """Last saved position for path, 0.0 when none was stored for it."""
        if str(self.settings.value("resume/path", "")) != path:
            return 0.0
        return max(0.0, safe_float(str(self.settings.value("resume/position", 0.0)), 0.0))

    def set_resume_position(self, path: str, position_sec: float) -> None:
        self.settings.setValue("resume/path", path)
        self.settings.setValue("resume/position", float(max(0.0, position_sec)))
