from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class BufferPreset:
    blocksize_frames: int
    latency: str | float
    target_sec: float
    high_sec: float
    ring_max_seconds: float


@dataclass(frozen=True)
class Track:
    path: str
    duration_sec: float
    sample_rate: int
    channels: int
    title: str = ""
    artist: str = ""
    album: str = ""


class PlaybackState(Enum):
    STOPPED = auto()
    PLAYING = auto()
    PAUSED = auto()


class RepeatMode(Enum):
    SEQUENTIAL = "sequential"
    PLAYLIST_LOOP = "playlist_loop"
    SINGLE_LOOP = "single_loop"
    SHUFFLE = "shuffle"

    @classmethod
    def from_setting(cls, value: str) -> "RepeatMode":
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.SEQUENTIAL

    def cycle(self) -> "RepeatMode":
        order = _REPEAT_CYCLE
        return order[(order.index(self) + 1) % len(order)]


_REPEAT_CYCLE = (
    RepeatMode.SEQUENTIAL,
    RepeatMode.SHUFFLE,
    RepeatMode.PLAYLIST_LOOP,
    RepeatMode.SINGLE_LOOP,
)


@dataclass(frozen=True)
class EqualizerBand:
    center_hz: float
    gain_db: float = 0.0
    q: float = 1.0

    def with_gain(self, gain_db: float) -> "EqualizerBand":
        return replace(self, gain_db=float(gain_db))


@dataclass(frozen=True, eq=False)
class SpectrumFrame:
    """
    Latest normalized magnitudes, one array per visual channel.

    left carries the mono layout when right is None.
    """
    left: np.ndarray
    right: Optional[np.ndarray] = None
    timestamp: float = 0.0
    source: str = ""

    @property
    def channels(self) -> int:
        return 1 if self.right is None else 2

    @property
    def bar_count(self) -> int:
        return int(self.left.shape[0])

    def mono(self) -> np.ndarray:
        if self.right is None:
            return self.left
        return (self.left + self.right) * 0.5

    @classmethod
    def silent(cls, bars: int, channels: int = 1, source: str = "") -> "SpectrumFrame":
        left = np.zeros(bars, dtype=np.float32)
        right = np.zeros(bars, dtype=np.float32) if channels == 2 else None
        return cls(left=left, right=right, source=source)


class BarChannels(Enum):
    MONO = "mono"
    STEREO = "stereo"


class VisualMode(Enum):
    BARS = "bars"
    OSCILLOSCOPE = "oscilloscope"


@dataclass(frozen=True)
class VisualizationConfig:
    bar_number: int = 64
    bar_channels: BarChannels = BarChannels.STEREO
    reverse: bool = False
    gap: bool = True
    smooth: bool = False
    mode: VisualMode = VisualMode.BARS


class AnalyzerState(Enum):
    UNRESOLVED = auto()
    SPAWNING = auto()
    RUNNING = auto()
    FAILED = auto()
    EXITED = auto()


@dataclass(frozen=True)
class PlaybackSnapshot:
    state: PlaybackState
    position_sec: float
    duration_sec: float
    track: Optional[Track]
    volume: float
    repeat_mode: RepeatMode
    index: int


@dataclass(frozen=True, eq=False)
class RenderGrid:
    """
    Renderer-agnostic cell grid.

    cells holds indices into glyphs, shape (height, width).
    """
    cells: np.ndarray
    glyphs: tuple[str, ...]
    bar_count: int = 0
    meta: dict = field(default_factory=dict)

    @property
    def height(self) -> int:
        return int(self.cells.shape[0])

    @property
    def width(self) -> int:
        return int(self.cells.shape[1]) if self.cells.ndim == 2 else 0

    def lines(self) -> list[str]:
        glyphs = self.glyphs
        return ["".join(glyphs[int(i)] for i in row) for row in self.cells]

    @classmethod
    def blank(cls, width: int, height: int, glyphs: tuple[str, ...] = (" ",)) -> "RenderGrid":
        cells = np.zeros((max(0, height), max(0, width)), dtype=np.int32)
        return cls(cells=cells, glyphs=glyphs)
