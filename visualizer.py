from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from config import HEIGHT_CURVE_EXPONENT, OSCILLOSCOPE_GAIN
from models import BarChannels, RenderGrid, SpectrumFrame, VisualizationConfig, VisualMode

# Glyph tables
# -----------------------------

BAR_GLYPHS = (" ", "█", "▓", "▒", "░", "▂", "▃", "▄", "▅", "▆", "▇")
_FULL, _DENSE, _MEDIUM, _LIGHT = 1, 2, 3, 4
# Partial cells from low to high; the full block closes the ramp.
_EIGHTHS = (5, 6, 7, 8, 9, 10, _FULL)

BRAILLE_GLYPHS = tuple(chr(0x2800 + bits) for bits in range(256))
# (dx, dy) -> dot bit, dx 0..1 left to right, dy 0..3 top to bottom.
_BRAILLE_BITS = np.array([
    [0x01, 0x02, 0x04, 0x40],
    [0x08, 0x10, 0x20, 0x80],
], dtype=np.uint8)


@dataclass(frozen=True)
class BarLayout:
    widths: tuple[int, ...]
    gap: int
    offset: int

    @property
    def count(self) -> int:
        return len(self.widths)

    def columns(self) -> list[tuple[int, int]]:
        """(start, width) of every bar, left to right."""
        out = []
        x = self.offset
        for w in self.widths:
            out.append((x, w))
            x += w + self.gap
        return out


def _spread(bars: int, bar_w: int, remainder: int) -> list[int]:
    widths = [bar_w] * bars
    for i in range(min(remainder, bars)):
        widths[i] += 1
    return widths


def compute_bar_layout(width: int, gap: bool, bar_number: int, channels: BarChannels) -> BarLayout:
    """
    Fit bars into width columns.

    Gapped bars keep a gap of ceil(bar_w / 2) between neighbours; gapless bars are at
    least 2 columns wide. Stereo always draws an even count. Spare columns widen bars
    from the left, and the group is centred.
    """
    if width <= 0:
        return BarLayout(widths=(), gap=0, offset=0)

    desired = max(1, int(bar_number))
    if channels == BarChannels.STEREO:
        desired *= 2
    max_total = max(1, (width + 1) // 2) if gap else max(1, width // 2)
    desired = min(desired, max_total)
    if channels == BarChannels.STEREO and desired % 2 == 1:
        desired = max(2, desired - 1)

    bars = desired
    while True:
        if not gap:
            bar_w = width // bars
            if bar_w >= 2:
                widths = _spread(bars, bar_w, width - bars * bar_w)
                offset = (width - sum(widths)) // 2
                return BarLayout(widths=tuple(widths), gap=0, offset=offset)
        else:
            bar_w = width // bars
            while bar_w >= 1:
                gap_w = (bar_w + 1) // 2
                needed = bars * bar_w + (bars - 1) * gap_w
                if needed <= width:
                    widths = _spread(bars, bar_w, width - needed)
                    used = sum(widths) + (bars - 1) * gap_w
                    return BarLayout(widths=tuple(widths), gap=gap_w, offset=(width - used) // 2)
                bar_w -= 1

        if bars <= 1:
            return BarLayout(widths=(width,), gap=0, offset=0)
        bars -= 1


def _sample(data: np.ndarray, draw_len: int, i: int) -> float:
    n = max(1, data.shape[0])
    idx = min(i * n // max(1, draw_len), n - 1)
    if data.shape[0] == 0:
        return 0.0
    return float(np.clip(data[idx], 0.0, 1.0))


def build_display_values(data: np.ndarray, draw_total: int, channels: BarChannels,
                         reverse: bool) -> np.ndarray:
    """
    Resample data onto draw_total bars.

    Mono runs low to high left to right. Stereo mirrors the same values out from the
    centre, low frequencies in the middle. reverse flips the order within either.
    """
    if draw_total <= 0:
        return np.zeros(0, dtype=np.float32)
    data = np.asarray(data, dtype=np.float32)

    if channels == BarChannels.MONO:
        idx = range(draw_total - 1, -1, -1) if reverse else range(draw_total)
        return np.array([_sample(data, draw_total, i) for i in idx], dtype=np.float32)

    per_side = max(1, draw_total // 2)
    idx = range(per_side - 1, -1, -1) if reverse else range(per_side)
    right = np.array([_sample(data, per_side, i) for i in idx], dtype=np.float32)
    return np.concatenate([right[::-1], right])


def apply_height_curve(v):
    return np.power(np.clip(v, 0.0, 1.0), HEIGHT_CURVE_EXPONENT)


def density_glyph(level: int, height: int) -> int:
    """Bottom dense, top light."""
    if height <= 0:
        return 0
    if height == 1:
        return _LIGHT
    ratio = level / float(height)
    if ratio < 0.25:
        return _FULL
    if ratio < 0.50:
        return _DENSE
    if ratio < 0.75:
        return _MEDIUM
    return _LIGHT


def smooth_glyph(frac: float) -> int:
    if frac <= 0.0:
        return 0
    step = min(int(frac * 7.0), 6)
    return _EIGHTHS[step]


def map_bars(frame: SpectrumFrame, config: VisualizationConfig, width: int, height: int) -> RenderGrid:
    if width <= 0 or height <= 0:
        return RenderGrid.blank(width, height, BAR_GLYPHS)

    layout = compute_bar_layout(width, config.gap, config.bar_number, config.bar_channels)
    values = build_display_values(frame.mono(), layout.count, config.bar_channels, config.reverse)
    heights = apply_height_curve(values)

    cells = np.zeros((height, width), dtype=np.int32)
    for (x, bar_w), val in zip(layout.columns(), heights):
        x_end = min(width, x + bar_w)
        if x >= width:
            break
        if config.smooth:
            fill = float(val) * height
            full = int(np.clip(np.floor(fill), 0, height))
            frac = float(np.clip(fill - full, 0.0, 1.0))
            for y in range(full):
                cells[height - 1 - y, x:x_end] = _FULL
            if full < height:
                glyph = smooth_glyph(frac)
                if glyph:
                    cells[height - 1 - full, x:x_end] = glyph
        else:
            bar_h = min(int(round(float(val) * height)), height)
            for y in range(bar_h):
                cells[height - 1 - y, x:x_end] = density_glyph(y, max(1, bar_h))

    meta = {"bar_widths": layout.widths, "gap": layout.gap, "offset": layout.offset}
    return RenderGrid(cells=cells, glyphs=BAR_GLYPHS, bar_count=layout.count, meta=meta)


# Oscilloscope
# -----------------------------

def _pixel_rows(samples: np.ndarray, w_px: int, mid_y: int) -> np.ndarray:
    n = samples.shape[0]
    if n == 0:
        return np.full(w_px, mid_y, dtype=np.int64)
    idx = np.minimum(np.arange(w_px) * n // w_px, n - 1)
    y = np.clip(np.nan_to_num(samples[idx].astype(np.float64)), -1.0, 1.0)
    span = max(float(mid_y), 1.0)
    return np.round(mid_y - y * OSCILLOSCOPE_GAIN * span).astype(np.int64)


def _set_pixel(bits: np.ndarray, x: int, y: int) -> None:
    h_cells, w_cells = bits.shape
    if x < 0 or y < 0 or x >= w_cells * 2 or y >= h_cells * 4:
        return
    bits[y // 4, x // 2] |= _BRAILLE_BITS[x % 2, y % 4]


def _draw_line(bits: np.ndarray, x0: int, y0: int, x1: int, y1: int) -> None:
    dx = abs(x1 - x0)
    sx = 1 if x0 < x1 else -1
    dy = -abs(y1 - y0)
    sy = 1 if y0 < y1 else -1
    err = dx + dy
    while True:
        _set_pixel(bits, x0, y0)
        if x0 == x1 and y0 == y1:
            break
        e2 = 2 * err
        if e2 >= dy:
            err += dy
            x0 += sx
        if e2 <= dx:
            err += dx
            y0 += sy


def _draw_polyline(bits: np.ndarray, ys: np.ndarray, h_px: int) -> None:
    if ys.size == 0:
        return
    ys = np.clip(ys, 0, h_px - 1)
    prev_x, prev_y = 0, int(ys[0])
    for x in range(1, ys.shape[0]):
        y = int(ys[x])
        _draw_line(bits, prev_x, prev_y, x, y)
        prev_x, prev_y = x, y


def map_oscilloscope(samples: np.ndarray, width: int, height: int) -> RenderGrid:
    """
    Left and right traces as braille polylines, 2x4 dots per cell.

    samples is (n, 2) float PCM in [-1, 1]; a mono (n,) or (n, 1) array draws one trace
    twice.
    """
    if width <= 0 or height <= 0:
        return RenderGrid.blank(width, height, BRAILLE_GLYPHS)
    samples = np.asarray(samples, dtype=np.float32)
    if samples.ndim == 1:
        samples = samples[:, None]
    if samples.shape[1] == 1:
        samples = np.repeat(samples, 2, axis=1)

    w_px = width * 2
    h_px = height * 4
    mid_y = (h_px - 1) // 2
    bits = np.zeros((height, width), dtype=np.uint8)
    for ch in range(2):
        _draw_polyline(bits, _pixel_rows(samples[:, ch], w_px, mid_y), h_px)
    return RenderGrid(cells=bits.astype(np.int32), glyphs=BRAILLE_GLYPHS, meta={"mode": "oscilloscope"})


def map_frame(config: VisualizationConfig, width: int, height: int,
              frame: Optional[SpectrumFrame] = None,
              samples: Optional[np.ndarray] = None) -> RenderGrid:
    if config.mode == VisualMode.OSCILLOSCOPE:
        if samples is None:
            samples = np.zeros((0, 2), dtype=np.float32)
        return map_oscilloscope(samples, width, height)
    if frame is None:
        frame = SpectrumFrame.silent(max(1, config.bar_number))
    return map_bars(frame, config, width, height)
