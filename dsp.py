from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from scipy.signal import sosfilt

from config import EQ_ACTIVE_THRESHOLD_DB, EQ_CENTER_FREQS, EQ_DEFAULT_Q, EQ_GAIN_LIMIT_DB
from models import EqualizerBand
from utils import clamp


def default_bands() -> tuple[EqualizerBand, ...]:
    return tuple(EqualizerBand(center_hz=f, gain_db=0.0, q=EQ_DEFAULT_Q) for f in EQ_CENTER_FREQS)


# -----------------------------
# Equalizer DSP (biquad peaking filters)
# -----------------------------

@dataclass(frozen=True)
class EqConfig:
    sos: np.ndarray
    active: np.ndarray


def peaking_coeffs(f0: float, gain_db: float, q: float, sample_rate: int) -> tuple[float, float, float, float, float]:
    A = 10.0 ** (gain_db / 40.0)
    # Keep the centre below Nyquist so 16 kHz stays stable at low sample rates.
    f0 = min(float(f0), 0.49 * float(sample_rate))
    w0 = 2.0 * math.pi * f0 / float(sample_rate)
    cos_w0 = math.cos(w0)
    sin_w0 = math.sin(w0)
    alpha = sin_w0 / (2.0 * max(q, 1e-3))

    b0 = 1.0 + alpha * A
    b1 = -2.0 * cos_w0
    b2 = 1.0 - alpha * A
    a0 = 1.0 + alpha / A
    a1 = -2.0 * cos_w0
    a2 = 1.0 - alpha / A

    b0 /= a0
    b1 /= a0
    b2 /= a0
    a1 /= a0
    a2 /= a0
    return b0, b1, b2, a1, a2


class EqualizerEngine:
    """
    Cascade of peaking biquads, one per band, shared by every channel.

    Filter memory lives per band and per channel across calls so block edges stay
    continuous. Bands at 0 dB are left out of the cascade; with every band flat,
    process() hands back its input untouched.
    """
    name = "Equalizer"

    def __init__(self, sample_rate: int, channels: int, bands: Optional[Sequence[EqualizerBand]] = None):
        self.sr = int(sample_rate)
        self.ch = int(channels)
        self._lock = threading.Lock()
        self._bands = self._clamp_bands(bands if bands is not None else default_bands())
        self._zi = np.zeros((len(self._bands), self.ch, 2), dtype=np.float64)
        self._config = self._build_config(self._bands)

    @staticmethod
    def _clamp_bands(bands: Sequence[EqualizerBand]) -> tuple[EqualizerBand, ...]:
        return tuple(
            band.with_gain(clamp(float(band.gain_db), -EQ_GAIN_LIMIT_DB, EQ_GAIN_LIMIT_DB))
            for band in bands
        )

    @property
    def bands(self) -> tuple[EqualizerBand, ...]:
        return self._bands

    def gains(self) -> list[float]:
        return [band.gain_db for band in self._bands]

    def is_flat(self) -> bool:
        return self._config.sos.shape[0] == 0

    def _build_config(self, bands: Sequence[EqualizerBand]) -> EqConfig:
        sos_rows = []
        active = []
        for i, band in enumerate(bands):
            if abs(band.gain_db) <= EQ_ACTIVE_THRESHOLD_DB:
                continue
            b0, b1, b2, a1, a2 = peaking_coeffs(band.center_hz, band.gain_db, band.q, self.sr)
            sos_rows.append((b0, b1, b2, 1.0, a1, a2))
            active.append(i)
        sos = np.array(sos_rows, dtype=np.float64).reshape((-1, 6))
        return EqConfig(sos=sos, active=np.array(active, dtype=np.intp))

    def set_bands(self, bands: Sequence[EqualizerBand]) -> None:
        new_bands = self._clamp_bands(bands)
        with self._lock:
            old_bands = self._bands
            if new_bands == old_bands:
                return
            if len(new_bands) != len(old_bands):
                self._zi = np.zeros((len(new_bands), self.ch, 2), dtype=np.float64)
            else:
                for i, (new, old) in enumerate(zip(new_bands, old_bands)):
                    if new != old:
                        self._zi[i].fill(0.0)
            self._bands = new_bands
            self._config = self._build_config(new_bands)

    def set_gains(self, gains_db: Sequence[float]) -> None:
        if len(gains_db) != len(self._bands):
            raise ValueError(f"EqualizerEngine expects {len(self._bands)} gains")
        self.set_bands([band.with_gain(g) for band, g in zip(self._bands, gains_db)])

    def set_band_gain(self, index: int, gain_db: float) -> None:
        bands = list(self._bands)
        bands[index] = bands[index].with_gain(gain_db)
        self.set_bands(bands)

    def reset(self) -> None:
        """Restore every band to 0 dB."""
        self.set_bands([band.with_gain(0.0) for band in self._bands])
        self.reset_state()

    def reset_state(self) -> None:
        with self._lock:
            self._zi.fill(0.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        with self._lock:
            config = self._config
            if config.sos.shape[0] == 0:
                return x
            y = np.array(x, dtype=np.float64, copy=True)
            zi = self._zi[config.active]
            for ch in range(min(y.shape[1], self.ch)):
                y[:, ch], zi[:, ch, :] = sosfilt(config.sos, y[:, ch], zi=zi[:, ch, :])
            self._zi[config.active] = zi
        return y.astype(np.float32, copy=False)

    def apply(self, frame: np.ndarray, bands: Optional[Sequence[EqualizerBand]] = None) -> np.ndarray:
        if bands is not None:
            self.set_bands(bands)
        return self.process(frame)
