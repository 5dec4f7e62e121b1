from __future__ import annotations

import os

from models import BufferPreset
from utils import clamp, env_float

# Audio output
# -----------------------------

DEFAULT_SAMPLE_RATE = 44100
DEFAULT_CHANNELS = 2

BUFFER_PRESETS = {
    "low": BufferPreset(
        blocksize_frames=256,
        latency="low",
        target_sec=0.20,
        high_sec=0.35,
        ring_max_seconds=1.0,
    ),
    "balanced": BufferPreset(
        blocksize_frames=1024,
        latency="high",
        target_sec=0.50,
        high_sec=0.80,
        ring_max_seconds=2.0,
    ),
    "safe": BufferPreset(
        blocksize_frames=2048,
        latency="high",
        target_sec=1.00,
        high_sec=1.50,
        ring_max_seconds=3.0,
    ),
}
DEFAULT_BUFFER_PRESET = os.environ.get("CLI_MUSIC_PLAYER_BUFFER", "balanced").strip().lower()
if DEFAULT_BUFFER_PRESET not in BUFFER_PRESETS:
    DEFAULT_BUFFER_PRESET = "balanced"

FADE_IN_SEC = 0.02
FADE_OUT_FRAMES = 32
CANCEL_TIMEOUT_SEC = 0.08
METRICS_ENV = "CLI_MUSIC_PLAYER_DEBUG_METRICS"

# Transport
# -----------------------------

END_OF_TRACK_TOLERANCE_SEC = 0.12
PREVIOUS_RESTART_SEC = 3.0

# Equalizer
# -----------------------------

EQ_CENTER_FREQS = (31.0, 62.0, 125.0, 250.0, 500.0, 1000.0, 2000.0, 4000.0, 8000.0, 16000.0)
EQ_DEFAULT_Q = 1.0
EQ_GAIN_LIMIT_DB = 12.0
EQ_ACTIVE_THRESHOLD_DB = 1e-3

# Spectrum
# -----------------------------

SPECTRUM_HZ = int(clamp(env_float("CLI_MUSIC_PLAYER_SPECTRUM_HZ", 30.0), 10.0, 120.0))
SPECTRUM_BARS = 64
FFT_MIN_SIZE = 1024
SPECTRUM_F_MIN_HZ = 40.0
SPECTRUM_F_MAX_HZ = 16000.0
# log1p(gain * m) / log1p(gain); larger gain lifts quiet bins harder.
COMPRESSION_GAIN = env_float("CLI_MUSIC_PLAYER_COMPRESSION_GAIN", 40.0)
PEAK_HALF_LIFE_SEC = env_float("CLI_MUSIC_PLAYER_PEAK_HALF_LIFE", 2.0)
PEAK_FLOOR = 0.05
SMOOTHING_ALPHA = 0.30

# External analyzer
# -----------------------------

ANALYZER_ENV = "CLI_MUSIC_PLAYER_CAVA"
ANALYZER_NAME = "cava"
ANALYZER_BUNDLED_SUBPATH = ("third_party", "cava", "cava")
ANALYZER_EMBEDDED_RESOURCE = ("bin", "cava")
ANALYZER_DISABLE_ENV = "CLI_MUSIC_PLAYER_NO_CAVA"
ANALYZER_BARS = 64
ANALYZER_ASCII_MAX_RANGE = 1000
ANALYZER_BINARY_MAX_RANGE = 65535
ANALYZER_STALL_FACTOR = 3.0
ANALYZER_STARTUP_GRACE_SEC = 2.0
ANALYZER_TERMINATE_WAIT_SEC = 0.05

# Visualization
# -----------------------------

HEIGHT_CURVE_EXPONENT = 0.72
OSCILLOSCOPE_GAIN = 0.90
