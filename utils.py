from __future__ import annotations

import math
import os
import shutil


def have_exe(name: str) -> bool:
    return shutil.which(name) is not None


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x


def env_flag(name: str) -> bool:
    value = os.environ.get(name, "").strip().lower()
    return value in ("1", "true", "yes", "on")


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = safe_float(raw.strip(), default)
    return value if math.isfinite(value) else default


def safe_float(x: str, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default

