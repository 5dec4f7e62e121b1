from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass
from importlib import resources
from typing import Callable, Optional

import numpy as np

from PySide6 import QtCore

from config import (
    ANALYZER_ASCII_MAX_RANGE,
    ANALYZER_BARS,
    ANALYZER_BINARY_MAX_RANGE,
    ANALYZER_BUNDLED_SUBPATH,
    ANALYZER_DISABLE_ENV,
    ANALYZER_EMBEDDED_RESOURCE,
    ANALYZER_ENV,
    ANALYZER_NAME,
    ANALYZER_STALL_FACTOR,
    ANALYZER_STARTUP_GRACE_SEC,
    ANALYZER_TERMINATE_WAIT_SEC,
    SPECTRUM_HZ,
)
from errors import AnalyzerStalled, AnalyzerUnavailable
from models import AnalyzerState
from utils import clamp, env_flag

logger = logging.getLogger(__name__)

_ASCII_SPLIT = re.compile(r"[;\s]+")


@dataclass(frozen=True)
class ResolvedBinary:
    path: str
    # Temporary directory holding an extracted copy, removed on stop.
    cleanup_dir: Optional[str] = None


# Binary resolution
# -----------------------------

def app_dir() -> str:
    if getattr(sys, "frozen", False):
        return os.path.dirname(os.path.abspath(sys.executable))
    return os.path.dirname(os.path.abspath(sys.argv[0] or "."))


def _extract_embedded() -> Optional[ResolvedBinary]:
    res = resources.files("audio").joinpath(*ANALYZER_EMBEDDED_RESOURCE)
    if not res.is_file():
        return None
    tmp_dir = tempfile.mkdtemp(prefix="cli-music-player-cava-")
    target = os.path.join(tmp_dir, ANALYZER_NAME)
    with res.open("rb") as src, open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.chmod(target, 0o755)
    logger.debug("Extracted embedded analyzer to %s", target)
    return ResolvedBinary(path=target, cleanup_dir=tmp_dir)


def resolve_analyzer_binary() -> Optional[ResolvedBinary]:
    """
    Locate the analyzer executable, first match wins:

    environment override, next to the application, in third_party/cava under the
    application or working directory, on PATH, then the copy shipped as package data.
    """
    if env_flag(ANALYZER_DISABLE_ENV):
        logger.info("External analyzer disabled by %s", ANALYZER_DISABLE_ENV)
        return None

    override = os.environ.get(ANALYZER_ENV, "").strip()
    if override:
        if os.path.isfile(override):
            return ResolvedBinary(path=override)
        logger.warning("%s=%s is not a file; continuing lookup", ANALYZER_ENV, override)

    base = app_dir()
    candidates = [
        os.path.join(base, ANALYZER_NAME),
        os.path.join(base, *ANALYZER_BUNDLED_SUBPATH),
        os.path.join(os.getcwd(), *ANALYZER_BUNDLED_SUBPATH),
    ]
    for p in candidates:
        if os.path.isfile(p) and os.access(p, os.X_OK):
            return ResolvedBinary(path=p)

    found = shutil.which(ANALYZER_NAME)
    if found:
        return ResolvedBinary(path=found)

    return _extract_embedded()


# Raw output parsing
# -----------------------------

def build_config(framerate_hz: int, bars: int, data_format: str = "ascii") -> str:
    framerate_hz = int(clamp(int(framerate_hz), 10, 120))
    lines = [
        "[general]",
        f"framerate = {framerate_hz}",
        f"bars = {int(bars)}",
        "",
        "[input]",
        "# method/source left unset so the analyzer picks the best capture backend.",
        "",
        "[output]",
        "method = raw",
        "channels = mono",
        "mono_option = average",
        "raw_target = /dev/stdout",
    ]
    if data_format == "binary":
        lines += [
            "data_format = binary",
            "bit_format = 16bit",
        ]
    else:
        lines += [
            "data_format = ascii",
            f"ascii_max_range = {ANALYZER_ASCII_MAX_RANGE}",
            "bar_delimiter = 59",
            "frame_delimiter = 10",
        ]
    return "\n".join(lines) + "\n"


def parse_frame_ascii(line: str, bars: int = ANALYZER_BARS,
                      max_range: int = ANALYZER_ASCII_MAX_RANGE) -> Optional[np.ndarray]:
    """Parse one ';'-delimited row; None unless it carries at least `bars` integers."""
    parts = [p for p in _ASCII_SPLIT.split(line) if p]
    if len(parts) < bars:
        return None
    try:
        values = np.array([int(p) for p in parts[:bars]], dtype=np.float32)
    except ValueError:
        return None
    return np.clip(values / float(max_range), 0.0, 1.0)


def parse_frame_binary(data: bytes, bars: int = ANALYZER_BARS,
                       max_range: int = ANALYZER_BINARY_MAX_RANGE) -> Optional[np.ndarray]:
    if len(data) != bars * 2:
        return None
    values = np.frombuffer(data, dtype="<u2").astype(np.float32)
    return np.clip(values / float(max_range), 0.0, 1.0)


# Process supervision
# -----------------------------

class ExternalProcessManager(QtCore.QObject):
    """
    Owns the analyzer subprocess: resolve, spawn, supervise, tear down.

    Lifecycle: UNRESOLVED -> SPAWNING -> RUNNING -> FAILED | EXITED. FAILED is final
    for the lifetime of the manager; EXITED can be started again.
    """
    stateChanged = QtCore.Signal(object)    # AnalyzerState

    def __init__(
        self,
        framerate_hz: int = SPECTRUM_HZ,
        bars: int = ANALYZER_BARS,
        data_format: str = "ascii",
        resolver: Optional[Callable[[], Optional[ResolvedBinary]]] = None,
        parent=None,
    ):
        super().__init__(parent)
        self.framerate_hz = int(clamp(int(framerate_hz), 10, 120))
        self.bars = int(bars)
        self.data_format = data_format
        self._resolver = resolver or resolve_analyzer_binary
        self._lock = threading.Lock()
        self._state = AnalyzerState.UNRESOLVED
        self.failure: Optional[AnalyzerUnavailable] = None

        self._proc: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._binary: Optional[ResolvedBinary] = None
        self._cfg_path: Optional[str] = None
        self._bars: Optional[np.ndarray] = None
        self._spawned_at = 0.0
        self._last_frame_at = 0.0
        self.frames_received = 0

    @property
    def state(self) -> AnalyzerState:
        return self._state

    @property
    def stall_timeout_sec(self) -> float:
        return ANALYZER_STALL_FACTOR / float(self.framerate_hz)

    def _set_state(self, st: AnalyzerState) -> None:
        with self._lock:
            if self._state == st:
                return
            self._state = st
        logger.debug("Analyzer state -> %s", st.name)
        self.stateChanged.emit(st)

    def start(self) -> bool:
        if self._state == AnalyzerState.FAILED:
            return False
        if self._state in (AnalyzerState.SPAWNING, AnalyzerState.RUNNING):
            return True

        binary = self._resolver()
        if binary is None:
            self._fail(AnalyzerUnavailable(f"{ANALYZER_NAME} executable not found"))
            return False
        self._binary = binary

        # bars is read once per spawn; a later change waits for the next start.
        bars = self.bars
        fd, self._cfg_path = tempfile.mkstemp(prefix="cli-music-player-cava-", suffix=".conf")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(build_config(self.framerate_hz, bars, self.data_format))

        try:
            proc = subprocess.Popen(
                [binary.path, "-p", self._cfg_path],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._fail(AnalyzerUnavailable(f"failed to spawn {binary.path}: {e}"))
            return False

        with self._lock:
            self._proc = proc
            self._bars = None
            self.frames_received = 0
            self._spawned_at = time.monotonic()
            self._last_frame_at = 0.0
        self._set_state(AnalyzerState.SPAWNING)
        self._reader = threading.Thread(target=self._read_loop, args=(proc, bars), daemon=True)
        self._reader.start()
        logger.info("Started analyzer %s (%d bars @ %d Hz)", binary.path, bars, self.framerate_hz)
        return True

    def _read_loop(self, proc: subprocess.Popen, bars: int) -> None:
        stdout = proc.stdout
        if stdout is None:
            return
        frame_bytes = bars * 2
        try:
            while True:
                if self.data_format == "binary":
                    data = stdout.read(frame_bytes)
                    if not data:
                        break
                    frame = parse_frame_binary(data, bars)
                else:
                    line = stdout.readline()
                    if not line:
                        break
                    frame = parse_frame_ascii(line.decode("ascii", errors="replace"), bars)
                if frame is None:
                    continue
                first = False
                with self._lock:
                    if self._proc is not proc:
                        return
                    self._bars = frame
                    self._last_frame_at = time.monotonic()
                    self.frames_received += 1
                    first = self._state == AnalyzerState.SPAWNING
                    if first:
                        self._state = AnalyzerState.RUNNING
                if first:
                    logger.debug("Analyzer state -> %s", AnalyzerState.RUNNING.name)
                    self.stateChanged.emit(AnalyzerState.RUNNING)
        except (OSError, ValueError) as e:
            logger.debug("Analyzer reader stopped: %s", e)

    def check_health(self, now: Optional[float] = None) -> AnalyzerState:
        """Poll the child; moves to FAILED on exit or when frames stop arriving."""
        state = self._state
        if state not in (AnalyzerState.SPAWNING, AnalyzerState.RUNNING):
            return state
        if now is None:
            now = time.monotonic()
        proc = self._proc
        rc = proc.poll() if proc is not None else -1
        if rc is not None:
            self._fail(AnalyzerUnavailable(f"{ANALYZER_NAME} exited with code {rc}"))
        elif state == AnalyzerState.SPAWNING:
            if now - self._spawned_at > ANALYZER_STARTUP_GRACE_SEC:
                self._fail(AnalyzerStalled(
                    f"no frames from {ANALYZER_NAME} within {ANALYZER_STARTUP_GRACE_SEC:.1f}s of start"
                ))
        elif now - self._last_frame_at > self.stall_timeout_sec:
            self._fail(AnalyzerStalled(
                f"no frames from {ANALYZER_NAME} for {now - self._last_frame_at:.2f}s"
            ))
        return self._state

    def latest_bars(self) -> Optional[np.ndarray]:
        with self._lock:
            bars = self._bars
        return None if bars is None else bars.copy()

    def _fail(self, err: AnalyzerUnavailable) -> None:
        logger.warning("External analyzer unavailable, using internal FFT: %s", err)
        self.failure = err
        self._teardown()
        self._set_state(AnalyzerState.FAILED)

    def _teardown(self) -> None:
        with self._lock:
            proc = self._proc
            self._proc = None
            self._bars = None
        if proc is not None:
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=ANALYZER_TERMINATE_WAIT_SEC)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=ANALYZER_TERMINATE_WAIT_SEC)
        if proc is not None and proc.stdout is not None and (reader is None or not reader.is_alive()):
            proc.stdout.close()

        if self._cfg_path:
            try:
                os.remove(self._cfg_path)
            except FileNotFoundError:
                pass
            self._cfg_path = None
        binary = self._binary
        self._binary = None
        if binary is not None and binary.cleanup_dir:
            shutil.rmtree(binary.cleanup_dir, ignore_errors=True)

    def stop(self) -> None:
        was_started = self._state in (AnalyzerState.SPAWNING, AnalyzerState.RUNNING)
        self._teardown()
        if was_started:
            self._set_state(AnalyzerState.EXITED)
