from __future__ import annotations

import logging
import os
import subprocess
from typing import List, Optional

import numpy as np

from errors import TrackUnreadable
from models import Track
from utils import have_exe

logger = logging.getLogger(__name__)


def make_ffmpeg_cmd(path: str, start_sec: float, sample_rate: int, channels: int) -> List[str]:
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "error",
        "-ss", str(max(0.0, start_sec)),
        "-i", path,
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-f", "f32le",
        "pipe:1"
    ]


class PcmSource:
    """
    Pull-based PCM stream.

    read() returns (n, channels) float32 blocks and None once the stream is exhausted.
    """
    sample_rate: int
    channels: int

    def read(self, max_frames: int) -> Optional[np.ndarray]:
        raise NotImplementedError

    @property
    def at_end(self) -> bool:
        raise NotImplementedError

    def interrupt(self) -> None:
        """Unblocks a pending read from another thread."""

    def close(self) -> None:
        pass


class FfmpegSource(PcmSource):
    """Decodes a file through an ffmpeg child process writing raw f32le to stdout."""

    def __init__(self, path: str, start_sec: float, sample_rate: int, channels: int):
        self.path = path
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._frame_bytes = self.channels * 4
        self._byte_buffer = bytearray()
        self._eof = False
        self._closed = False

        if not have_exe("ffmpeg"):
            raise TrackUnreadable(path, "ffmpeg not found in PATH")
        cmd = make_ffmpeg_cmd(path, start_sec, self.sample_rate, self.channels)
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise TrackUnreadable(path, f"failed to start ffmpeg: {e}") from e
        if self._proc.stdout is None:
            self.close()
            raise TrackUnreadable(path, "ffmpeg stdout not available")

    @property
    def at_end(self) -> bool:
        return self._eof and len(self._byte_buffer) < self._frame_bytes

    def read(self, max_frames: int) -> Optional[np.ndarray]:
        if self._closed:
            return None
        max_frames = max(1, int(max_frames))
        read_bytes = max_frames * self._frame_bytes
        stdout = self._proc.stdout
        while not self._eof and len(self._byte_buffer) < self._frame_bytes:
            chunk = stdout.read(read_bytes)
            if not chunk:
                self._eof = True
                break
            self._byte_buffer.extend(chunk)
        if len(self._byte_buffer) < self._frame_bytes:
            return None
        available_frames = len(self._byte_buffer) // self._frame_bytes
        frames_to_take = min(available_frames, max_frames)
        take_bytes = frames_to_take * self._frame_bytes
        data = bytes(self._byte_buffer[:take_bytes])
        del self._byte_buffer[:take_bytes]
        x = np.frombuffer(data, dtype=np.float32)
        if x.size == 0:
            return None
        return x.reshape((-1, self.channels))

    def interrupt(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        proc = self._proc
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=0.1)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()
        rc = proc.returncode
        if rc not in (0, None) and not self._eof:
            logger.debug("ffmpeg for %s exited with %s", os.path.basename(self.path), rc)


def open_source(track: Track, start_sec: float, sample_rate: int, channels: int) -> PcmSource:
    return FfmpegSource(track.path, start_sec, sample_rate, channels)
