from __future__ import annotations

import json
import os
import subprocess
from typing import Optional

from errors import TrackUnreadable
from models import Track
from utils import have_exe, safe_float


def make_ffprobe_cmd(path: str) -> list[str]:
    return [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_entries",
        (
            "format=duration:format_tags=artist,album,album_artist,title:"
            "stream=index,codec_type,sample_rate,channels,duration"
        ),
        path,
    ]


def _startupinfo():
    # Keep Windows from flashing a console window per probe.
    if os.name != "nt":
        return None
    startupinfo = subprocess.STARTUPINFO()
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    return startupinfo


def parse_probe_output(path: str, payload: str) -> Track:
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError as e:
        raise TrackUnreadable(path, f"unparseable ffprobe output: {e}") from e

    fmt = data.get("format", {}) or {}
    tags = fmt.get("tags", {}) or {}
    tags_lower = {str(k).lower(): str(v) for k, v in tags.items()}

    audio: Optional[dict] = None
    for stream in data.get("streams", []) or []:
        if stream.get("codec_type") == "audio":
            audio = stream
            break
    if audio is None:
        raise TrackUnreadable(path, "no audio stream")

    sample_rate = int(safe_float(str(audio.get("sample_rate") or "0"), 0.0))
    channels = int(audio.get("channels") or 0)
    if sample_rate <= 0 or channels <= 0:
        raise TrackUnreadable(path, "audio stream has no sample rate or channel layout")

    duration = max(0.0, safe_float(str(fmt.get("duration", "0")), 0.0))
    if duration <= 0.0:
        duration = max(0.0, safe_float(str(audio.get("duration", "0")), 0.0))

    return Track(
        path=path,
        duration_sec=duration,
        sample_rate=sample_rate,
        channels=channels,
        title=tags_lower.get("title") or os.path.basename(path),
        artist=tags_lower.get("artist") or tags_lower.get("album_artist") or "",
        album=tags_lower.get("album") or "",
    )


def probe_track(path: str) -> Track:
    """
    Probe an audio file with ffprobe.

    Raises TrackUnreadable when the file is missing, ffprobe is unavailable, or the
    container holds no decodable audio stream.
    """
    if not path or not os.path.isfile(path):
        raise TrackUnreadable(path, "file not found")
    if not have_exe("ffprobe"):
        raise TrackUnreadable(path, "ffprobe not found in PATH")

    try:
        p = subprocess.run(
            make_ffprobe_cmd(path),
            capture_output=True,
            text=True,
            check=False,
            startupinfo=_startupinfo(),
        )
    except OSError as e:
        raise TrackUnreadable(path, f"failed to run ffprobe: {e}") from e

    if p.returncode != 0:
        reason = (p.stderr or "").strip().splitlines()
        raise TrackUnreadable(path, reason[-1] if reason else f"ffprobe exited with {p.returncode}")
    return parse_probe_output(path, p.stdout)
