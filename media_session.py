from __future__ import annotations

import logging
from typing import Optional

from audio.engine import PlaybackSession
from models import PlaybackSnapshot
from utils import safe_float

logger = logging.getLogger(__name__)

COMMANDS = ("play", "pause", "toggle", "stop", "next", "previous", "seek", "set_volume")


class MediaSessionBridge:
    """
    Boundary for an OS media-session service.

    snapshot() is what the service publishes; handle() maps its commands one to one
    onto the session.
    """

    def __init__(self, session: PlaybackSession):
        self.session = session

    def snapshot(self) -> PlaybackSnapshot:
        return self.session.snapshot()

    def handle(self, command: str, value: Optional[object] = None) -> bool:
        s = self.session
        if command == "play":
            return s.play()
        if command == "pause":
            return s.pause()
        if command == "toggle":
            return s.toggle()
        if command == "stop":
            s.stop()
            return True
        if command == "next":
            return s.next()
        if command == "previous":
            return s.previous()
        if command == "seek":
            s.seek(safe_float(str(value), 0.0))
            return True
        if command == "set_volume":
            s.set_volume(safe_float(str(value), s.volume))
            return True
        logger.debug("Ignoring unknown media command %r", command)
        return False
