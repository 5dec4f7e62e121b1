from __future__ import annotations


class EngineError(RuntimeError):
    pass


class TrackUnreadable(EngineError):
    """The decoder could not open or parse an audio file."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class OutputDeviceError(EngineError):
    """The audio output device failed to open or was lost mid-stream."""


class AnalyzerUnavailable(EngineError):
    """The external spectrum analyzer could not be resolved, spawned, or kept running."""


class AnalyzerStalled(AnalyzerUnavailable):
    """The external analyzer stopped producing frames within its timeout."""
