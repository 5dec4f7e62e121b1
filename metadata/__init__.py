from .local_probe import probe_track

__all__ = ["probe_track"]
