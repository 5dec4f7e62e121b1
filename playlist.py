from __future__ import annotations

import random
from typing import List, Optional, Sequence

from models import RepeatMode


class ShuffleOrder:
    """
    One pass over a permutation of playlist indices.

    pop() hands out every index exactly once per pass. When the pass runs out it is
    regenerated so that its first entry differs from the index that just played.
    """

    def __init__(self, size: int = 0, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._size = 0
        self._bag: List[int] = []
        self.reset(size)

    def reset(self, size: int, avoid: Optional[int] = None) -> None:
        self._size = max(0, int(size))
        self.regenerate(avoid)

    def regenerate(self, avoid: Optional[int] = None) -> None:
        indices = list(range(self._size))
        self._rng.shuffle(indices)
        if avoid is not None and len(indices) > 1 and indices[0] == avoid:
            swap = self._rng.randrange(1, len(indices))
            indices[0], indices[swap] = indices[swap], indices[0]
        # Stored reversed so pop() from the tail yields the order front to back.
        indices.reverse()
        self._bag = indices

    @property
    def size(self) -> int:
        return self._size

    @property
    def remaining(self) -> int:
        return len(self._bag)

    def upcoming(self) -> List[int]:
        return list(reversed(self._bag))

    def pop(self, avoid: Optional[int] = None) -> Optional[int]:
        if self._size <= 0:
            return None
        if not self._bag:
            self.regenerate(avoid)
        return self._bag.pop()


class Playlist:
    """Ordered track paths plus the cursor the repeat modes move around."""

    def __init__(self, paths: Sequence[str] = (), index: int = 0, rng: Optional[random.Random] = None):
        self._paths: List[str] = []
        self._index = -1
        self._history: List[int] = []
        self._order = ShuffleOrder(0, rng)
        self.set_items(paths, index)

    def __len__(self) -> int:
        return len(self._paths)

    def __getitem__(self, idx: int) -> str:
        return self._paths[idx]

    @property
    def paths(self) -> List[str]:
        return list(self._paths)

    @property
    def index(self) -> int:
        return self._index

    @property
    def shuffle_order(self) -> ShuffleOrder:
        return self._order

    def current_path(self) -> Optional[str]:
        if 0 <= self._index < len(self._paths):
            return self._paths[self._index]
        return None

    def index_of(self, path: str) -> int:
        try:
            return self._paths.index(path)
        except ValueError:
            return -1

    def set_items(self, paths: Sequence[str], index: int = 0) -> None:
        self._paths = list(paths)
        if self._paths:
            self._index = min(max(0, int(index)), len(self._paths) - 1)
        else:
            self._index = -1
        self._history.clear()
        self._order.reset(len(self._paths), avoid=self._index)

    def select(self, index: int) -> None:
        if not 0 <= index < len(self._paths):
            raise IndexError(index)
        self._index = index

    def reshuffle(self) -> None:
        self._history.clear()
        self._order.reset(len(self._paths), avoid=self._index)

    def advance(self, mode: RepeatMode) -> Optional[int]:
        """
        Move to the track that follows the current one under mode.

        Returns the new index, or None when playback should end. SingleLoop stays on
        the current index.
        """
        count = len(self._paths)
        if count == 0:
            return None
        current = max(0, self._index)

        if mode == RepeatMode.SINGLE_LOOP:
            return current

        if mode == RepeatMode.SHUFFLE:
            idx = self._order.pop(avoid=current)
            if idx is None:
                return None
            self._history.append(current)
            self._index = idx
            return idx

        idx = current + 1
        if idx >= count:
            if mode != RepeatMode.PLAYLIST_LOOP:
                return None
            idx = 0
        self._index = idx
        return idx

    def retreat(self, mode: RepeatMode) -> Optional[int]:
        count = len(self._paths)
        if count == 0:
            return None
        current = max(0, self._index)

        if mode == RepeatMode.SINGLE_LOOP:
            return current

        if mode == RepeatMode.SHUFFLE:
            if not self._history:
                return None
            idx = self._history.pop()
            self._index = idx
            return idx

        idx = current - 1
        if idx < 0:
            if mode != RepeatMode.PLAYLIST_LOOP:
                return None
            idx = count - 1
        self._index = idx
        return idx
