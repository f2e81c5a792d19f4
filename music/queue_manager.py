from __future__ import annotations

import logging
import math
import random
from collections import deque
from enum import Enum, auto
from typing import Iterator

from .audio_source import TrackInfo
from .errors import InvalidPosition, QueueFull

log = logging.getLogger(__name__)

MAX_QUEUE_SIZE = 100
TRACKS_PER_PAGE = 10

_LOOP_ALIASES = {
    "none": "NONE",
    "off": "NONE",
    "track": "TRACK",
    "song": "TRACK",
    "queue": "QUEUE",
    "all": "QUEUE",
}


class LoopMode(Enum):
    NONE = auto()
    TRACK = auto()
    QUEUE = auto()

    def next(self) -> LoopMode:
        order = [LoopMode.NONE, LoopMode.TRACK, LoopMode.QUEUE]
        idx = order.index(self)
        return order[(idx + 1) % len(order)]

    def label(self) -> str:
        return self.name.lower()

    def emoji(self) -> str:
        return {
            LoopMode.NONE: "▶️",
            LoopMode.TRACK: "🔂",
            LoopMode.QUEUE: "🔁",
        }[self]

    @classmethod
    def parse(cls, value: str) -> LoopMode | None:
        """Map user input (``off``, ``song``, ``all``...) to a mode, or None if unknown."""
        name = _LOOP_ALIASES.get(value.strip().lower())
        return cls[name] if name else None


class TrackQueue:
    """Ordered upcoming tracks for one guild."""

    def __init__(self, max_size: int = MAX_QUEUE_SIZE) -> None:
        self.max_size = max_size
        self._items: deque[TrackInfo] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[TrackInfo]:
        return iter(self._items)

    def enqueue(self, track: TrackInfo) -> int:
        """Append a track and return its 1-based position."""
        if len(self._items) >= self.max_size:
            raise QueueFull(self.max_size)
        self._items.append(track)
        return len(self._items)

    def requeue(self, track: TrackInfo) -> None:
        # Loop-queue re-insert of the track that just played; never counts against the limit.
        self._items.append(track)

    def pop_front(self) -> TrackInfo | None:
        if not self._items:
            return None
        return self._items.popleft()

    def remove_at(self, position: int) -> TrackInfo:
        """Remove and return the track at 1-based ``position``."""
        if position < 1 or position > len(self._items):
            raise InvalidPosition(position, len(self._items))
        items = list(self._items)
        removed = items.pop(position - 1)
        self._items = deque(items)
        return removed

    def shuffle(self, rng: random.Random | None = None) -> None:
        items = list(self._items)
        (rng or random).shuffle(items)
        self._items = deque(items)

    def clear(self) -> int:
        count = len(self._items)
        self._items.clear()
        return count

    def total_pages(self, per_page: int = TRACKS_PER_PAGE) -> int:
        return max(1, math.ceil(len(self._items) / per_page))

    def page(self, index: int, per_page: int = TRACKS_PER_PAGE) -> list[TrackInfo]:
        start = index * per_page
        return list(self._items)[start:start + per_page]
