"""Bounded interaction memories."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator

from stealth_engine.learning.types import InteractionRecord


class InteractionMemory:
    """FIFO memories of successful and failed interactions.

    Each side is capped; appending past the cap evicts the oldest record.
    """

    def __init__(self, success_capacity: int = 10000, failure_capacity: int = 5000) -> None:
        self.successful: deque[InteractionRecord] = deque(maxlen=success_capacity)
        self.failed: deque[InteractionRecord] = deque(maxlen=failure_capacity)

    def append(self, record: InteractionRecord) -> None:
        (self.successful if record.success else self.failed).append(record)

    def recent_failures(self, now: float, window_seconds: float) -> int:
        # Newest records sit at the right end
        count = 0
        for record in reversed(self.failed):
            if now - record.timestamp >= window_seconds:
                break
            count += 1
        return count

    def iter_successful(self) -> Iterator[InteractionRecord]:
        return iter(self.successful)

    def clear(self) -> None:
        self.successful.clear()
        self.failed.clear()

    def __len__(self) -> int:
        return len(self.successful) + len(self.failed)
