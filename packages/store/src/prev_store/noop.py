"""No-op memory store, used when memory is disabled (``memory: false``).

Using a NoOpMemoryStore rather than None lets the reviewer always call
load() and save() without conditional checks.
"""

from __future__ import annotations

from prev_store.base import BaseMemoryStore
from prev_store.models import ReviewMemory


class NoOpMemoryStore(BaseMemoryStore):
    """Remembers nothing between runs."""

    @property
    def location(self) -> str:
        return "(disabled)"

    def load(self) -> ReviewMemory:
        return ReviewMemory()

    def save(self, memory: ReviewMemory) -> None:
        pass  # intentional no-op
