"""Abstract memory store interface.

The reviewer and the CLI depend on BaseMemoryStore, not on a concrete backend,
so the on-disk format can change without touching either of them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prev_store.models import ReviewMemory


class BaseMemoryStore(ABC):
    """Single-process, single-writer persistence for review memory.

    ``load`` never fails on a missing or unreadable payload: it returns an
    empty memory instead. I/O errors (permissions, full disk) propagate so the
    caller can warn and carry on.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the memory, for log and CLI output."""

    @abstractmethod
    def load(self) -> ReviewMemory:
        """Return the stored memory, normalized."""

    @abstractmethod
    def save(self, memory: ReviewMemory) -> None:
        """Persist ``memory``, stamping its ``updated_at``."""

    def close(self) -> None:
        """Release any resources held by the store.

        Optional: the default is a no-op so callers can always call close() safely.
        """
