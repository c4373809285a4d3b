"""Structured unified-diff model shared by the placement engine and the VCS layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class LineType(IntEnum):
    CONTEXT = 0
    ADDED = 1
    DELETED = 2


@dataclass(frozen=True)
class DiffLine:
    type: LineType
    content: str = ""
    old_line: int = 0  # 0 for added lines
    new_line: int = 0  # 0 for deleted lines


@dataclass(frozen=True)
class Hunk:
    old_start: int = 0
    old_lines: int = 0
    new_start: int = 0
    new_lines: int = 0
    lines: tuple[DiffLine, ...] = ()


@dataclass(frozen=True)
class FileChange:
    """One file of a parsed diff.

    ``new_path`` is empty for deletions and ``old_path`` is empty for new files,
    mirroring what ``/dev/null`` means in a unified diff.
    """

    old_path: str = ""
    new_path: str = ""
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_binary: bool = False
    hunks: tuple[Hunk, ...] = field(default_factory=tuple)
    additions: int = 0
    deletions: int = 0

    @property
    def path(self) -> str:
        return self.new_path.strip() or self.old_path.strip()


def has_modified_lines(changes: list[FileChange]) -> bool:
    """Return True if any non-binary change carries an added or deleted line."""
    for change in changes:
        if change.is_binary:
            continue
        for hunk in change.hunks:
            if any(line.type in (LineType.ADDED, LineType.DELETED) for line in hunk.lines):
                return True
    return False
