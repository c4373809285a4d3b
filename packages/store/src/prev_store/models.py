"""Review memory data models.

Decoupled from prev_core so the store layer can be used independently:
findings and discussion notes reach it as plain attributes, never as core types.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import NewType

MEMORY_VERSION = 1

STATUS_OPEN = "open"
STATUS_FIXED = "fixed"

# sha1-derived identities; see prev_store.memory.entry_id / rule_id.
EntryId = NewType("EntryId", str)
RuleId = NewType("RuleId", str)


@dataclass
class ReviewMemoryEntry:
    """One finding remembered across merge requests."""

    id: EntryId = EntryId("")
    rule_id: RuleId = RuleId("")
    status: str = STATUS_OPEN  # "open" | "fixed"
    severity: str = ""
    file_path: str = ""
    line: int = 0
    message: str = ""
    first_seen: str = ""  # RFC 3339 UTC
    last_seen: str = ""
    hits: int = 0
    fixes: int = 0
    last_mr: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> ReviewMemoryEntry:
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data and data[k] is not None}
        entry = cls(**known)
        for name in ("id", "rule_id", "status", "severity", "file_path", "message", "first_seen", "last_seen", "last_mr"):
            value = getattr(entry, name)
            if not isinstance(value, str):
                raise ValueError(f"review memory entry field {name!r} must be a string, got {type(value).__name__}")
        entry.line = int(entry.line or 0)
        entry.hits = int(entry.hits or 0)
        entry.fixes = int(entry.fixes or 0)
        return entry


@dataclass
class ReviewMemory:
    version: int = MEMORY_VERSION
    updated_at: str = ""
    entries: list[ReviewMemoryEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> ReviewMemory:
        entries = [ReviewMemoryEntry.from_dict(e) for e in data.get("entries") or [] if isinstance(e, dict)]
        return cls(
            version=int(data.get("version") or MEMORY_VERSION),
            updated_at=str(data.get("updated_at") or ""),
            entries=entries,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def counts(self) -> tuple[int, int]:
        """Return (open, fixed) entry counts."""
        open_count = sum(1 for e in self.entries if e.status == STATUS_OPEN)
        fixed_count = sum(1 for e in self.entries if e.status == STATUS_FIXED)
        return open_count, fixed_count
