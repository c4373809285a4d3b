"""Pure operations on review memory.

Nothing here touches the filesystem; backends in this package load and save
the ReviewMemory these functions transform. Timestamps are RFC 3339 UTC
strings so that string ordering matches chronological ordering.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from prev_store.models import (
    MEMORY_VERSION,
    STATUS_FIXED,
    STATUS_OPEN,
    EntryId,
    ReviewMemory,
    ReviewMemoryEntry,
    RuleId,
)

DEFAULT_MAX_ENTRIES = 500
DEFAULT_GUIDELINE_ITEMS = 10
DEFAULT_FIXED_OLDER_THAN_DAYS = 30

_SEVERITY_RANK = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}


def _rank(severity: str) -> int:
    return _SEVERITY_RANK.get(severity.strip().upper(), 0)


def _severity_text(severity) -> str:
    # Accepts plain strings as well as str-valued enums.
    return str(getattr(severity, "value", severity) or "").strip().upper()


def format_time(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(raw: str) -> datetime | None:
    """RFC 3339 or unix seconds; None when unparseable."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_message(message: str) -> str:
    return " ".join(message.strip().lower().split())


def entry_id(file_path: str, line: int, message: str) -> EntryId:
    """Identity of a finding: the file (case-insensitive), its line and its normalized text."""
    key = f"{file_path.strip().lower()}|{line}|{normalize_message(message)}"
    return EntryId(hashlib.sha1(key.encode("utf-8")).digest()[:10].hex())


def rule_id(message: str) -> RuleId:
    """Identity of the finding text alone, independent of where it occurred."""
    return RuleId(hashlib.sha1(normalize_message(message).encode("utf-8")).digest()[:8].hex())


def normalize_status(status: str) -> str:
    return STATUS_FIXED if (status or "").strip().lower() == STATUS_FIXED else STATUS_OPEN


def normalize(memory: ReviewMemory) -> ReviewMemory:
    """Fill defaults and missing ids, then sort by severity, open first, most recent first."""
    if not memory.version:
        memory.version = MEMORY_VERSION
    for entry in memory.entries:
        entry.status = normalize_status(entry.status)
        entry.severity = entry.severity.strip().upper() or "MEDIUM"
        entry.file_path = entry.file_path.strip()
        entry.message = entry.message.strip()
        if not entry.id:
            entry.id = entry_id(entry.file_path, entry.line, entry.message)
        if not entry.rule_id:
            entry.rule_id = rule_id(entry.message)
    # Stable multi-key sort: least significant key first.
    memory.entries.sort(key=lambda e: e.last_seen, reverse=True)
    memory.entries.sort(key=lambda e: e.status != STATUS_OPEN)
    memory.entries.sort(key=lambda e: _rank(e.severity), reverse=True)
    return memory


def upsert(
    memory: ReviewMemory,
    file_path: str,
    line: int,
    severity: str,
    message: str,
    status: str,
    mr_ref: str,
    now: datetime,
    known_id: EntryId | None = None,
) -> bool:
    """Record one observation of a finding. Returns True when memory changed.

    Severity only ever goes up. ``hits`` counts open observations and
    ``fixes`` counts transitions into fixed.
    """
    status = normalize_status(status)
    severity = _severity_text(severity)
    when = format_time(now)
    target = known_id or entry_id(file_path, line, message)

    for i, entry in enumerate(memory.entries):
        if entry.id != target:
            continue
        updated = replace(entry, status=status, file_path=file_path.strip(), line=line, last_seen=when, last_mr=mr_ref)
        if _rank(severity) > _rank(entry.severity) or not entry.severity:
            updated.severity = severity
        if message.strip():
            updated.message = message.strip()
        updated.rule_id = rule_id(updated.message)
        if status == STATUS_OPEN:
            updated.hits += 1
        if status == STATUS_FIXED and entry.status != STATUS_FIXED:
            updated.fixes += 1
        memory.entries[i] = updated
        return updated != entry

    memory.entries.append(
        ReviewMemoryEntry(
            id=target,
            rule_id=rule_id(message),
            status=status,
            severity=severity or "MEDIUM",
            file_path=file_path.strip(),
            line=line,
            message=message.strip(),
            first_seen=when,
            last_seen=when,
            hits=1 if status == STATUS_OPEN else 0,
            fixes=1 if status == STATUS_FIXED else 0,
            last_mr=mr_ref,
        )
    )
    return True


@dataclass(frozen=True)
class ObservedNote:
    """A bot finding seen in a merge request discussion.

    ``resolved`` notes count as fixed, unresolved ``resolvable`` ones as open;
    notes that are neither are ignored.
    """

    file_path: str
    line: int
    severity: str
    message: str
    resolvable: bool = False
    resolved: bool = False


def reconcile_discussions(memory: ReviewMemory, notes: Iterable[ObservedNote], mr_ref: str, now: datetime) -> bool:
    """Apply discussion state to memory; open wins over fixed for the same id."""
    by_id: dict[EntryId, tuple[str, ObservedNote]] = {}
    for note in notes:
        if not note.file_path or note.line <= 0:
            continue
        if note.resolved:
            status = STATUS_FIXED
        elif note.resolvable:
            status = STATUS_OPEN
        else:
            continue
        key = entry_id(note.file_path, note.line, note.message)
        current = by_id.get(key)
        if current is None or (current[0] != STATUS_OPEN and status == STATUS_OPEN):
            by_id[key] = (status, note)

    changed = False
    for key, (status, note) in by_id.items():
        if upsert(memory, note.file_path, note.line, note.severity, note.message, status, mr_ref, now, known_id=key):
            changed = True
    return changed


def record_findings(memory: ReviewMemory, findings: Iterable, mr_ref: str, now: datetime) -> bool:
    """Record parsed findings (anything with file_path/line/severity/message) as open."""
    changed = False
    for finding in findings:
        path = finding.file_path.removeprefix("./").strip()
        if not path or finding.line <= 0 or not finding.message.strip():
            continue
        if upsert(memory, path, finding.line, finding.severity, finding.message, STATUS_OPEN, mr_ref, now):
            changed = True
    return changed


def trim(memory: ReviewMemory, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
    """Keep the ``max_entries`` most valuable entries: open, severe, recent, frequent."""
    if max_entries <= 0 or len(memory.entries) <= max_entries:
        return
    memory.entries.sort(key=lambda e: e.hits, reverse=True)
    memory.entries.sort(key=lambda e: e.last_seen, reverse=True)
    memory.entries.sort(key=lambda e: _rank(e.severity), reverse=True)
    memory.entries.sort(key=lambda e: e.status != STATUS_OPEN)
    del memory.entries[max_entries:]


def prune(
    memory: ReviewMemory,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    fixed_older_than_days: int = DEFAULT_FIXED_OLDER_THAN_DAYS,
    now: datetime | None = None,
) -> int:
    """Drop stale fixed entries, then trim. Returns the number of removed entries.

    Entries whose ``last_seen`` cannot be parsed are kept. A day threshold of 0
    disables age-based pruning.
    """
    if not memory.entries:
        return 0
    now = now or datetime.now(timezone.utc)
    normalize(memory)
    before = len(memory.entries)
    if fixed_older_than_days > 0:
        max_age = timedelta(days=fixed_older_than_days)
        kept = []
        for entry in memory.entries:
            last = parse_time(entry.last_seen) if entry.status == STATUS_FIXED else None
            if last is None or now - last <= max_age:
                kept.append(entry)
        memory.entries = kept
    if max_entries > 0:
        trim(memory, max_entries)
    return before - len(memory.entries)


def render_guidelines(memory: ReviewMemory, changed_paths: Iterable[str], max_items: int = DEFAULT_GUIDELINE_ITEMS) -> str:
    """Prompt block with remembered findings for the files being reviewed.

    Falls back to the top few open findings overall when none of the changed
    files has history. Empty string when there is nothing to say.
    """
    if max_items <= 0:
        max_items = DEFAULT_GUIDELINE_ITEMS
    normalize(memory)
    if not memory.entries:
        return ""

    changed = {p.strip().lower() for p in changed_paths if p and p.strip()}
    relevant = [e for e in memory.entries if e.file_path.lower() in changed][:max_items]
    if not relevant:
        relevant = [e for e in memory.entries if e.status == STATUS_OPEN][: min(3, max_items)]
    if not relevant:
        return ""

    lines = ["Historical reviewer memory from prior MRs (use this for consistency and regression checks):"]
    for e in relevant:
        lines.append(
            f"- {e.status.upper()} `{e.file_path}:{e.line}` [{e.severity.upper()}] "
            f"{e.message.strip()} (hits={e.hits} fixes={e.fixes})"
        )
    lines.append("- Do not repeat fixed findings unless the issue reappears in the current diff.")
    lines.append("- Prioritize recurring open findings when they are still present.")
    return "\n".join(lines)
