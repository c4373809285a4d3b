"""Tests for review memory operations and the memory stores."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from prev_store.markdown import (
    MarkdownMemoryStore,
    parse_memory_markdown,
    render_memory_markdown,
    resolve_memory_path,
)
from prev_store.memory import (
    ObservedNote,
    entry_id,
    format_time,
    normalize,
    parse_time,
    prune,
    reconcile_discussions,
    record_findings,
    render_guidelines,
    rule_id,
    trim,
    upsert,
)
from prev_store.models import STATUS_FIXED, STATUS_OPEN, ReviewMemory, ReviewMemoryEntry
from prev_store.noop import NoOpMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _Finding:
    def __init__(self, file_path, line, severity, message):
        self.file_path = file_path
        self.line = line
        self.severity = severity
        self.message = message


def _memory_with(*entries):
    return ReviewMemory(entries=list(entries))


# ---------------------------------------------------------------------------
# Identity and time
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_entry_id_ignores_case_and_whitespace(self):
        assert entry_id("API/Handler.go", 42, "Nil  check missing") == entry_id("api/handler.go", 42, "nil check MISSING")

    def test_entry_id_depends_on_line(self):
        assert entry_id("a.go", 1, "x") != entry_id("a.go", 2, "x")

    def test_rule_id_ignores_location(self):
        assert rule_id("Nil check missing") == rule_id("  nil check   missing ")

    def test_entry_id_is_hex(self):
        assert len(entry_id("a.go", 1, "x")) == 20
        int(entry_id("a.go", 1, "x"), 16)


class TestTime:
    def test_format_is_utc_rfc3339(self):
        assert format_time(NOW) == "2026-03-01T12:00:00Z"

    def test_parse_accepts_z_suffix(self):
        assert parse_time("2026-03-01T12:00:00Z") == NOW
        assert parse_time("2026-03-01T12:00:00") == NOW

    def test_parse_rejects_garbage(self):
        assert parse_time("yesterday") is None
        assert parse_time("") is None


# ---------------------------------------------------------------------------
# upsert / record / reconcile
# ---------------------------------------------------------------------------


class TestUpsert:
    def test_new_entry(self):
        memory = ReviewMemory()
        assert upsert(memory, "a.go", 3, "high", "Leak", STATUS_OPEN, "acme!1", NOW)
        entry = memory.entries[0]
        assert entry.severity == "HIGH"
        assert entry.hits == 1
        assert entry.fixes == 0
        assert entry.first_seen == entry.last_seen == "2026-03-01T12:00:00Z"
        assert entry.last_mr == "acme!1"

    def test_severity_never_decreases(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_OPEN, "acme!1", NOW)
        upsert(memory, "a.go", 3, "LOW", "Leak", STATUS_OPEN, "acme!2", NOW + timedelta(days=1))
        assert memory.entries[0].severity == "HIGH"
        assert memory.entries[0].hits == 2
        assert memory.entries[0].last_mr == "acme!2"

    def test_severity_can_increase(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "LOW", "Leak", STATUS_OPEN, "acme!1", NOW)
        upsert(memory, "a.go", 3, "CRITICAL", "Leak", STATUS_OPEN, "acme!1", NOW)
        assert memory.entries[0].severity == "CRITICAL"

    def test_fixes_count_transitions_only(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_OPEN, "m", NOW)
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)
        entry = memory.entries[0]
        assert entry.status == STATUS_FIXED
        assert entry.fixes == 1
        assert entry.hits == 1

    def test_unchanged_observation_reports_no_change(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)
        assert not upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)

    def test_unknown_status_is_open(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "", "Leak", "weird", "m", NOW)
        assert memory.entries[0].status == STATUS_OPEN
        assert memory.entries[0].severity == "MEDIUM"


def test_record_findings_skips_unanchored():
    memory = ReviewMemory()
    findings = [
        _Finding("./a.go", 3, "HIGH", "Leak"),
        _Finding("", 3, "HIGH", "No path"),
        _Finding("b.go", 0, "HIGH", "No line"),
        _Finding("c.go", 1, "LOW", "   "),
    ]
    assert record_findings(memory, findings, "m", NOW)
    assert [e.file_path for e in memory.entries] == ["a.go"]


class TestReconcile:
    def test_resolved_note_marks_fixed(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_OPEN, "m", NOW)
        note = ObservedNote("a.go", 3, "HIGH", "Leak", resolvable=True, resolved=True)
        assert reconcile_discussions(memory, [note], "m", NOW)
        assert memory.entries[0].status == STATUS_FIXED
        assert memory.entries[0].fixes == 1

    def test_open_wins_over_fixed_for_same_finding(self):
        memory = ReviewMemory()
        notes = [
            ObservedNote("a.go", 3, "HIGH", "Leak", resolvable=True, resolved=True),
            ObservedNote("a.go", 3, "HIGH", "Leak", resolvable=True, resolved=False),
        ]
        reconcile_discussions(memory, notes, "m", NOW)
        assert memory.entries[0].status == STATUS_OPEN

    def test_non_resolvable_notes_are_ignored(self):
        memory = ReviewMemory()
        assert not reconcile_discussions(memory, [ObservedNote("a.go", 3, "HIGH", "Leak")], "m", NOW)
        assert memory.entries == []


# ---------------------------------------------------------------------------
# normalize / trim / prune
# ---------------------------------------------------------------------------


def _entry(file_path, severity, status=STATUS_OPEN, last_seen="2026-03-01T00:00:00Z", hits=1):
    return ReviewMemoryEntry(
        file_path=file_path, line=1, severity=severity, status=status, message=file_path, last_seen=last_seen, hits=hits
    )


def test_normalize_orders_by_severity_then_open_then_recent():
    memory = _memory_with(
        _entry("low.go", "low"),
        _entry("high-fixed.go", "HIGH", STATUS_FIXED),
        _entry("high-old.go", "HIGH", last_seen="2026-01-01T00:00:00Z"),
        _entry("high-new.go", "HIGH", last_seen="2026-02-01T00:00:00Z"),
    )
    normalize(memory)
    assert [e.file_path for e in memory.entries] == ["high-new.go", "high-old.go", "high-fixed.go", "low.go"]
    assert all(e.id and e.rule_id for e in memory.entries)


def test_normalize_defaults_missing_severity_to_medium():
    memory = _memory_with(ReviewMemoryEntry(file_path="a.py", line=1, message="m"))
    normalize(memory)
    assert memory.entries[0].severity == "MEDIUM"


def test_trim_keeps_open_entries_first():
    memory = _memory_with(
        _entry("fixed-critical.go", "CRITICAL", STATUS_FIXED),
        _entry("open-low.go", "LOW"),
        _entry("open-high.go", "HIGH"),
    )
    trim(memory, 2)
    assert [e.file_path for e in memory.entries] == ["open-high.go", "open-low.go"]


def test_trim_without_limit_is_noop():
    memory = _memory_with(_entry("a.go", "LOW"), _entry("b.go", "LOW"))
    trim(memory, 0)
    assert len(memory.entries) == 2


class TestPrune:
    def test_drops_stale_fixed_entries(self):
        memory = _memory_with(
            _entry("stale.go", "HIGH", STATUS_FIXED, last_seen="2026-01-01T00:00:00Z"),
            _entry("recent.go", "HIGH", STATUS_FIXED, last_seen="2026-02-25T00:00:00Z"),
            _entry("open-old.go", "HIGH", last_seen="2025-01-01T00:00:00Z"),
        )
        removed = prune(memory, max_entries=0, fixed_older_than_days=30, now=NOW)
        assert removed == 1
        assert {e.file_path for e in memory.entries} == {"recent.go", "open-old.go"}

    def test_unparseable_timestamps_are_kept(self):
        memory = _memory_with(_entry("odd.go", "HIGH", STATUS_FIXED, last_seen="sometime"))
        assert prune(memory, fixed_older_than_days=1, now=NOW) == 0

    def test_zero_days_disables_age_pruning_but_trims(self):
        memory = _memory_with(
            _entry("a.go", "HIGH", STATUS_FIXED, last_seen="2020-01-01T00:00:00Z"),
            _entry("b.go", "LOW"),
            _entry("c.go", "LOW"),
        )
        removed = prune(memory, max_entries=2, fixed_older_than_days=0, now=NOW)
        assert removed == 1
        assert all(e.status == STATUS_OPEN for e in memory.entries)

    def test_empty_memory(self):
        assert prune(ReviewMemory(), now=NOW) == 0


# ---------------------------------------------------------------------------
# render_guidelines
# ---------------------------------------------------------------------------


class TestRenderGuidelines:
    def test_empty_memory_renders_nothing(self):
        assert render_guidelines(ReviewMemory(), ["a.go"]) == ""

    def test_lists_entries_for_changed_files(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_OPEN, "m", NOW)
        upsert(memory, "b.go", 9, "LOW", "Typo", STATUS_OPEN, "m", NOW)
        block = render_guidelines(memory, ["A.go"])
        assert "- OPEN `a.go:3` [HIGH] Leak (hits=1 fixes=0)" in block
        assert "b.go" not in block
        assert block.startswith("Historical reviewer memory")

    def test_falls_back_to_top_open_findings(self):
        memory = ReviewMemory()
        for i in range(5):
            upsert(memory, f"f{i}.go", 1, "MEDIUM", f"Issue {i}", STATUS_OPEN, "m", NOW)
        block = render_guidelines(memory, ["unrelated.go"])
        assert block.count("- OPEN") == 3

    def test_only_fixed_history_elsewhere_renders_nothing(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)
        assert render_guidelines(memory, ["b.go"]) == ""


# ---------------------------------------------------------------------------
# Markdown store
# ---------------------------------------------------------------------------


class TestMarkdownMemoryStore:
    def test_missing_file_loads_empty(self, tmp_path):
        store = MarkdownMemoryStore(tmp_path / "nope.md")
        assert store.load().entries == []
        assert store.exists() is False

    def test_save_then_load(self, tmp_path):
        path = tmp_path / ".prev" / "review-memory.md"
        store = MarkdownMemoryStore(path)
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak | pipe", STATUS_OPEN, "acme!1", NOW)
        store.save(memory)

        text = path.read_text()
        assert text.startswith("# prev Review Memory")
        assert "```prev-memory-json" in text
        assert "Leak \\| pipe" in text
        loaded = store.load()
        assert loaded.entries[0].message == "Leak | pipe"
        assert loaded.updated_at

    def test_plain_json_is_accepted(self, tmp_path):
        path = tmp_path / "memory.md"
        path.write_text(json.dumps({"version": 1, "entries": [{"file_path": "a.go", "line": 2, "message": "x"}]}))
        entries = MarkdownMemoryStore(path).load().entries
        assert entries[0].file_path == "a.go"
        assert entries[0].status == STATUS_OPEN

    def test_unreadable_payload_loads_empty(self, tmp_path):
        path = tmp_path / "memory.md"
        path.write_text("# notes\n\nnot json at all")
        assert MarkdownMemoryStore(path).load().entries == []

    def test_invalid_utf8_loads_empty(self, tmp_path):
        path = tmp_path / "memory.md"
        path.write_bytes(b"\xff\xfe garbage \x80")
        assert MarkdownMemoryStore(path).load().entries == []

    @pytest.mark.parametrize(
        "entry",
        [
            {"file_path": "a.go", "line": 2, "message": "x", "hits": [1]},
            {"file_path": "a.go", "line": 2, "message": "x", "severity": 3},
            {"file_path": "a.go", "line": "two", "message": "x"},
        ],
    )
    def test_malformed_entry_loads_empty(self, tmp_path, entry):
        path = tmp_path / "memory.md"
        path.write_text(json.dumps({"version": 1, "entries": [entry]}))
        assert MarkdownMemoryStore(path).load().entries == []

    def test_parse_raises_on_non_object(self):
        with pytest.raises(ValueError):
            parse_memory_markdown("[1, 2]")

    def test_render_lists_fixed_and_open_tables(self):
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_FIXED, "m", NOW)
        text = render_memory_markdown(memory)
        assert "## Open Findings" in text
        assert "| _none_ |" in text
        assert "## Fixed Findings" in text
        assert "- Fixed: `1`" in text

    def test_resolve_memory_path(self, tmp_path):
        assert resolve_memory_path(tmp_path) == tmp_path / ".prev" / "review-memory.md"
        assert resolve_memory_path(tmp_path, "custom/mem.md") == tmp_path / "custom" / "mem.md"
        absolute = tmp_path / "abs.md"
        assert resolve_memory_path("/elsewhere", str(absolute)) == absolute


class TestNoOpMemoryStore:
    def test_remembers_nothing(self):
        store = NoOpMemoryStore()
        memory = ReviewMemory()
        upsert(memory, "a.go", 3, "HIGH", "Leak", STATUS_OPEN, "m", NOW)
        store.save(memory)
        assert store.load().entries == []
        assert store.location == "(disabled)"

    def test_close_is_safe(self):
        NoOpMemoryStore().close()
