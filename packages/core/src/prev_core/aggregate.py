"""Turn raw findings into postable inline comment groups.

Pipeline (see reviewer.run_mr_review):

  drop_meta_findings → drop_low_signal_findings
    → filter_for_review → apply_filter_mode → focus_doc_findings
    → aggregate_by_change → place_findings (by-line, then by-hunk)
    → prioritize_groups
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from prev_core.findings import Finding, Severity
from prev_core.placement import (
    PositionIndex,
    anchor_tokens,
    fallback_line,
    nearest_hunk_range,
    refine_line,
    resolve_line,
)
from prev_core.utils.code import is_doc_text_file

logger = logging.getLogger(__name__)

FILTER_MODES = ("added", "diff_context", "file", "nofilter")
DEFAULT_FILTER_MODE = "diff_context"

_TYPO_TERMS = (
    "typo",
    "spelling",
    "misspell",
    "grammar",
    "punctuation",
    "wording",
    "capitalization",
    "capitalisation",
    "whitespace",
)

# Phrases a model uses when it believes it was not shown the diff.
_META_CONTEXT_PATTERNS = (
    "modified hunk content is not provided",
    "hunk content is not provided",
    "cannot be reviewed because the modified",
    "actual changed hunks",
    "diff content is not provided",
    "ci configuration changes cannot be reviewed because the modified yaml content is not included",
)

# Boilerplate a model produces when it has nothing concrete to say about a line.
_GENERIC_PATTERNS = (
    "may affect global request handling",
    "ensure backward compatibility",
    "verify all routes",
    "without corresponding validation or explanation",
    "risks breaking the pipeline",
    "altering job execution semantics",
    "please clarify what specific functionality",
)


@dataclass(frozen=True)
class InlineGroup:
    """A postable inline comment. ``new_line`` is always a placeable coordinate."""

    file_path: str
    new_line: int
    old_line: int
    severity: Severity
    message: str
    suggestion: str = ""


@dataclass
class PlacementResult:
    groups: list[InlineGroup] = field(default_factory=list)
    unplaced: list[str] = field(default_factory=list)
    strategy: str = ""


def _normalize_message(message: str) -> str:
    return " ".join(message.split()).lower()


def _strip_dot_slash(path: str) -> str:
    return path.removeprefix("./").strip()


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def min_severity_rank(strictness: str, nitpick: int = 0) -> int:
    """Lowest severity rank kept for a strictness level or a 1-10 nitpick scale."""
    if nitpick > 0:
        if nitpick <= 2:
            return 4
        if nitpick <= 4:
            return 3
        if nitpick <= 6:
            return 2
        if nitpick <= 8:
            return 1
        return 0
    strictness = (strictness or "").lower()
    if strictness == "strict":
        return 0
    if strictness == "lenient":
        return 3
    return 2


def normalize_nitpick(nitpick: int, strictness: str) -> int:
    if nitpick > 10:
        nitpick = 10
    if nitpick > 0:
        return nitpick
    return {"lenient": 2, "strict": 8}.get((strictness or "").lower(), 5)


def filter_for_review(
    findings: list[Finding],
    strictness: str = "normal",
    nitpick: int = 0,
    kinds: list[str] | None = None,
) -> list[Finding]:
    """Drop findings below the severity threshold or outside the allowed kinds."""
    min_rank = min_severity_rank(strictness, nitpick)
    allowed = {k.strip().upper() for k in kinds or [] if k.strip()}
    kept = []
    for finding in findings:
        if min_rank > 0 and finding.severity.rank < min_rank:
            continue
        if allowed and finding.kind.value not in allowed:
            continue
        kept.append(finding)
    return kept


def normalize_filter_mode(mode: str | None) -> str:
    mode = (mode or "").strip().lower()
    return mode if mode in FILTER_MODES else DEFAULT_FILTER_MODE


def limit_to_changed_files(findings: list[Finding], index_by_file: dict[str, PositionIndex]) -> list[Finding]:
    if not findings or not index_by_file:
        return []
    return [f for f in findings if _strip_dot_slash(f.file_path) in index_by_file]


def _in_diff_context(finding: Finding, index_by_file: dict[str, PositionIndex]) -> bool:
    path = _strip_dot_slash(finding.file_path)
    index = index_by_file.get(path)
    if index is None:
        return False
    if finding.line > 0:
        if finding.line in index.old_by_new or finding.line in index.added:
            return True
        if resolve_line(index_by_file, path, finding.line) is not None:
            return True
    return bool(index.hunks or index.added)


def _on_added_line(finding: Finding, index_by_file: dict[str, PositionIndex]) -> bool:
    path = _strip_dot_slash(finding.file_path)
    index = index_by_file.get(path)
    if index is None:
        return False
    if finding.line <= 0:
        anchor = fallback_line(index_by_file, path)
        return anchor is not None and anchor in index.added
    return finding.line in index.added


def apply_filter_mode(findings: list[Finding], index_by_file: dict[str, PositionIndex], mode: str) -> list[Finding]:
    """Scope findings to the diff.

    ``added`` keeps findings on added lines, ``diff_context`` anything inside
    (or snappable into) a changed file's hunks, ``file`` anything on a changed
    file, and ``nofilter`` everything.
    """
    mode = normalize_filter_mode(mode)
    if mode == "nofilter":
        return list(findings)
    if mode == "file":
        return limit_to_changed_files(findings, index_by_file)
    if mode == "added":
        return [f for f in findings if _on_added_line(f, index_by_file)]
    return [f for f in findings if _in_diff_context(f, index_by_file)]


def select_inline_candidates(
    findings: list[Finding],
    index_by_file: dict[str, PositionIndex],
    strictness: str = "normal",
    nitpick: int = 0,
    kinds: list[str] | None = None,
    mode: str = DEFAULT_FILTER_MODE,
) -> tuple[list[Finding], bool]:
    """Severity/kind filtering followed by the filter mode, with fallbacks.

    Returns the candidates and whether a fallback kicked in. When the severity
    filter removes everything, findings on changed files (or all of them) are
    used instead; when the filter mode removes everything, its input is kept.
    """
    mode = normalize_filter_mode(mode)
    base = filter_for_review(findings, strictness, nitpick, kinds)
    used_fallback = False
    if not base and findings:
        base = limit_to_changed_files(findings, index_by_file) or list(findings)
        used_fallback = True
    if not base:
        return [], used_fallback

    scoped = apply_filter_mode(base, index_by_file, mode)
    if scoped:
        return scoped, used_fallback
    return base, used_fallback or mode != "nofilter"


def is_likely_typo_comment(message: str) -> bool:
    lowered = message.strip().lower()
    return bool(lowered) and any(term in lowered for term in _TYPO_TERMS)


def focus_doc_findings(findings: list[Finding]) -> list[Finding]:
    """Keep doc-file findings only when they are HIGH+ or about typos."""
    return [
        f
        for f in findings
        if not (
            is_doc_text_file(f.file_path)
            and f.severity.rank < Severity.HIGH.rank
            and not is_likely_typo_comment(f.message)
        )
    ]


def is_meta_context_finding(message: str) -> bool:
    lowered = message.strip().lower()
    return bool(lowered) and any(pattern in lowered for pattern in _META_CONTEXT_PATTERNS)


def drop_meta_findings(findings: list[Finding]) -> list[Finding]:
    return [f for f in findings if not is_meta_context_finding(f.message)]


def is_low_signal_finding(finding: Finding, index_by_file: dict[str, PositionIndex]) -> bool:
    """A generic remark that names nothing present in the file's diff.

    Only boilerplate phrasings are candidates. Code spans or any identifier
    that appears in the diff keep the finding.
    """
    message = finding.message.strip()
    if not message or "`" in message:
        return False
    if not any(pattern in message.lower() for pattern in _GENERIC_PATTERNS):
        return False
    index = index_by_file.get(_strip_dot_slash(finding.file_path))
    if index is None or not index.content:
        return False
    tokens = anchor_tokens(message)
    lines = [content.lower() for content in index.content.values()]
    return not any(token in line for line in lines for token in tokens)


def drop_low_signal_findings(findings: list[Finding], index_by_file: dict[str, PositionIndex]) -> list[Finding]:
    kept = [f for f in findings if not is_low_signal_finding(f, index_by_file)]
    if len(kept) < len(findings):
        logger.debug("Dropped %d low-signal finding(s)", len(findings) - len(kept))
    return kept


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


class _Merge:
    """Accumulates messages and suggestions for one group key."""

    def __init__(self, severity: Severity):
        self.severity = severity
        self.messages: list[str] = []
        self._seen: set[str] = set()
        self.suggestion = ""
        self._conflict = False

    def add(self, finding: Finding) -> None:
        if finding.severity.rank > self.severity.rank:
            self.severity = finding.severity
        message = finding.message.strip()
        if message:
            norm = _normalize_message(message)
            if norm not in self._seen:
                self._seen.add(norm)
                self.messages.append(message)
        suggestion = finding.suggestion.strip()
        if suggestion:
            if not self.suggestion:
                self.suggestion = suggestion
            elif self.suggestion != suggestion:
                self._conflict = True

    @property
    def merged_suggestion(self) -> str:
        return "" if self._conflict else self.suggestion


def _bullets(messages: list[str]) -> str:
    return "".join(f"\n- {m}" for m in messages)


def aggregate_by_change(findings: list[Finding]) -> list[Finding]:
    """Merge findings reported for the same file and line before placement.

    Identical messages (case and whitespace insensitive) collapse into one;
    distinct ones become a "Key points" list. Conflicting suggestions are
    dropped rather than guessed between.
    """
    order: list[str] = []
    groups: dict[str, tuple[Finding, _Merge]] = {}
    for finding in findings:
        path = finding.file_path.strip()
        if not path or finding.line <= 0:
            continue
        key = f"{path.lower()}|{finding.line}"
        if key not in groups:
            groups[key] = (replace(finding, file_path=path), _Merge(finding.severity))
            order.append(key)
        groups[key][1].add(finding)

    merged: list[Finding] = []
    for key in order:
        first, merge = groups[key]
        if not merge.messages:
            continue
        message = merge.messages[0]
        if len(merge.messages) > 1:
            message = "Key points:" + _bullets(merge.messages)
        merged.append(
            replace(first, severity=merge.severity, message=message, suggestion=merge.merged_suggestion)
        )
    return merged


def _unplaced_line(finding: Finding, requested: int) -> str:
    return (
        f"- {finding.file_path}:{requested} "
        f"[{finding.kind.value}/{finding.severity.value}] {finding.message}"
    )


def _place(finding: Finding, index_by_file: dict[str, PositionIndex]) -> tuple[int, tuple[int, int] | None] | None:
    """Requested line and resolved placement; None when the finding is skipped."""
    requested = finding.line
    if requested <= 0:
        anchor = fallback_line(index_by_file, finding.file_path)
        if anchor is None:
            return None
        requested = anchor
    placement = resolve_line(index_by_file, finding.file_path, requested)
    if placement is None:
        return requested, None
    index = index_by_file.get(finding.file_path)
    if index is not None:
        placement = refine_line(index, requested, placement[0], finding.message)
    return requested, placement


def aggregate_by_line(
    findings: list[Finding], index_by_file: dict[str, PositionIndex]
) -> tuple[list[InlineGroup], list[str]]:
    """One group per resolved (file, line); findings snapped onto the same line merge."""
    order: list[str] = []
    groups: dict[str, tuple[InlineGroup, _Merge]] = {}
    unplaced: list[str] = []
    for finding in findings:
        if not finding.message.strip():
            continue
        placed = _place(finding, index_by_file)
        if placed is None:
            continue
        requested, placement = placed
        if placement is None:
            unplaced.append(_unplaced_line(finding, requested))
            continue
        new_line, old_line = placement
        key = f"{finding.file_path.lower()}|{new_line}"
        if key not in groups:
            anchor = InlineGroup(finding.file_path, new_line, old_line, finding.severity, "")
            groups[key] = (anchor, _Merge(finding.severity))
            order.append(key)
        groups[key][1].add(finding)

    out: list[InlineGroup] = []
    for key in order:
        anchor, merge = groups[key]
        if not merge.messages:
            continue
        message = merge.messages[0]
        if len(merge.messages) > 1:
            message = "Key points:" + _bullets(merge.messages)
        out.append(replace(anchor, severity=merge.severity, message=message, suggestion=merge.merged_suggestion))
    return out, unplaced


def aggregate_by_hunk(
    findings: list[Finding], index_by_file: dict[str, PositionIndex]
) -> tuple[list[InlineGroup], list[str]]:
    """Merge every finding of a hunk into one comment with a "Key points" list."""
    order: list[str] = []
    groups: dict[str, tuple[InlineGroup, str, _Merge]] = {}
    unplaced: list[str] = []

    for finding in findings:
        if not finding.message.strip():
            continue
        placed = _place(finding, index_by_file)
        if placed is None:
            continue
        requested, placement = placed
        if placement is None:
            unplaced.append(_unplaced_line(finding, requested))
            continue
        new_line, old_line = placement

        start, end = nearest_hunk_range(index_by_file.get(finding.file_path), new_line)
        path_key = finding.file_path.lower()
        if start > 0 and end > 0:
            key, label = f"{path_key}|{start}|{end}", f"Hunk new lines {start}-{end}"
        else:
            key, label = f"{path_key}|{new_line}", f"Hunk anchor line {new_line}"

        if key not in groups:
            anchor = InlineGroup(finding.file_path, new_line, old_line, finding.severity, "")
            groups[key] = (anchor, label, _Merge(finding.severity))
            order.append(key)
        groups[key][2].add(finding)

    out: list[InlineGroup] = []
    for key in order:
        anchor, label, merge = groups[key]
        if not merge.messages:
            continue
        message = f"{label}\nKey points:" + _bullets(merge.messages)
        out.append(replace(anchor, severity=merge.severity, message=message, suggestion=merge.merged_suggestion))
    return out, unplaced


Strategy = Callable[[list[Finding], dict[str, PositionIndex]], tuple[list[InlineGroup], list[str]]]

# Tried in order until one yields groups.
DEFAULT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("by-line", aggregate_by_line),
    ("by-hunk", aggregate_by_hunk),
)


def place_findings(
    findings: list[Finding],
    index_by_file: dict[str, PositionIndex],
    strategies: tuple[tuple[str, Strategy], ...] = DEFAULT_STRATEGIES,
) -> PlacementResult:
    result = PlacementResult()
    for name, strategy in strategies:
        groups, unplaced = strategy(findings, index_by_file)
        # Every strategy sees the same findings; keep the last attempt's leftovers only.
        result.unplaced = unplaced
        if groups:
            if result.strategy:
                logger.info("Line-level grouping produced no placeable comments; using %s grouping", name)
            result.groups, result.strategy = groups, name
            return result
        result.strategy = name
        if not findings:
            break
    return result


def prioritize_groups(groups: list[InlineGroup], limit: int) -> list[InlineGroup]:
    """Keep the ``limit`` most severe groups (stable); 0 means no limit."""
    if limit <= 0 or len(groups) <= limit:
        return groups
    return sorted(groups, key=lambda g: -g.severity.rank)[:limit]
