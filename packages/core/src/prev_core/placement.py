"""Inline comment placement on exact diff coordinates.

Review comments must be anchored to lines that are part of the diff, otherwise
the GitHub and GitLab inline comment APIs reject them. Model-reported lines are
approximate, so every requested line goes through:

  build_position_index → resolve_line (snap onto an added line)
                       → refine_line (nudge by keywords from the message)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from prev_core.diff.models import FileChange, LineType

# Maximum distance from the requested line a keyword-based refinement may move to.
REFINE_WINDOW = 6

_TOKEN_RE = re.compile(r"[a-z_][a-z0-9_]{2,}")
_STOPWORDS = frozenset(
    {
        "the",
        "and",
        "for",
        "with",
        "without",
        "this",
        "that",
        "line",
        "lines",
        "hunk",
        "content",
        "review",
        "issue",
        "high",
        "medium",
        "low",
        "critical",
        "json",
        "result",
        "returned",
        "directly",
        "check",
        "which",
        "can",
        "silently",
        "output",
        "invalid",
        "failure",
        "encoding",
    }
)


@dataclass
class PositionIndex:
    """Placeable coordinates of one file in the current diff.

    ``old_by_new`` maps every new-file line visible in a hunk to its old-file
    line (0 for added lines). ``hunks`` holds inclusive ``(start, end)`` ranges
    in new-file numbering, in diff order.
    """

    old_path: str = ""
    old_by_new: dict[int, int] = field(default_factory=dict)
    added: set[int] = field(default_factory=set)
    content: dict[int, str] = field(default_factory=dict)
    hunks: list[tuple[int, int]] = field(default_factory=list)

    def old_line(self, new_line: int) -> int:
        return self.old_by_new.get(new_line, 0)


def build_position_index(changes: list[FileChange]) -> dict[str, PositionIndex]:
    index_by_file: dict[str, PositionIndex] = {}
    for change in changes:
        name = change.new_path
        if not name:
            continue
        index = index_by_file.setdefault(name, PositionIndex())
        if not index.old_path:
            index.old_path = change.old_path
        for hunk in change.hunks:
            start = hunk.new_start
            end = max(hunk.new_start + hunk.new_lines - 1, start)
            index.hunks.append((start, end))
            for line in hunk.lines:
                if line.new_line <= 0:
                    continue
                index.old_by_new[line.new_line] = line.old_line
                index.content[line.new_line] = line.content
                if line.type == LineType.ADDED:
                    index.added.add(line.new_line)
    return index_by_file


def _snap_to_added(index: PositionIndex, requested: int) -> int | None:
    """Nearest added line in the hunk enclosing (or nearest to) ``requested``.

    Lines at or after the requested one win over earlier ones: reviewers tend to
    point just above the line that introduces the problem.
    """
    if not index.hunks or not index.added:
        return None

    chosen: tuple[int, int] | None = None
    best_dist: int | None = None
    for start, end in index.hunks:
        if start <= requested <= end:
            chosen = (start, end)
            break
        dist = start - requested
        if dist < 0:
            dist = requested - end
        if best_dist is None or dist < best_dist:
            best_dist = dist
            chosen = (start, end)
    if chosen is None:
        return None

    start, end = chosen
    in_hunk = [ln for ln in index.added if start <= ln <= end]
    below = [ln for ln in in_hunk if ln >= requested]
    if below:
        return min(below)
    above = [ln for ln in in_hunk if ln < requested]
    if above and max(above) > 0:
        return max(above)
    return None


def _nearest_added(index: PositionIndex, requested: int) -> int | None:
    """Nearest added line anywhere in the file, preferring lines at or below ``requested``."""
    below = [ln for ln in index.added if ln >= requested]
    if below:
        return min(below)
    above = [ln for ln in index.added if 0 < ln < requested]
    if above:
        return max(above)
    return None


def resolve_line(index_by_file: dict[str, PositionIndex], path: str, requested: int) -> tuple[int, int] | None:
    """Map a requested line onto a placeable ``(new_line, old_line)`` pair.

    Added lines are returned unchanged. Context lines snap to the nearest added
    line of their hunk and fall back to themselves. Lines outside every hunk
    snap through the nearest hunk, then to the nearest added line of the file.
    None means the file has no added line at all.
    """
    index = index_by_file.get(path)
    if index is None:
        return None

    if requested in index.old_by_new:
        if requested not in index.added:
            snapped = _snap_to_added(index, requested)
            if snapped is not None:
                return snapped, index.old_line(snapped)
        return requested, index.old_by_new[requested]

    snapped = _snap_to_added(index, requested)
    if snapped is None:
        snapped = _nearest_added(index, requested)
    if snapped is not None:
        return snapped, index.old_line(snapped)
    return None


def fallback_line(index_by_file: dict[str, PositionIndex], path: str) -> int | None:
    """Anchor for findings without a line: first added line, else first hunk start."""
    index = index_by_file.get(path)
    if index is None:
        return None
    positive_added = [ln for ln in index.added if ln > 0]
    if positive_added:
        return min(positive_added)
    starts = [start for start, _ in index.hunks if start > 0]
    if starts:
        return min(starts)
    return None


def nearest_hunk_range(index: PositionIndex | None, line: int) -> tuple[int, int]:
    if index is None or not index.hunks:
        return 0, 0
    best = index.hunks[0]
    best_dist = abs(line - best[0]) + abs(line - best[1])
    for start, end in index.hunks:
        if start <= line <= end:
            return start, end
        dist = abs(line - start) + abs(line - end)
        if dist < best_dist:
            best, best_dist = (start, end), dist
    return best


def anchor_tokens(message: str) -> list[str]:
    """Identifier-like words from a finding message, in order of appearance."""
    tokens: list[str] = []
    seen: set[str] = set()
    for token in _TOKEN_RE.findall(message.lower()):
        if token in _STOPWORDS or len(token) < 4 or token in seen:
            continue
        seen.add(token)
        tokens.append(token)
    return tokens


def refine_line(index: PositionIndex, requested: int, current: int, message: str) -> tuple[int, int]:
    """Move a snapped placement to the added line the message talks about.

    Only added lines within REFINE_WINDOW of ``requested`` (and inside the hunk
    of ``current`` when there is one) are considered. An exact added-line anchor
    is never moved.
    """
    unchanged = (current, index.old_line(current))
    if not index.added or not message.strip():
        return unchanged
    if requested == current and current in index.added:
        return unchanged
    tokens = anchor_tokens(message)
    if not tokens:
        return unchanged

    start, end = nearest_hunk_range(index, current)
    if start > 0 and end > 0:
        candidates = [ln for ln in index.added if start <= ln <= end]
    else:
        candidates = list(index.added)
    if not candidates:
        candidates = list(index.added)

    best_line, best_score, best_dist = current, 0, None
    for ln in sorted(candidates):
        content = index.content.get(ln, "").strip().lower()
        if not content:
            continue
        dist = abs(ln - requested)
        if dist > REFINE_WINDOW:
            continue
        score = 2 * sum(1 for token in tokens if token in content)
        if score == 0:
            continue
        if score > best_score or (score == best_score and (best_dist is None or dist < best_dist)):
            best_line, best_score, best_dist = ln, score, dist

    if best_score == 0:
        return unchanged
    return best_line, index.old_line(best_line)
