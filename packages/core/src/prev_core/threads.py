"""Reconcile new inline groups with the discussions already on the merge request.

Everything here is a pure function of the live discussion snapshot: the
reviewer fetches discussions and notes once, asks this module what to post,
and performs the network calls itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from prev_core.aggregate import InlineGroup
from prev_core.comments import CARRY_OVER_MARKER, REPLY_MARKER, REUSE_MARKER, THREAD_MARKER
from prev_core.diff.models import FileChange, LineType
from prev_core.findings import Severity, parse_severity
from prev_core.placement import PositionIndex, fallback_line, resolve_line
from prev_core.vcs.models import Discussion, MergeRequest, Note

DEFAULT_MENTION = "prev"

# Minimum match score for replying in an existing thread instead of opening a new one.
REUSE_THRESHOLD = 10
_MAX_LINE_PENALTY = 50
_MAX_CARRY_OVER_LINES = 20

_KEYWORD_SPLIT_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Bot comment parsing
# ---------------------------------------------------------------------------


def severity_and_message(body: str) -> tuple[Severity, str] | None:
    """Read ``[SEVERITY] message`` off a bot-authored comment body.

    HTML comment markers are skipped. When the severity tag stands alone, the
    next non-empty line (bullet stripped) is the message.
    """
    lines = body.strip().split("\n")
    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line or line.startswith("<!--") or not line.startswith("["):
            continue
        close = line.find("]")
        if close <= 1:
            continue
        severity = parse_severity(line[1:close])
        if severity is None:
            continue
        message = line[close + 1 :].strip()
        if not message:
            for candidate in lines[i + 1 :]:
                candidate = candidate.strip()
                if not candidate or candidate.startswith("<!--"):
                    continue
                candidate = candidate.removeprefix("-").removeprefix("*").strip()
                if candidate:
                    message = candidate
                    break
        return severity, message or f"{severity.value} finding"
    return None


def inline_key(path: str, line: int) -> str:
    return f"{path.strip()}|{line}".lower()


def inline_severity_key(path: str, line: int, severity: Severity | str) -> str:
    sev = severity.value if isinstance(severity, Severity) else severity.strip().upper()
    return f"{path.strip()}|{line}|{sev}".lower()


def _inline_notes(discussions: list[Discussion]):
    for discussion in discussions:
        for note in discussion.notes:
            if note.file_path and note.line > 0:
                yield note


def existing_inline_keys(discussions: list[Discussion]) -> set[str]:
    return {inline_key(n.file_path, n.line) for n in _inline_notes(discussions)}


def existing_severity_keys(discussions: list[Discussion]) -> set[str]:
    keys = set()
    for note in _inline_notes(discussions):
        parsed = severity_and_message(note.body)
        if parsed is not None:
            keys.add(inline_severity_key(note.file_path, note.line, parsed[0]))
    return keys


# ---------------------------------------------------------------------------
# Mention commands
# ---------------------------------------------------------------------------


def has_mention_command(body: str, mention: str, command: str) -> bool:
    handle = mention.strip().removeprefix("@").lower()
    if not handle:
        return False
    return f"@{handle} {command.lower()}" in body.lower()


def is_bot_author(author: str, mention: str) -> bool:
    author = author.strip().lower()
    handle = mention.removeprefix("@").strip().lower()
    return bool(author and handle) and author == handle


def _paused(bodies: list[str], mention: str) -> bool:
    # The latest of pause/resume wins.
    paused = False
    for body in bodies:
        if has_mention_command(body, mention, "pause"):
            paused = True
        if has_mention_command(body, mention, "resume"):
            paused = False
    return paused


def is_mr_paused(notes: list[Note], mention: str) -> bool:
    if not mention.strip():
        return False
    return _paused([n.body for n in notes], mention)


def paused_discussions(discussions: list[Discussion], mention: str) -> set[str]:
    if not mention.strip():
        return set()
    return {d.id for d in discussions if _paused([n.body for n in d.notes], mention)}


def thread_has_command(discussion: Discussion, mention: str, command: str) -> bool:
    return any(has_mention_command(n.body, mention, command) for n in discussion.notes)


def any_thread_has_command(discussions: list[Discussion], mention: str, command: str) -> bool:
    return any(thread_has_command(d, mention, command) for d in discussions)


def has_marker(bodies: list[str], marker: str) -> bool:
    marker = marker.strip().lower()
    return bool(marker) and any(marker in body.lower() for body in bodies)


def is_prev_thread(discussion: Discussion, mention: str) -> bool:
    """True for threads opened by this tool."""
    if not discussion.notes:
        return False
    first = discussion.notes[0]
    if THREAD_MARKER in first.body.lower():
        return True
    return (
        bool(mention)
        and first.author.lower() == mention.lower()
        and severity_and_message(first.body) is not None
    )


def discussion_anchor(discussion: Discussion) -> tuple[str, int]:
    for note in discussion.notes:
        if note.file_path and note.line > 0:
            return note.file_path, note.line
    return "", 0


# ---------------------------------------------------------------------------
# Thread reuse
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReusableThread:
    discussion_id: str
    file_path: str
    line: int
    severity: Severity
    message: str


def collect_reusable_threads(
    discussions: list[Discussion], mention: str, paused: set[str] | None = None
) -> list[ReusableThread]:
    paused = paused or set()
    threads = []
    for discussion in discussions:
        if discussion.id in paused:
            continue
        if not is_prev_thread(discussion, mention) and not thread_has_command(discussion, mention, "review"):
            continue
        path, line = discussion_anchor(discussion)
        if not path.strip() or line <= 0:
            continue
        for note in reversed(discussion.notes):
            if note.resolved or not note.resolvable:
                continue
            parsed = severity_and_message(note.body)
            if parsed is None:
                continue
            threads.append(ReusableThread(discussion.id, path, line, parsed[0], parsed[1]))
            break
    return threads


def keyword_set(text: str) -> set[str]:
    return {word for word in _KEYWORD_SPLIT_RE.split(text.lower()) if len(word) > 2}


def keyword_overlap(a: str, b: str) -> int:
    return len(keyword_set(a) & keyword_set(b))


def match_reusable_thread(candidates: list[ReusableThread], group: InlineGroup) -> ReusableThread | None:
    """Best open thread on the same file and severity, if it scores REUSE_THRESHOLD or more.

    Score is ten points per shared keyword minus the line distance (capped).
    """
    best: ReusableThread | None = None
    best_score = -1
    for candidate in candidates:
        if candidate.file_path.strip().lower() != group.file_path.strip().lower():
            continue
        if candidate.severity != group.severity:
            continue
        penalty = min(abs(candidate.line - group.new_line), _MAX_LINE_PENALTY)
        score = keyword_overlap(candidate.message, group.message) * 10 - penalty
        if score > best_score:
            best, best_score = candidate, score
    if best is None or best_score < REUSE_THRESHOLD:
        return None
    return best


def reuse_reply_body(group: InlineGroup, body: str) -> str:
    return f"{REUSE_MARKER}\nRevalidated on current diff near `{group.file_path}:{group.new_line}`.\n\n{body}"


@dataclass(frozen=True)
class PlannedPost:
    """One inline comment to create, or a reply when ``reply_to`` names a discussion."""

    group: InlineGroup
    body: str
    reply_to: str = ""


@dataclass
class PostingPlan:
    posts: list[PlannedPost] = field(default_factory=list)
    skipped_existing: int = 0
    skipped_duplicate: int = 0

    @property
    def replies(self) -> list[PlannedPost]:
        return [p for p in self.posts if p.reply_to]


class PostTracker:
    """Per-run idempotency state: posted keys and consumed discussions.

    Exclusion sets come from the live discussion snapshot; a post only counts
    once it succeeded (see ``mark_posted``).
    """

    def __init__(self, discussions: list[Discussion], mention: str = DEFAULT_MENTION, paused: set[str] | None = None):
        self.existing = existing_inline_keys(discussions)
        self.existing_severity = existing_severity_keys(discussions)
        self.reusable = collect_reusable_threads(discussions, mention, paused)
        self.posted: set[str] = set()
        self.consumed: set[str] = set()

    def skip_reason(self, group: InlineGroup) -> str:
        key = inline_key(group.file_path, group.new_line)
        if key in self.existing:
            return "existing"
        if inline_severity_key(group.file_path, group.new_line, group.severity) in self.existing_severity:
            return "existing"
        if key in self.posted:
            return "duplicate"
        return ""

    def reusable_thread(self, group: InlineGroup) -> ReusableThread | None:
        thread = match_reusable_thread(self.reusable, group)
        if thread is None or thread.discussion_id in self.consumed:
            return None
        return thread

    def plan(self, group: InlineGroup, body: str) -> PlannedPost:
        """Post for a group ``skip_reason`` lets through: a reuse reply or a new comment."""
        thread = self.reusable_thread(group)
        if thread is not None:
            return PlannedPost(group, reuse_reply_body(group, body), thread.discussion_id)
        return PlannedPost(group, body)

    def mark_posted(self, group: InlineGroup, reply_to: str = "") -> None:
        self.posted.add(inline_key(group.file_path, group.new_line))
        self.existing_severity.add(inline_severity_key(group.file_path, group.new_line, group.severity))
        if reply_to:
            self.consumed.add(reply_to)


def plan_inline_posts(
    groups: list[InlineGroup],
    bodies: list[str],
    discussions: list[Discussion],
    mention: str = DEFAULT_MENTION,
    paused: set[str] | None = None,
) -> PostingPlan:
    """Decide, assuming every post succeeds, what to post for each group.

    ``bodies[i]`` is the rendered comment for ``groups[i]``. Reused threads are
    answered with a reply carrying the reuse marker; each thread is reused at
    most once.
    """
    tracker = PostTracker(discussions, mention, paused)
    plan = PostingPlan()
    for group, body in zip(groups, bodies):
        reason = tracker.skip_reason(group)
        if reason == "existing":
            plan.skipped_existing += 1
            continue
        if reason == "duplicate":
            plan.skipped_duplicate += 1
            continue
        planned = tracker.plan(group, body)
        plan.posts.append(planned)
        tracker.mark_posted(group, planned.reply_to)
    return plan


# ---------------------------------------------------------------------------
# Carry-over reminders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CarryOverFinding:
    discussion_id: str
    file_path: str
    line: int
    severity: Severity
    message: str


def _discussions_with_marker(discussions: list[Discussion], marker: str) -> set[str]:
    return {d.id for d in discussions if has_marker([n.body for n in d.notes], marker)}


def collect_carry_over(
    discussions: list[Discussion],
    index_by_file: dict[str, PositionIndex],
    mention: str = DEFAULT_MENTION,
    paused: set[str] | None = None,
) -> list[CarryOverFinding]:
    """Unresolved findings of earlier runs that still land on the current diff."""
    paused = paused or set()
    reminded = _discussions_with_marker(discussions, CARRY_OVER_MARKER)
    seen: set[str] = set()
    out: list[CarryOverFinding] = []
    for discussion in discussions:
        if discussion.id in paused or discussion.id in reminded:
            continue
        if not is_prev_thread(discussion, mention) and not thread_has_command(discussion, mention, "review"):
            continue
        for note in discussion.notes:
            if not note.resolvable or note.resolved or not note.file_path or note.line <= 0:
                continue
            if resolve_line(index_by_file, note.file_path, note.line) is None:
                continue
            parsed = severity_and_message(note.body)
            if parsed is None:
                continue
            key = inline_key(note.file_path, note.line)
            if key in seen:
                continue
            seen.add(key)
            out.append(CarryOverFinding(discussion.id, note.file_path, note.line, parsed[0], parsed[1]))
    out.sort(key=lambda c: -c.severity.rank)
    return out


def carry_over_guidelines(guidelines: str, carry: list[CarryOverFinding]) -> str:
    if not carry:
        return guidelines
    lines = ["Address unresolved carry-over findings first (if still valid in this diff):"]
    lines += [f"- {c.file_path}:{c.line} [{c.severity.value}] {c.message}" for c in carry[:_MAX_CARRY_OVER_LINES]]
    block = "\n".join(lines)
    return f"{guidelines}\n{block}" if guidelines.strip() else block


def carry_over_body(carry: CarryOverFinding) -> str:
    return (
        f"{CARRY_OVER_MARKER}\nUnresolved prior finding is still present in this revision at "
        f"`{carry.file_path}:{carry.line}` [{carry.severity.value}]. "
        "Please address this before lower-priority items."
    )


def pending_carry_over_reminders(
    discussions: list[Discussion], carry: list[CarryOverFinding], paused: set[str] | None = None
) -> list[CarryOverFinding]:
    """One reminder per discussion that has not been reminded yet."""
    paused = paused or set()
    reminded = _discussions_with_marker(discussions, CARRY_OVER_MARKER)
    pending = []
    for item in carry:
        if item.discussion_id in paused or item.discussion_id in reminded:
            continue
        reminded.add(item.discussion_id)
        pending.append(item)
    return pending


# ---------------------------------------------------------------------------
# @mention replies
# ---------------------------------------------------------------------------


def _latest_request_index(bodies: list[str], mention: str) -> int:
    for i in range(len(bodies) - 1, -1, -1):
        if has_mention_command(bodies[i], mention, "reply"):
            return i
    return -1


def threads_awaiting_reply(
    discussions: list[Discussion], mention: str, paused: set[str] | None = None, marker: str = ""
) -> list[Discussion]:
    """Threads whose latest ``@prev reply`` request has no bot reply after it."""
    marker = marker or REPLY_MARKER
    paused = paused or set()
    waiting = []
    for discussion in discussions:
        if discussion.id in paused:
            continue
        bodies = [n.body for n in discussion.notes]
        idx = _latest_request_index(bodies, mention)
        if idx < 0:
            continue
        if has_marker(bodies[idx + 1 :], marker):
            continue
        waiting.append(discussion)
    return waiting


def notes_awaiting_reply(notes: list[Note], mention: str, marker: str = "") -> list[Note]:
    marker = marker or REPLY_MARKER
    if not mention.strip():
        return []
    waiting = []
    for i, note in enumerate(notes):
        if is_bot_author(note.author, mention):
            continue
        if not has_mention_command(note.body, mention, "reply"):
            continue
        if has_marker([n.body for n in notes[i + 1 :]], marker):
            continue
        waiting.append(note)
    return waiting


def hunk_context(changes: list[FileChange], path: str, line: int) -> str:
    """Diff lines within three lines of ``path:line`` for reply prompts."""
    if not path or line <= 0:
        for change in changes:
            if not change.new_path:
                continue
            for hunk in change.hunks:
                if hunk.new_start <= 0:
                    continue
                fallback = hunk_context(changes, change.new_path, hunk.new_start)
                if fallback.startswith("No local hunk slice found"):
                    continue
                return (
                    "Thread has no inline anchor; using representative MR hunk from "
                    f"{change.new_path}:{hunk.new_start}.\n{fallback}"
                )
        return "No inline hunk available for this thread."

    prefixes = {LineType.ADDED: "+", LineType.DELETED: "-"}
    out = []
    for change in changes:
        if change.new_path != path:
            continue
        for hunk in change.hunks:
            for diff_line in hunk.lines:
                if line - 3 <= diff_line.new_line <= line + 3:
                    out.append(f"{prefixes.get(diff_line.type, ' ')} {diff_line.new_line} {diff_line.content}")
    if not out:
        return f"No local hunk slice found for {path}:{line}."
    return "\n".join(out)


def thread_reply_prompt(discussion: Discussion, hunk: str) -> str:
    conversation = "\n".join(f"- {n.author}: {n.body.strip()}" for n in discussion.notes)
    return (
        f"Thread conversation:\n{conversation}\n\n"
        f"Hunk context (use this before answering):\n{hunk}\n\n"
        "Task: Reply to the latest @mention in this thread. "
        "Be concise, technical, and address impact/risk first."
    )


def note_reply_prompt(note: Note, mr: MergeRequest | None) -> str:
    parts = []
    if mr is not None:
        parts.append(f"Merge request: {mr.title.strip()}\n")
        if mr.description.strip():
            parts.append(f"Description:\n{mr.description.strip()}\n")
    parts.append(f"\nComment:\n{note.body.strip()}\n\nTask: Reply to the latest @mention in this comment.")
    return "".join(parts)


def pick_inline_anchor(index_by_file: dict[str, PositionIndex]) -> tuple[str, int, int] | None:
    """First placeable ``(path, new_line, old_line)`` in path order."""
    for path in sorted(index_by_file):
        line = fallback_line(index_by_file, path)
        if line is None or line <= 0:
            continue
        return path, line, index_by_file[path].old_line(line)
    return None
