"""Core merge request review orchestration."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape

from prev_core.aggregate import (
    InlineGroup,
    PlacementResult,
    aggregate_by_change,
    drop_low_signal_findings,
    drop_meta_findings,
    focus_doc_findings,
    normalize_nitpick,
    place_findings,
    prioritize_groups,
    select_inline_candidates,
)
from prev_core.baseline import (
    ReviewBaseline,
    baseline_marker,
    build_file_signatures,
    filter_by_baseline,
    latest_baseline,
)
from prev_core.comments import REPLY_MARKER, SUMMARY_MARKER, render_inline_comment
from prev_core.config import load_guidelines
from prev_core.diff.models import FileChange, has_modified_lines
from prev_core.diff.parser import format_for_review
from prev_core.diff_source import LocalDiff, fetch_mr_changes, mr_diff_sources
from prev_core.findings import Finding, parse_review
from prev_core.placement import PositionIndex, build_position_index
from prev_core.prompts import (
    NO_FINDINGS,
    NOTE_REPLY_SYSTEM_PROMPT,
    THREAD_REPLY_SYSTEM_PROMPT,
    build_local_review_prompt,
    build_mr_review_prompt,
    merge_guidelines,
    recovery_messages,
    reply_messages,
    review_messages,
)
from prev_core.providers.base import BaseProvider, ProviderError
from prev_core.threads import (
    DEFAULT_MENTION,
    PostTracker,
    any_thread_has_command,
    carry_over_body,
    carry_over_guidelines,
    collect_carry_over,
    discussion_anchor,
    has_marker,
    hunk_context,
    is_mr_paused,
    note_reply_prompt,
    notes_awaiting_reply,
    paused_discussions,
    pending_carry_over_reminders,
    pick_inline_anchor,
    severity_and_message,
    thread_reply_prompt,
    threads_awaiting_reply,
)
from prev_core.utils.code import is_binary_path
from prev_core.vcs.base import BaseVCS, VCSError
from prev_core.vcs.models import Discussion, InlineComment, MergeRequest, Note
from prev_store.base import BaseMemoryStore
from prev_store.memory import (
    DEFAULT_MAX_ENTRIES,
    ObservedNote,
    reconcile_discussions,
    record_findings,
    render_guidelines,
    trim,
)
from prev_store.models import ReviewMemory
from prev_store.noop import NoOpMemoryStore

console = Console()
logger = logging.getLogger(__name__)

DEFAULT_MEMORY_MAX = 12

UNPLACED_HEADER = (
    "## Unplaced Inline Findings\n\n"
    "These findings could not be placed on a line of the current diff. They are kept here for visibility:\n\n"
)

_SEVERITY_COLOR = {"CRITICAL": "red", "HIGH": "yellow", "MEDIUM": "blue", "LOW": "dim"}


class NoReviewableHunks(Exception):
    """The diff has no added or deleted lines to anchor a review on."""


@dataclass
class ReviewSummary:
    """Outcome of run_mr_review, for the CLI to report.

    ``status`` is "reviewed", "paused", "unchanged" (incremental run with no
    new file-level deltas) or "dry-run".
    """

    project: str
    mr_number: int
    head_sha: str = ""
    status: str = "reviewed"
    diff_source: str = ""
    reviewed_files: list[str] = field(default_factory=list)
    findings: int = 0
    strategy: str = ""
    posted: int = 0
    reused: int = 0
    skipped_existing: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    unplaced: list[str] = field(default_factory=list)
    replies: int = 0
    carry_over: int = 0
    summary_posted: bool = False
    memory_updated: bool = False
    prompt: str = ""
    content: str = ""
    reviewed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass
class LocalReview:
    content: str
    findings: list[Finding]
    placement: PlacementResult


def _is_excluded(filename: str, patterns: list[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*.lock", "*.min.js"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        # Basename match: "*.lock" matches "path/to/yarn.lock"
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        # Directory prefix: "migrations" or "migrations/" matches "app/migrations/0001.py"
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False


def select_changes(changes: list[FileChange], exclude: list[str]) -> list[FileChange]:
    """Drop binary and excluded files."""
    kept = []
    for change in changes:
        if not change.path or change.is_binary or is_binary_path(change.path):
            continue
        if _is_excluded(change.path, exclude or []):
            logger.debug("Skipping excluded file %s", change.path)
            continue
        kept.append(change)
    return kept


def _fetch_or_warn(fetch: Callable[[], list], what: str) -> list:
    try:
        return fetch()
    except VCSError as e:
        logger.warning("Failed to fetch MR %s: %s", what, e)
        return []


def observed_notes(discussions: list[Discussion]) -> list[ObservedNote]:
    """Inline notes that carry a ``[SEVERITY]`` prefix, as memory observations."""
    observed = []
    for discussion in discussions:
        for note in discussion.notes:
            if not note.file_path or note.line <= 0:
                continue
            parsed = severity_and_message(note.body)
            if parsed is None:
                continue
            observed.append(
                ObservedNote(
                    file_path=note.file_path,
                    line=note.line,
                    severity=parsed[0].value,
                    message=parsed[1],
                    resolvable=note.resolvable,
                    resolved=note.resolved,
                )
            )
    return observed


def render_groups(
    groups: list[InlineGroup],
    index_by_file: dict[str, PositionIndex],
    format_suggestion: Callable[[str], str] | None,
    fix_prompt: str = "off",
) -> list[str]:
    bodies = []
    for group in groups:
        index = index_by_file.get(group.file_path)
        anchor = index.content.get(group.new_line, "") if index is not None else ""
        bodies.append(render_inline_comment(group, anchor, format_suggestion, fix_prompt))
    return bodies


def build_inline_groups(
    findings: list[Finding],
    index_by_file: dict[str, PositionIndex],
    config: dict,
) -> PlacementResult:
    """Filters, the by-change pre-pass, placement and prioritization, in that order."""
    strictness = config.get("strictness") or "normal"
    candidates, used_fallback = select_inline_candidates(
        findings,
        index_by_file,
        strictness=strictness,
        nitpick=normalize_nitpick(int(config.get("nitpick") or 0), strictness),
        kinds=config.get("conventions"),
        mode=config.get("filter_mode") or "",
    )
    if used_fallback:
        console.print("[dim]Inline filter fallback: using findings scoped to changed files.[/dim]")
    focused = focus_doc_findings(candidates)
    if not focused and candidates:
        console.print("[dim]Inline filter fallback: typo-only doc filter removed all findings; using broader findings.[/dim]")
        focused = candidates
    merged = aggregate_by_change(focused)
    placement = place_findings(merged, index_by_file)
    logger.info(
        "Inline findings pipeline: parsed=%d filtered=%d grouped=%d strategy=%s",
        len(findings),
        len(candidates),
        len(placement.groups),
        placement.strategy,
    )
    limit = max(int(config.get("max_comments") or 0), 0)
    prioritized = prioritize_groups(placement.groups, limit)
    if len(prioritized) < len(placement.groups):
        console.print(
            f"Limiting inline comments to top {len(prioritized)} by severity (from {len(placement.groups)} findings)."
        )
    placement.groups = prioritized
    return placement


def recover_findings(provider: BaseProvider, prompt: str, content: str) -> list[Finding]:
    """Ask the model to restate a finding-less review as bare finding lines.

    Provider failures are logged and yield no findings.
    """
    try:
        recovered = provider.complete(recovery_messages(prompt, content)).strip()
    except ProviderError as e:
        logger.warning("Inline findings recovery failed: %s", e)
        return []
    if not recovered or recovered.upper() == NO_FINDINGS:
        return []
    findings = parse_review(recovered, structured=False).findings
    if findings:
        console.print(f"Inline findings recovery: extracted {len(findings)} findings.")
    return findings


# ---------------------------------------------------------------------------
# @mention replies
# ---------------------------------------------------------------------------


def process_thread_replies(
    vcs: BaseVCS,
    provider: BaseProvider,
    project: str,
    mr_id: int,
    discussions: list[Discussion],
    changes: list[FileChange],
    mention: str,
    paused: set[str],
) -> int:
    posted = 0
    for discussion in threads_awaiting_reply(discussions, mention, paused, REPLY_MARKER):
        path, line = discussion_anchor(discussion)
        prompt = thread_reply_prompt(discussion, hunk_context(changes, path, line))
        try:
            reply = provider.complete(reply_messages(THREAD_REPLY_SYSTEM_PROMPT, prompt)).strip()
        except ProviderError as e:
            logger.warning("Failed to generate reply for discussion %s: %s", discussion.id, e)
            continue
        if not reply:
            continue
        try:
            vcs.reply_to_discussion(project, mr_id, discussion.id, reply + "\n\n" + REPLY_MARKER)
        except VCSError as e:
            logger.warning("Failed to post reply in discussion %s: %s", discussion.id, e)
            continue
        posted += 1
    return posted


def process_note_replies(
    vcs: BaseVCS,
    provider: BaseProvider,
    project: str,
    mr_id: int,
    notes: list[Note],
    mr: MergeRequest,
    index_by_file: dict[str, PositionIndex],
    mention: str,
) -> int:
    """Answer top-level ``@prev reply`` notes with an inline comment on the first placeable line."""
    waiting = notes_awaiting_reply(notes, mention, REPLY_MARKER)
    if not waiting:
        return 0
    anchor = pick_inline_anchor(index_by_file)
    posted = 0
    for note in waiting:
        if anchor is None:
            logger.warning("No inline anchor available to reply to top-level note %s", note.id)
            continue
        try:
            reply = provider.complete(reply_messages(NOTE_REPLY_SYSTEM_PROMPT, note_reply_prompt(note, mr))).strip()
        except ProviderError as e:
            logger.warning("Failed to generate reply for note %s: %s", note.id, e)
            continue
        if not reply:
            continue
        if not mr.diff_refs.head_sha or not mr.diff_refs.base_sha:
            logger.warning("Missing diff refs; cannot post inline reply for note %s", note.id)
            continue
        path, new_line, old_line = anchor
        comment = InlineComment(
            file_path=path,
            new_line=new_line,
            body=reply + "\n\n" + REPLY_MARKER,
            old_path=index_by_file[path].old_path,
            old_line=old_line,
        )
        try:
            vcs.post_inline_comment(project, mr_id, mr.diff_refs, comment)
        except VCSError as e:
            logger.warning("Failed to post inline reply: %s", e)
            continue
        posted += 1
    return posted


# ---------------------------------------------------------------------------
# Posting
# ---------------------------------------------------------------------------


def post_inline_groups(
    vcs: BaseVCS,
    project: str,
    mr: MergeRequest,
    groups: list[InlineGroup],
    bodies: list[str],
    index_by_file: dict[str, PositionIndex],
    discussions: list[Discussion],
    mention: str,
    paused: set[str],
    summary: ReviewSummary,
) -> None:
    """Post each group once: reply in a matching open thread, else open a new one.

    Keys only count as posted after the platform accepted the comment, so a
    failed post neither blocks a later duplicate nor consumes a thread.
    """
    tracker = PostTracker(discussions, mention, paused)
    for group, body in zip(groups, bodies):
        reason = tracker.skip_reason(group)
        if reason == "existing":
            summary.skipped_existing += 1
            continue
        if reason == "duplicate":
            summary.skipped_duplicate += 1
            continue
        planned = tracker.plan(group, body)
        if planned.reply_to:
            try:
                vcs.reply_to_discussion(project, mr.number, planned.reply_to, planned.body)
            except VCSError as e:
                logger.warning("Failed to reuse discussion %s, opening a new thread: %s", planned.reply_to, e)
            else:
                tracker.mark_posted(group, planned.reply_to)
                summary.posted += 1
                summary.reused += 1
                continue
        index = index_by_file.get(group.file_path)
        comment = InlineComment(
            file_path=group.file_path,
            new_line=group.new_line,
            body=body,
            old_path=index.old_path if index is not None else "",
            old_line=group.old_line,
        )
        try:
            vcs.post_inline_comment(project, mr.number, mr.diff_refs, comment)
        except VCSError as e:
            logger.warning("Failed to post inline comment on %s:%d: %s", group.file_path, group.new_line, e)
            summary.failed += 1
            continue
        tracker.mark_posted(group)
        summary.posted += 1


def _report_posting(summary: ReviewSummary, groups: list[InlineGroup], findings: int) -> None:
    if summary.posted:
        console.print(f"[green]Posted {summary.posted} inline comment(s).[/green]")
        if summary.reused:
            console.print(f"Reused {summary.reused} existing discussion(s) for continuity.")
    elif summary.skipped_existing or summary.skipped_duplicate:
        console.print(
            f"No new inline comments to post (existing threads already cover {summary.skipped_existing} finding(s))."
        )
    elif not groups:
        if findings and len(summary.unplaced) >= findings:
            console.print("No inline comments posted (all findings were unplaced for current MR diff).")
        else:
            console.print("No inline findings generated by AI output.")
    else:
        console.print("[yellow]No inline comments were posted.[/yellow]")


def _update_memory(
    store: BaseMemoryStore,
    memory: ReviewMemory,
    discussions: list[Discussion],
    findings: list[Finding],
    mr_ref: str,
    config: dict,
) -> bool:
    now = datetime.now(timezone.utc)
    changed = reconcile_discussions(memory, observed_notes(discussions), mr_ref, now)
    changed = record_findings(memory, findings, mr_ref, now) or changed
    if not changed:
        return False
    trim(memory, int(config.get("memory_max_entries") or DEFAULT_MAX_ENTRIES))
    try:
        store.save(memory)
    except OSError as e:
        logger.warning("Failed to persist review memory: %s", e)
        return False
    open_count, fixed_count = memory.counts()
    logger.info("Review memory updated: %s (open=%d fixed=%d)", store.location, open_count, fixed_count)
    return True


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def run_mr_review(
    vcs: BaseVCS,
    provider: BaseProvider,
    project: str,
    mr_id: int,
    config: dict,
    memory: BaseMemoryStore | None = None,
    dry_run: bool = False,
    local_diff: LocalDiff | None = None,
) -> ReviewSummary:
    """Review a merge request end to end and post the results.

    ``local_diff`` reads ``base...head`` from a local checkout; it enables the
    ``git`` diff source.

    Raises NoReviewableHunks when the diff has nothing to anchor on, and lets
    ProviderError from the main review call propagate. Individual posting
    failures are logged and skipped.
    """
    store = memory if memory is not None else NoOpMemoryStore()
    mention = (config.get("mention") or DEFAULT_MENTION).strip().removeprefix("@")
    inline_only = bool(config.get("inline_only"))
    summary_only = bool(config.get("summary_only"))
    structured = bool(config.get("structured_output"))
    strictness = config.get("strictness") or "normal"
    nitpick = normalize_nitpick(int(config.get("nitpick") or 0), strictness)
    incremental = bool(config.get("incremental"))
    if inline_only and incremental:
        console.print("[dim]Incremental mode disabled in inline-only mode (baseline markers require MR notes).[/dim]")
        incremental = False

    mr = vcs.fetch_mr(project, mr_id)
    source, changes = fetch_mr_changes(
        mr_diff_sources(vcs, project, mr_id, mr, config.get("diff_source"), local_diff)
    )
    changes = select_changes(changes, config.get("exclude") or [])
    summary = ReviewSummary(project=project, mr_number=mr_id, head_sha=mr.diff_refs.head_sha, diff_source=source)

    discussions = _fetch_or_warn(lambda: vcs.list_discussions(project, mr_id), "discussions")
    notes = _fetch_or_warn(lambda: vcs.list_notes(project, mr_id), "notes")
    if is_mr_paused(notes, mention):
        console.print(
            f"[yellow]Review paused for MR !{mr_id} via @{mention} pause. "
            f"Add @{mention} resume in MR comments to continue.[/yellow]"
        )
        summary.status = "paused"
        return summary

    signatures = build_file_signatures(changes)
    if incremental:
        baseline = latest_baseline(notes)
        if baseline is not None and baseline.file_sigs:
            filtered = filter_by_baseline(changes, baseline.file_sigs)
            if not filtered:
                console.print(f"Incremental review: no file-level deltas since baseline head {baseline.head_sha}.")
                summary.status = "unchanged"
                return summary
            if len(filtered) < len(changes):
                console.print(
                    f"Incremental review: narrowed scope from {len(changes)} to {len(filtered)} "
                    f"changed files since baseline head {baseline.head_sha}."
                )
            changes = filtered
            signatures = build_file_signatures(changes)

    if not has_modified_lines(changes):
        raise NoReviewableHunks(
            f"MR !{mr_id}: no added/deleted hunk lines were extracted from the diff "
            f"(diff source: {source}); nothing to review."
        )
    summary.reviewed_files = [c.path for c in changes]

    index_by_file = build_position_index(changes)
    paused = paused_discussions(discussions, mention)

    carry = collect_carry_over(discussions, index_by_file, mention, paused)
    guidelines = carry_over_guidelines(load_guidelines(config), carry)
    remembered: ReviewMemory | None = None
    try:
        remembered = store.load()
    except OSError as e:
        logger.warning("Failed to load review memory: %s", e)
    else:
        memory_block = render_guidelines(
            remembered, summary.reviewed_files, int(config.get("memory_max") or DEFAULT_MEMORY_MAX)
        )
        guidelines = merge_guidelines(guidelines, memory_block)

    prompt = build_mr_review_prompt(
        mr,
        format_for_review(changes),
        strictness=strictness,
        nitpick=nitpick,
        conventions=config.get("conventions"),
        guidelines=guidelines,
        structured=structured,
    )
    summary.prompt = prompt

    console.print(
        f"\n[bold]Reviewing MR !{mr.number}: {escape(mr.title)}[/bold] ({mr.source_branch} -> {mr.target_branch})"
    )
    console.print(f"Files changed: {len(changes)}")

    if dry_run:
        console.print(prompt, markup=False)
        summary.status = "dry-run"
        return summary

    if not inline_only:
        summary.replies = process_thread_replies(vcs, provider, project, mr_id, discussions, changes, mention, paused)
        summary.replies += process_note_replies(vcs, provider, project, mr_id, notes, mr, index_by_file, mention)
        if summary.replies:
            console.print(f"Posted {summary.replies} repl(ies) to @{mention} requests.")

    content = provider.complete(review_messages(prompt))
    summary.content = content
    console.print(Markdown(content))

    findings = parse_review(content, structured).findings
    if not findings:
        findings = recover_findings(provider, prompt, content)
    findings = drop_low_signal_findings(drop_meta_findings(findings), index_by_file)
    summary.findings = len(findings)

    if remembered is not None:
        summary.memory_updated = _update_memory(
            store, remembered, discussions, findings, f"{project}!{mr_id}", config
        )

    if not inline_only and any_thread_has_command(discussions, mention, "summary"):
        if has_marker([n.body for n in notes], SUMMARY_MARKER):
            console.print("Summary already posted; skipping duplicate summary note.")
        else:
            try:
                vcs.post_summary_note(project, mr_id, f"{SUMMARY_MARKER}\n## AI Code Review\n\n{content}")
            except VCSError as e:
                logger.warning("Failed to post summary note: %s", e)
            else:
                summary.summary_posted = True
                console.print("Posted summary comment to MR.")

    if not summary_only and mr.diff_refs.base_sha:
        if not inline_only:
            for item in pending_carry_over_reminders(discussions, carry, paused):
                try:
                    vcs.reply_to_discussion(project, mr_id, item.discussion_id, carry_over_body(item))
                except VCSError as e:
                    logger.warning("Failed to post carry-over reminder in discussion %s: %s", item.discussion_id, e)
                    continue
                summary.carry_over += 1
            if summary.carry_over:
                console.print(f"Posted {summary.carry_over} carry-over reminder(s).")

        placement = build_inline_groups(findings, index_by_file, config)
        summary.strategy = placement.strategy
        summary.unplaced = sorted(placement.unplaced)
        bodies = render_groups(placement.groups, index_by_file, vcs.format_suggestion_block, config.get("fix_prompt"))
        post_inline_groups(
            vcs, project, mr, placement.groups, bodies, index_by_file, discussions, mention, paused, summary
        )
        _report_posting(summary, placement.groups, len(findings))

        if summary.unplaced and not inline_only:
            try:
                vcs.post_summary_note(project, mr_id, UNPLACED_HEADER + "\n".join(summary.unplaced))
            except VCSError as e:
                logger.warning("Failed to post unplaced findings note: %s", e)

    if incremental:
        marker = baseline_marker(ReviewBaseline(head_sha=mr.diff_refs.head_sha, file_sigs=signatures))
        try:
            vcs.post_summary_note(project, mr_id, marker)
        except VCSError as e:
            logger.warning("Failed to post incremental baseline marker: %s", e)

    return summary


def run_local_review(
    changes: list[FileChange],
    provider: BaseProvider,
    config: dict,
    source: str = "working tree",
    memory: BaseMemoryStore | None = None,
) -> LocalReview:
    """Review a local diff with the same placement engine; nothing is posted."""
    changes = select_changes(changes, config.get("exclude") or [])
    if not has_modified_lines(changes):
        raise NoReviewableHunks(f"{source}: no added/deleted hunk lines to review.")
    strictness = config.get("strictness") or "normal"
    structured = bool(config.get("structured_output"))

    guidelines = load_guidelines(config)
    if memory is not None:
        try:
            remembered = memory.load()
        except OSError as e:
            logger.warning("Failed to load review memory: %s", e)
        else:
            guidelines = merge_guidelines(
                guidelines,
                render_guidelines(
                    remembered, [c.path for c in changes], int(config.get("memory_max") or DEFAULT_MEMORY_MAX)
                ),
            )

    prompt = build_local_review_prompt(
        format_for_review(changes),
        source,
        strictness=strictness,
        nitpick=normalize_nitpick(int(config.get("nitpick") or 0), strictness),
        conventions=config.get("conventions"),
        guidelines=guidelines,
        structured=structured,
    )
    content = provider.complete(review_messages(prompt))
    index_by_file = build_position_index(changes)
    findings = drop_meta_findings(parse_review(content, structured).findings)
    findings = drop_low_signal_findings(findings, index_by_file)
    placement = build_inline_groups(findings, index_by_file, config)
    return LocalReview(content=content, findings=findings, placement=placement)


def print_groups(groups: list[InlineGroup], unplaced: list[str] | None = None) -> None:
    """Print placed findings to the terminal."""
    if not groups and not unplaced:
        console.print("[green]No inline findings.[/green]")
        return
    console.print(f"\n[bold]{len(groups)} inline finding(s)[/bold]\n")
    for g in groups:
        color = _SEVERITY_COLOR.get(g.severity.value, "white")
        console.print(
            f"[bold cyan]{g.file_path}[/bold cyan]  line [bold]{g.new_line}[/bold]  "
            f"[{color}]{g.severity.value}[/{color}]"
        )
        console.print(f"  {g.message}", markup=False)
        if g.suggestion:
            console.print(f"  {g.suggestion}", style="dim", markup=False)
        console.print()
    if unplaced:
        console.print("[bold]Unplaced findings[/bold]")
        for line in sorted(unplaced):
            console.print(line, markup=False)
