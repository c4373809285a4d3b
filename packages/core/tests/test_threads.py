"""Tests for discussion reconciliation: dedup, thread reuse, mentions and carry-over."""

from prev_core.aggregate import InlineGroup
from prev_core.comments import CARRY_OVER_MARKER, REPLY_MARKER, REUSE_MARKER, THREAD_MARKER
from prev_core.diff.parser import parse_file_patch
from prev_core.findings import Severity
from prev_core.placement import build_position_index
from prev_core.threads import (
    REUSE_THRESHOLD,
    CarryOverFinding,
    PostTracker,
    carry_over_body,
    carry_over_guidelines,
    collect_carry_over,
    collect_reusable_threads,
    hunk_context,
    is_bot_author,
    is_mr_paused,
    is_prev_thread,
    keyword_overlap,
    match_reusable_thread,
    notes_awaiting_reply,
    paused_discussions,
    pending_carry_over_reminders,
    pick_inline_anchor,
    plan_inline_posts,
    severity_and_message,
    threads_awaiting_reply,
)
from prev_core.vcs.models import Discussion, DiscussionNote, Note

HANDLER = "api/handler.go"
HANDLER_PATCH = (
    "@@ -40,5 +40,7 @@\n"
    " ctx := r.Context()\n"
    " a := 1\n"
    "+user := load(ctx)\n"
    " b := 2\n"
    " c := 3\n"
    "+return wrap(err)\n"
    " d := 4"
)


def _changes():
    return [parse_file_patch(HANDLER_PATCH, HANDLER)]


def _note(body, id="n1", author="alice", path="", line=0, resolvable=False, resolved=False):
    return DiscussionNote(id, author, body, path, line, resolvable, resolved)


def _bot_thread(id="d1", line=40, severity="HIGH", message="Nil check missing on user load", resolved=False, extra=()):
    first = _note(
        f"[{severity}] {message}\n\n{THREAD_MARKER}",
        id=f"{id}-1",
        author="prev",
        path=HANDLER,
        line=line,
        resolvable=True,
        resolved=resolved,
    )
    return Discussion(id, [first, *extra])


def _group(line=42, severity=Severity.HIGH, message="Nil check missing before user load"):
    return InlineGroup(HANDLER, line, 0, severity, message)


# ---------------------------------------------------------------------------
# Bot comment parsing
# ---------------------------------------------------------------------------


class TestSeverityAndMessage:
    def test_inline_tag(self):
        assert severity_and_message(f"[HIGH] Nil check missing\n\n{THREAD_MARKER}") == (Severity.HIGH, "Nil check missing")

    def test_standalone_tag_uses_next_line(self):
        assert severity_and_message(f"{REUSE_MARKER}\n[LOW]\n- Rename it") == (Severity.LOW, "Rename it")

    def test_unknown_tag_or_plain_text(self):
        assert severity_and_message("[NOTE] hello") is None
        assert severity_and_message("just a comment") is None

    def test_bare_tag_gets_placeholder(self):
        assert severity_and_message("[CRITICAL]") == (Severity.CRITICAL, "CRITICAL finding")


class TestThreadOwnership:
    def test_marker_identifies_thread(self):
        assert is_prev_thread(_bot_thread(), "prev")

    def test_author_with_severity_tag(self):
        discussion = Discussion("d", [_note("[LOW] x", author="prev")])
        assert is_prev_thread(discussion, "prev")
        assert not is_prev_thread(Discussion("d", [_note("[LOW] x")]), "prev")

    def test_bot_author(self):
        assert is_bot_author("Prev", "@prev")
        assert not is_bot_author("", "prev")


# ---------------------------------------------------------------------------
# Mention commands
# ---------------------------------------------------------------------------


class TestPause:
    def test_latest_command_wins(self):
        assert not is_mr_paused([Note("1", body="@prev pause"), Note("2", body="@prev resume")], "prev")
        assert is_mr_paused([Note("1", body="@prev resume"), Note("2", body="@PREV pause please")], "prev")

    def test_empty_mention_never_pauses(self):
        assert not is_mr_paused([Note("1", body="@prev pause")], "")

    def test_paused_discussions(self):
        paused = Discussion("p", [_note("@prev pause")])
        active = Discussion("a", [_note("@prev pause", id="x"), _note("@prev resume", id="y")])
        assert paused_discussions([paused, active], "prev") == {"p"}


class TestReplies:
    def test_thread_waits_until_reply_marker(self):
        asked = Discussion("d", [_note("@prev reply why is this unsafe?")])
        answered = Discussion("e", [_note("@prev reply why?"), _note(f"Because.\n{REPLY_MARKER}", id="n2", author="prev")])
        asked_again = Discussion(
            "f",
            [
                _note("@prev reply why?"),
                _note(f"Because.\n{REPLY_MARKER}", id="n2", author="prev"),
                _note("@prev reply and now?", id="n3"),
            ],
        )
        waiting = threads_awaiting_reply([asked, answered, asked_again], "prev")
        assert [d.id for d in waiting] == ["d", "f"]

    def test_paused_threads_skipped(self):
        asked = Discussion("d", [_note("@prev reply why?")])
        assert threads_awaiting_reply([asked], "prev", paused={"d"}) == []

    def test_notes_awaiting_reply(self):
        notes = [
            Note("1", "alice", "@prev reply what does this MR change?"),
            Note("2", "prev", "@prev reply echoed by the bot"),
            Note("3", "bob", "@prev reply and this?"),
            Note("4", "prev", f"Answer\n{REPLY_MARKER}"),
        ]
        assert notes_awaiting_reply(notes, "prev") == []
        assert [n.id for n in notes_awaiting_reply(notes[:3], "prev")] == ["1", "3"]


# ---------------------------------------------------------------------------
# Thread reuse
# ---------------------------------------------------------------------------


class TestReuseMatching:
    def test_keyword_overlap(self):
        assert keyword_overlap("Nil check missing on user load", "nil CHECK missing before user-load") == 5

    def test_matching_thread_reused(self):
        threads = collect_reusable_threads([_bot_thread()], "prev")
        assert match_reusable_thread(threads, _group()).discussion_id == "d1"

    def test_zero_overlap_never_reused(self):
        threads = collect_reusable_threads([_bot_thread(line=42)], "prev")
        assert match_reusable_thread(threads, _group(message="Unbounded retry loop")) is None

    def test_threshold_is_inclusive(self):
        threads = collect_reusable_threads([_bot_thread(line=42, message="Nil check")], "prev")
        # One shared keyword on the same line scores exactly the threshold.
        assert match_reusable_thread(threads, _group(message="check docs")) is not None
        assert REUSE_THRESHOLD == 10
        assert match_reusable_thread(threads, _group(line=43, message="check docs")) is None

    def test_severity_must_match(self):
        threads = collect_reusable_threads([_bot_thread()], "prev")
        assert match_reusable_thread(threads, _group(severity=Severity.MEDIUM)) is None

    def test_resolved_and_paused_threads_not_reusable(self):
        assert collect_reusable_threads([_bot_thread(resolved=True)], "prev") == []
        assert collect_reusable_threads([_bot_thread()], "prev", paused={"d1"}) == []

    def test_user_thread_with_review_command_is_reusable(self):
        user_thread = Discussion(
            "u1",
            [
                _note("@prev review this please", path=HANDLER, line=40),
                _note("[HIGH] Nil check missing on user load", id="n2", author="prev", resolvable=True),
            ],
        )
        threads = collect_reusable_threads([user_thread], "prev")
        assert [(t.discussion_id, t.line) for t in threads] == [("u1", 40)]


class TestPostingPlan:
    def test_plan(self):
        groups = [
            _group(),  # reuses d1
            _group(severity=Severity.MEDIUM, message="Other thing"),  # same line again in this run
            _group(line=44, message="Nil check missing in user load path"),  # d1 already consumed
            _group(line=40, severity=Severity.MEDIUM, message="Other"),  # line already commented
        ]
        bodies = [f"body {i}" for i in range(len(groups))]
        plan = plan_inline_posts(groups, bodies, [_bot_thread()], "prev")

        assert plan.skipped_existing == 1
        assert plan.skipped_duplicate == 1
        assert len(plan.posts) == 2
        reply = plan.replies[0]
        assert reply.reply_to == "d1"
        assert reply.body.startswith(REUSE_MARKER)
        assert reply.body.endswith("body 0")
        assert plan.posts[1].reply_to == ""
        assert plan.posts[1].body == "body 2"

    def test_tracker_counts_only_successful_posts(self):
        tracker = PostTracker([], "prev")
        group = _group()
        assert tracker.skip_reason(group) == ""
        # A failed post is never marked, so the same group can be retried.
        assert tracker.skip_reason(group) == ""
        tracker.mark_posted(group)
        assert tracker.skip_reason(group) == "existing"
        assert tracker.skip_reason(_group(severity=Severity.LOW)) == "duplicate"

    def test_reply_consumes_thread(self):
        tracker = PostTracker([_bot_thread()], "prev")
        assert tracker.reusable_thread(_group()).discussion_id == "d1"
        tracker.mark_posted(_group(), reply_to="d1")
        assert tracker.reusable_thread(_group(line=44)) is None


# ---------------------------------------------------------------------------
# Carry-over
# ---------------------------------------------------------------------------


class TestCarryOver:
    def test_unresolved_finding_on_current_diff(self):
        index = build_position_index(_changes())
        carry = collect_carry_over([_bot_thread(line=42)], index, "prev")
        assert carry == [CarryOverFinding("d1", HANDLER, 42, Severity.HIGH, "Nil check missing on user load")]

    def test_skips_resolved_reminded_and_foreign_threads(self):
        index = build_position_index(_changes())
        reminded = _bot_thread("d2", line=42, extra=(_note(CARRY_OVER_MARKER, id="r", author="prev"),))
        user = Discussion("u", [_note("[HIGH] x", path=HANDLER, line=42, resolvable=True)])
        elsewhere = Discussion("e", [_note(f"[HIGH] x\n{THREAD_MARKER}", path="gone.go", line=3, resolvable=True)])
        discussions = [_bot_thread(resolved=True), reminded, user, elsewhere]
        assert collect_carry_over(discussions, index, "prev") == []

    def test_sorted_by_severity(self):
        index = build_position_index(_changes())
        discussions = [_bot_thread("a", line=42, severity="LOW"), _bot_thread("b", line=45, severity="CRITICAL")]
        assert [c.discussion_id for c in collect_carry_over(discussions, index, "prev")] == ["b", "a"]

    def test_guidelines(self):
        carry = [CarryOverFinding("d1", HANDLER, 42, Severity.HIGH, "Nil check")]
        block = carry_over_guidelines("", carry)
        assert block.startswith("Address unresolved carry-over findings first")
        assert "- api/handler.go:42 [HIGH] Nil check" in block
        assert carry_over_guidelines("Be strict.", carry).startswith("Be strict.\n")
        assert carry_over_guidelines("Be strict.", []) == "Be strict."

    def test_one_reminder_per_discussion(self):
        carry = [
            CarryOverFinding("d1", HANDLER, 42, Severity.HIGH, "a"),
            CarryOverFinding("d1", HANDLER, 45, Severity.LOW, "b"),
            CarryOverFinding("d2", HANDLER, 45, Severity.LOW, "c"),
        ]
        pending = pending_carry_over_reminders([], carry, paused={"d2"})
        assert [c.message for c in pending] == ["a"]
        assert carry_over_body(pending[0]).startswith(CARRY_OVER_MARKER)


# ---------------------------------------------------------------------------
# Reply context
# ---------------------------------------------------------------------------


def test_hunk_context_window():
    text = hunk_context(_changes(), HANDLER, 42)
    assert "+ 42 user := load(ctx)" in text
    assert "  40 ctx := r.Context()" in text
    assert "46" not in text


def test_hunk_context_without_anchor_uses_first_hunk():
    text = hunk_context(_changes(), "", 0)
    assert text.startswith(f"Thread has no inline anchor; using representative MR hunk from {HANDLER}:40.")


def test_pick_inline_anchor():
    assert pick_inline_anchor(build_position_index(_changes())) == (HANDLER, 42, 0)
    assert pick_inline_anchor({}) is None
