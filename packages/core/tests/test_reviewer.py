"""Tests for the merge request and local review orchestration.

A recording FakeVCS and a scripted provider stand in for the network, so each
test drives run_mr_review end to end and inspects what would have been posted.
"""

import pytest

from prev_core.baseline import BASELINE_PREFIX
from prev_core.comments import REPLY_MARKER, REUSE_MARKER, SUMMARY_MARKER, THREAD_MARKER
from prev_core.config import DEFAULT_CONFIG
from prev_core.diff.parser import parse_file_patch
from prev_core.providers.base import BaseProvider, ErrorCode, ProviderError
from prev_core.prompts import NO_FINDINGS
from prev_core.reviewer import (
    UNPLACED_HEADER,
    NoReviewableHunks,
    _is_excluded,
    observed_notes,
    run_local_review,
    run_mr_review,
    select_changes,
)
from prev_core.vcs.base import BaseVCS, VCSError
from prev_core.vcs.models import DiffRefs, Discussion, DiscussionNote, MergeRequest, Note
from prev_store.base import BaseMemoryStore
from prev_store.markdown import MarkdownMemoryStore
from prev_store.models import ReviewMemory

APP_PATCH = "@@ -1,2 +1,3 @@\n import os\n+token = os.environ['TOKEN']\n print(token)\n"
REVIEW = (
    "**Summary**: Reads the token from the environment.\n\n"
    "**File: app.py** (line 2) [ISSUE] [HIGH]: Missing default for TOKEN lookup raises KeyError\n"
)
EMPTY_REVIEW = "**Summary**: Nothing to flag."


class FakeVCS(BaseVCS):
    NAME = "fake"

    def __init__(self, changes=None, discussions=None, notes=None, fail_inline=False):
        self.mr = MergeRequest(
            number=7,
            title="Read token",
            description="Config from env",
            source_branch="feature/token",
            target_branch="main",
            diff_refs=DiffRefs(base_sha="b" * 40, head_sha="h" * 40, start_sha="b" * 40),
        )
        self.changes = changes if changes is not None else [parse_file_patch(APP_PATCH, new_path="app.py", old_path="app.py")]
        self.discussions = discussions or []
        self.notes = notes or []
        self.fail_inline = fail_inline
        self.inline = []
        self.summary_notes = []
        self.replies = []

    def fetch_mr(self, project, number):
        return self.mr

    def fetch_changes(self, project, number):
        return self.changes

    def list_discussions(self, project, number):
        return self.discussions

    def list_notes(self, project, number):
        return self.notes

    def list_open_mrs(self, project):
        return [self.mr]

    def post_summary_note(self, project, number, body):
        self.summary_notes.append(body)

    def post_inline_comment(self, project, number, refs, comment):
        if self.fail_inline:
            raise VCSError("position rejected")
        self.inline.append(comment)

    def reply_to_discussion(self, project, number, discussion_id, body):
        self.replies.append((discussion_id, body))

    def format_suggestion_block(self, suggestion):
        return "```suggestion\n" + suggestion + "\n```"


class ScriptedProvider(BaseProvider):
    NAME = "scripted"

    def __init__(self, *responses):
        super().__init__()
        self.responses = list(responses)
        self.prompts = []

    def _call_api(self, messages):
        self.prompts.append(messages[-1]["content"])
        response = self.responses.pop(0) if self.responses else NO_FINDINGS
        if isinstance(response, Exception):
            raise response
        return response


def _config(**overrides):
    config = {**DEFAULT_CONFIG, "exclude": [], "conventions": list(DEFAULT_CONFIG["conventions"])}
    config.update(overrides)
    return config


# ---------------------------------------------------------------------------
# Change selection
# ---------------------------------------------------------------------------


class TestSelectChanges:
    @pytest.mark.parametrize(
        "path,patterns,expected",
        [
            ("app/migrations/0001.py", ["migrations/"], True),
            ("migrations/0001.py", ["migrations"], True),
            ("yarn.lock", ["*.lock"], True),
            ("web/static/app.min.js", ["*.min.js"], True),
            ("src/generated/api.py", ["src/generated/*.py"], True),
            ("src/app.py", ["migrations/", "*.lock"], False),
        ],
    )
    def test_exclude_patterns(self, path, patterns, expected):
        assert _is_excluded(path, patterns) is expected

    def test_drops_binary_and_excluded(self):
        changes = [
            parse_file_patch(APP_PATCH, new_path="app.py", old_path="app.py"),
            parse_file_patch("", new_path="logo.png", old_path="logo.png"),
            parse_file_patch(APP_PATCH, new_path="vendor/lib.py", old_path="vendor/lib.py"),
        ]
        kept = select_changes(changes, ["vendor/"])
        assert [c.path for c in kept] == ["app.py"]


# ---------------------------------------------------------------------------
# run_mr_review
# ---------------------------------------------------------------------------


class TestRunMRReview:
    def test_posts_inline_comment_for_finding(self):
        vcs = FakeVCS()
        provider = ScriptedProvider(REVIEW)

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.status == "reviewed"
        assert summary.findings == 1
        assert summary.posted == 1
        assert summary.reviewed_files == ["app.py"]
        comment = vcs.inline[0]
        assert comment.file_path == "app.py"
        assert comment.new_line == 2
        assert comment.body.startswith("[HIGH] ")
        assert comment.body.endswith(THREAD_MARKER)
        assert "app.py" in provider.prompts[0]
        # No summary note without an explicit @prev summary request.
        assert vcs.summary_notes == []

    def test_paused_mr_is_skipped(self):
        vcs = FakeVCS(notes=[Note(id="1", author="dev", body="@prev pause please")])
        provider = ScriptedProvider()

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.status == "paused"
        assert provider.prompts == []
        assert vcs.inline == []

    def test_resume_after_pause_reviews_again(self):
        notes = [Note(id="1", author="dev", body="@prev pause"), Note(id="2", author="dev", body="@prev resume")]
        vcs = FakeVCS(notes=notes)

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.status == "reviewed"

    def test_no_modified_lines_raises(self):
        context_only = parse_file_patch("@@ -1,1 +1,1 @@\n import os\n", new_path="app.py", old_path="app.py")
        vcs = FakeVCS(changes=[context_only])

        with pytest.raises(NoReviewableHunks):
            run_mr_review(vcs, ScriptedProvider(), "acme/app", 7, _config())

    def test_dry_run_builds_prompt_without_calling_provider(self):
        vcs = FakeVCS()

        summary = run_mr_review(vcs, None, "acme/app", 7, _config(), dry_run=True)

        assert summary.status == "dry-run"
        assert "token = os.environ['TOKEN']" in summary.prompt
        assert vcs.inline == []
        assert vcs.summary_notes == []

    def test_provider_error_propagates(self):
        class _Failing(BaseProvider):
            def _call_api(self, messages):
                raise ProviderError(ErrorCode.AUTH, "bad key")

        with pytest.raises(ProviderError):
            run_mr_review(FakeVCS(), _Failing(), "acme/app", 7, _config())

    def test_existing_thread_on_same_line_is_not_reposted(self):
        existing = Discussion(
            id="d1",
            notes=[
                DiscussionNote(
                    id="n1",
                    author="prev",
                    body=f"[HIGH] Missing default for TOKEN lookup\n\n{THREAD_MARKER}",
                    file_path="app.py",
                    line=2,
                    resolvable=True,
                )
            ],
        )
        vcs = FakeVCS(discussions=[existing])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.skipped_existing == 1
        assert summary.posted == 0
        assert vcs.inline == []

    def test_failed_post_is_counted(self):
        vcs = FakeVCS(fail_inline=True)

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.failed == 1
        assert summary.posted == 0

    def test_summary_only_posts_no_inline_comments(self):
        vcs = FakeVCS()

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(summary_only=True))

        assert summary.findings == 1
        assert vcs.inline == []

    def test_summary_posted_on_command_once(self):
        request = Discussion(id="d9", notes=[DiscussionNote(id="n9", author="dev", body="@prev summary")])
        vcs = FakeVCS(discussions=[request])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.summary_posted is True
        assert vcs.summary_notes[0].startswith(SUMMARY_MARKER)
        assert "## AI Code Review" in vcs.summary_notes[0]

    def test_summary_not_duplicated(self):
        request = Discussion(id="d9", notes=[DiscussionNote(id="n9", author="dev", body="@prev summary")])
        previous = Note(id="s1", author="prev", body=f"{SUMMARY_MARKER}\n## AI Code Review\n\nold")
        vcs = FakeVCS(discussions=[request], notes=[previous])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.summary_posted is False
        assert vcs.summary_notes == []

    def test_thread_reply_request_is_answered(self):
        thread = Discussion(
            id="d3",
            notes=[
                DiscussionNote(id="n1", author="prev", body="[HIGH] Leak", file_path="app.py", line=2),
                DiscussionNote(id="n2", author="dev", body="@prev reply is this really a leak?"),
            ],
        )
        vcs = FakeVCS(discussions=[thread])
        provider = ScriptedProvider("Yes: the handle is never closed.", EMPTY_REVIEW)

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.replies == 1
        discussion_id, body = vcs.replies[0]
        assert discussion_id == "d3"
        assert body.startswith("Yes: the handle is never closed.")
        assert body.endswith(REPLY_MARKER)
        assert "+ 2 token = os.environ['TOKEN']" in provider.prompts[0]

    def test_answered_reply_request_is_ignored(self):
        thread = Discussion(
            id="d3",
            notes=[
                DiscussionNote(id="n1", author="dev", body="@prev reply why?", file_path="app.py", line=2),
                DiscussionNote(id="n2", author="prev", body=f"Because.\n\n{REPLY_MARKER}"),
            ],
        )
        vcs = FakeVCS(discussions=[thread])

        summary = run_mr_review(vcs, ScriptedProvider(EMPTY_REVIEW), "acme/app", 7, _config())

        assert summary.replies == 0
        assert vcs.replies == []

    def test_inline_only_skips_replies(self):
        thread = Discussion(
            id="d3",
            notes=[DiscussionNote(id="n1", author="dev", body="@prev reply why?")],
        )
        vcs = FakeVCS(discussions=[thread])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(inline_only=True))

        assert summary.replies == 0
        assert summary.posted == 1

    def test_unplaced_findings_posted_as_note(self):
        review = REVIEW + "**File: ghost.py** (line 9) [ISSUE] [HIGH]: Leaks the file handle\n"
        vcs = FakeVCS()

        summary = run_mr_review(vcs, ScriptedProvider(review), "acme/app", 7, _config(filter_mode="nofilter"))

        assert summary.unplaced == ["- ghost.py:9 [ISSUE/HIGH] Leaks the file handle"]
        assert vcs.summary_notes == [UNPLACED_HEADER + "- ghost.py:9 [ISSUE/HIGH] Leaks the file handle"]
        assert "GitLab" not in UNPLACED_HEADER

    def test_generic_finding_is_dropped(self):
        review = "**File: app.py** (line 2) [ISSUE] [HIGH]: This may affect global request handling.\n"

        summary = run_mr_review(FakeVCS(), ScriptedProvider(review), "acme/app", 7, _config())

        assert summary.findings == 0


class TestDiffSource:
    def test_falls_back_to_file_api(self):
        summary = run_mr_review(FakeVCS(), ScriptedProvider(REVIEW), "acme/app", 7, _config())

        assert summary.diff_source == "api"

    def test_local_checkout_diff_is_preferred(self):
        seen = []

        def local_diff(base, head):
            seen.append((base, head))
            return "diff --git a/app.py b/app.py\n--- a/app.py\n+++ b/app.py\n" + APP_PATCH

        vcs = FakeVCS(changes=[])
        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(), local_diff=local_diff)

        assert summary.diff_source == "git"
        assert seen == [("b" * 40, "h" * 40)]
        assert summary.posted == 1

    def test_empty_diff_names_the_source(self):
        with pytest.raises(NoReviewableHunks, match="diff source: api"):
            run_mr_review(FakeVCS(changes=[]), ScriptedProvider(), "acme/app", 7, _config(diff_source="api"))


class TestFindingsRecovery:
    def test_findingless_review_is_asked_again(self):
        provider = ScriptedProvider(
            "**Summary**: The token lookup can fail when TOKEN is unset.",
            "**File: app.py** (line 2) [ISSUE] [HIGH]: Missing default for TOKEN lookup raises KeyError",
        )
        vcs = FakeVCS()

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.findings == 1
        assert summary.posted == 1
        assert len(provider.prompts) == 2
        assert "Prior full review output:\n**Summary**: The token lookup" in provider.prompts[1]

    def test_no_findings_answer_posts_nothing(self):
        provider = ScriptedProvider(EMPTY_REVIEW, NO_FINDINGS)
        vcs = FakeVCS()

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.findings == 0
        assert vcs.inline == []

    def test_recovery_failure_is_not_fatal(self):
        provider = ScriptedProvider(EMPTY_REVIEW, ProviderError(ErrorCode.AUTH, "bad key"))

        summary = run_mr_review(FakeVCS(), provider, "acme/app", 7, _config())

        assert summary.status == "reviewed"
        assert summary.findings == 0

    def test_review_with_findings_is_not_asked_again(self):
        provider = ScriptedProvider(REVIEW)

        run_mr_review(FakeVCS(), provider, "acme/app", 7, _config())

        assert len(provider.prompts) == 1


class _ReplyRejectingVCS(FakeVCS):
    def reply_to_discussion(self, project, number, discussion_id, body):
        raise VCSError("discussion is locked")


def _open_thread(line=3):
    return Discussion(
        id="d5",
        notes=[
            DiscussionNote(
                id="n5",
                author="prev",
                body=f"[HIGH] Missing default for TOKEN lookup\n\n{THREAD_MARKER}",
                file_path="app.py",
                line=line,
                resolvable=True,
            )
        ],
    )


class TestThreadReuse:
    def test_matching_open_thread_gets_a_reply(self):
        vcs = FakeVCS(discussions=[_open_thread()])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(inline_only=True))

        assert summary.reused == 1
        assert summary.posted == 1
        assert vcs.inline == []
        discussion_id, body = vcs.replies[0]
        assert discussion_id == "d5"
        assert body.startswith(REUSE_MARKER)

    def test_failed_reuse_reply_opens_new_thread(self):
        vcs = _ReplyRejectingVCS(discussions=[_open_thread()])

        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(inline_only=True))

        assert summary.reused == 0
        assert summary.posted == 1
        assert summary.failed == 0
        comment = vcs.inline[0]
        assert (comment.file_path, comment.new_line) == ("app.py", 2)
        assert REUSE_MARKER not in comment.body


class TestReplyIsolation:
    def test_failed_reply_does_not_block_other_threads(self):
        first = Discussion(
            id="d1",
            notes=[DiscussionNote(id="n1", author="dev", body="@prev reply why?", file_path="app.py", line=2)],
        )
        second = Discussion(
            id="d2",
            notes=[DiscussionNote(id="n2", author="dev", body="@prev reply and this?", file_path="app.py", line=3)],
        )
        vcs = FakeVCS(discussions=[first, second])
        provider = ScriptedProvider(ProviderError(ErrorCode.AUTH, "bad key"), "Because TOKEN may be unset.", EMPTY_REVIEW)

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.replies == 1
        assert [discussion_id for discussion_id, _ in vcs.replies] == ["d2"]
        assert vcs.replies[0][1].startswith("Because TOKEN may be unset.")

    def test_rejected_reply_post_does_not_block_other_threads(self):
        class _FirstReplyRejected(FakeVCS):
            def reply_to_discussion(self, project, number, discussion_id, body):
                if discussion_id == "d1":
                    raise VCSError("discussion is locked")
                super().reply_to_discussion(project, number, discussion_id, body)

        threads = [
            Discussion(id=f"d{i}", notes=[DiscussionNote(id=f"n{i}", author="dev", body="@prev reply why?")])
            for i in (1, 2)
        ]
        vcs = _FirstReplyRejected(discussions=threads)
        provider = ScriptedProvider("First answer.", "Second answer.", EMPTY_REVIEW)

        summary = run_mr_review(vcs, provider, "acme/app", 7, _config())

        assert summary.replies == 1
        assert vcs.replies[0][0] == "d2"



class TestIncremental:
    def test_posts_baseline_marker(self):
        vcs = FakeVCS()

        run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(incremental=True))

        assert vcs.summary_notes[-1].startswith(BASELINE_PREFIX)

    def test_unchanged_since_baseline_skips_review(self):
        first = FakeVCS()
        run_mr_review(first, ScriptedProvider(REVIEW), "acme/app", 7, _config(incremental=True))
        marker = Note(id="m1", author="prev", body=first.summary_notes[-1])

        second = FakeVCS(notes=[marker])
        provider = ScriptedProvider()
        summary = run_mr_review(second, provider, "acme/app", 7, _config(incremental=True))

        assert summary.status == "unchanged"
        assert provider.prompts == []

    def test_narrows_to_changed_files(self):
        first = FakeVCS()
        run_mr_review(first, ScriptedProvider(EMPTY_REVIEW), "acme/app", 7, _config(incremental=True))
        marker = Note(id="m1", author="prev", body=first.summary_notes[-1])

        extra = parse_file_patch("@@ -0,0 +1 @@\n+DEBUG = True\n", new_path="settings.py", is_new=True)
        second = FakeVCS(changes=first.changes + [extra], notes=[marker])
        summary = run_mr_review(second, ScriptedProvider(EMPTY_REVIEW), "acme/app", 7, _config(incremental=True))

        assert summary.reviewed_files == ["settings.py"]

    def test_inline_only_disables_incremental(self):
        vcs = FakeVCS()

        run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(incremental=True, inline_only=True))

        assert not any(n.startswith(BASELINE_PREFIX) for n in vcs.summary_notes)


class TestMemory:
    def test_findings_are_remembered(self, tmp_path):
        store = MarkdownMemoryStore(tmp_path / "review-memory.md")

        summary = run_mr_review(FakeVCS(), ScriptedProvider(REVIEW), "acme/app", 7, _config(), memory=store)

        assert summary.memory_updated is True
        entries = store.load().entries
        assert len(entries) == 1
        assert entries[0].file_path == "app.py"
        assert entries[0].severity == "HIGH"
        assert entries[0].last_mr == "acme/app!7"

    def test_remembered_findings_reach_the_prompt(self, tmp_path):
        store = MarkdownMemoryStore(tmp_path / "review-memory.md")
        run_mr_review(FakeVCS(), ScriptedProvider(REVIEW), "acme/app", 7, _config(), memory=store)

        provider = ScriptedProvider(EMPTY_REVIEW)
        run_mr_review(FakeVCS(), provider, "acme/app", 8, _config(), memory=store)

        assert "Missing default for TOKEN" in provider.prompts[0]

    def test_failed_memory_save_is_not_fatal(self):
        class _ReadOnlyStore(BaseMemoryStore):
            location = "read-only"

            def load(self):
                return ReviewMemory()

            def save(self, memory):
                raise OSError("read-only file system")

        vcs = FakeVCS()
        summary = run_mr_review(vcs, ScriptedProvider(REVIEW), "acme/app", 7, _config(), memory=_ReadOnlyStore())

        assert summary.memory_updated is False
        assert summary.posted == 1
        assert len(vcs.inline) == 1

    def test_observed_notes_need_severity_and_position(self):
        discussions = [
            Discussion(
                id="d1",
                notes=[
                    DiscussionNote(id="1", body="[HIGH] Leak", file_path="a.py", line=3, resolvable=True, resolved=True),
                    DiscussionNote(id="2", body="thanks", file_path="a.py", line=3),
                    DiscussionNote(id="3", body="[LOW] Typo"),
                ],
            )
        ]
        observed = observed_notes(discussions)
        assert len(observed) == 1
        assert observed[0].severity == "HIGH"
        assert observed[0].resolved is True


# ---------------------------------------------------------------------------
# run_local_review
# ---------------------------------------------------------------------------


class TestRunLocalReview:
    def test_places_findings_without_posting(self):
        changes = [parse_file_patch(APP_PATCH, new_path="app.py", old_path="app.py")]
        provider = ScriptedProvider(REVIEW)

        result = run_local_review(changes, provider, _config(), source="working tree")

        assert len(result.findings) == 1
        assert [(g.file_path, g.new_line) for g in result.placement.groups] == [("app.py", 2)]
        assert "local changes (working tree)" in provider.prompts[0]

    def test_nothing_to_review_raises(self):
        with pytest.raises(NoReviewableHunks):
            run_local_review([], ScriptedProvider(), _config())
