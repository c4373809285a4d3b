"""Tests for review and reply prompt construction."""

from prev_core.prompts import (
    LINE_ANCHOR_INSTRUCTIONS,
    NO_FINDINGS,
    RECOVERY_SYSTEM_PROMPT,
    REVIEW_SYSTEM_PROMPT,
    STRUCTURED_OUTPUT_INSTRUCTIONS,
    build_local_review_prompt,
    build_mr_review_prompt,
    convention_block,
    guideline_block,
    merge_guidelines,
    nitpick_block,
    recovery_messages,
    review_messages,
    strictness_block,
)
from prev_core.vcs.models import MergeRequest

MR = MergeRequest(
    number=3,
    title="Add retry",
    description="Retries flaky calls",
    source_branch="feature/retry",
    target_branch="main",
)


def test_strictness_levels_differ():
    assert "Include LOW severity" in strictness_block("strict")
    assert "Only report CRITICAL and HIGH" in strictness_block("LENIENT")
    assert "MEDIUM severity and above" in strictness_block("normal")
    assert strictness_block("") == strictness_block("normal")


def test_nitpick_block_clamped_and_optional():
    assert nitpick_block(0) == ""
    assert "Nitpick Level: 10/10" in nitpick_block(42)
    assert "Nitpick Level: 4/10" in nitpick_block(4)


def test_convention_block_uppercases_labels():
    assert convention_block(["issue", " remark ", ""]).endswith("ISSUE, REMARK\n")
    assert convention_block([]) == ""
    assert convention_block(None) == ""


def test_guideline_block_skips_blank():
    assert guideline_block("   ") == ""
    assert guideline_block("No prints") == "## Review Guidelines\nNo prints\n"


def test_merge_guidelines_drops_empty_parts():
    assert merge_guidelines("a", "", "  ", "b\n") == "a\n\nb"


class TestBuildMRReviewPrompt:
    def test_includes_mr_info_and_changes(self):
        prompt = build_mr_review_prompt(MR, "@@ -1,1 +1,2 @@ app.py")
        assert "**Title**: Add retry" in prompt
        assert "feature/retry -> main" in prompt
        assert "@@ -1,1 +1,2 @@ app.py" in prompt
        assert "**File: path/to/file.ext** (line N)" in prompt
        assert prompt.endswith(LINE_ANCHOR_INSTRUCTIONS)

    def test_structured_output_appends_schema(self):
        prompt = build_mr_review_prompt(MR, "diff", structured=True)
        assert prompt.endswith(STRUCTURED_OUTPUT_INSTRUCTIONS)

    def test_guidelines_and_conventions_injected(self):
        prompt = build_mr_review_prompt(MR, "diff", nitpick=3, conventions=["issue"], guidelines="Prefer pathlib")
        assert "Nitpick Level: 3/10" in prompt
        assert "Use KIND labels from this set only: ISSUE" in prompt
        assert "Prefer pathlib" in prompt


def test_local_prompt_names_source():
    prompt = build_local_review_prompt("diff", "commit abc123")
    assert "Review these local changes (commit abc123)" in prompt
    assert "Merge Request Info" not in prompt


def test_review_messages_pair_system_and_user():
    messages = review_messages("the prompt")
    assert messages == [
        {"role": "system", "content": REVIEW_SYSTEM_PROMPT},
        {"role": "user", "content": "the prompt"},
    ]


def test_recovery_messages_carry_prompt_and_prior_review():
    messages = recovery_messages("BASE_PROMPT", "OLD_REVIEW")
    assert messages[0] == {"role": "system", "content": RECOVERY_SYSTEM_PROMPT}
    body = messages[1]["content"]
    assert "Original MR review prompt:\nBASE_PROMPT" in body
    assert "Prior full review output:\nOLD_REVIEW" in body
    assert f"output exactly: {NO_FINDINGS}" in body
