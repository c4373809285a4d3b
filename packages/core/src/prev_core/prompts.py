"""Prompt construction for reviews and @mention replies.

Kept apart from the providers so every provider sends identical prompts; the
only provider-specific step is how the message list reaches the API.
"""

from __future__ import annotations

from prev_core.providers.base import system_message, user_message
from prev_core.vcs.models import MergeRequest

REVIEW_SYSTEM_PROMPT = "You are an expert code reviewer. Review the changes precisely and anchor every finding to a changed line."
THREAD_REPLY_SYSTEM_PROMPT = (
    "You are an expert code reviewer replying in a merge request discussion. "
    "You answer thread questions with code-aware reasoning tied to the hunk context."
)
NOTE_REPLY_SYSTEM_PROMPT = (
    "You are an expert code reviewer replying to a merge request comment. "
    "Answer questions directly and concisely, referencing the MR context when helpful."
)

LINE_ANCHOR_INSTRUCTIONS = """
## Line Anchoring Requirement
- The MR context already includes changed hunks with explicit line anchors (`@@ -old,+new`) and numbered lines.
- Do not claim that hunk line numbers are missing.
- Anchor each finding to the most precise changed line available.
"""

STRUCTURED_OUTPUT_INSTRUCTIONS = """
## Output Format (STRICT JSON)
Return valid JSON only (no markdown) using this schema:
{
  "summary": "2-3 sentence summary",
  "findings": [
    {
      "file_path": "path/to/file.ext",
      "line": 123,
      "kind": "ISSUE|SUGGESTION|REMARK",
      "severity": "CRITICAL|HIGH|MEDIUM|LOW",
      "message": "concise actionable finding",
      "suggestion": "optional replacement code"
    }
  ]
}
If no findings, return {"summary":"...","findings":[]}.
"""


def strictness_block(strictness: str) -> str:
    strictness = (strictness or "").lower()
    if strictness == "strict":
        return (
            "Report all issues. Be thorough: flag bugs, security issues, performance problems,\n"
            "style violations, and any code that could be improved. Include LOW severity items."
        )
    if strictness == "lenient":
        return (
            "Only report CRITICAL and HIGH severity issues. Be concise. Skip style nits,\n"
            "minor improvements, and LOW/MEDIUM issues entirely. Focus on bugs and security vulnerabilities."
        )
    return (
        "Focus on bugs, security vulnerabilities, and significant code quality issues.\n"
        "Skip trivial style nits. Report MEDIUM severity and above."
    )


def nitpick_block(nitpick: int) -> str:
    if nitpick <= 0:
        return ""
    nitpick = min(nitpick, 10)
    return (
        f"## Nitpick Level: {nitpick}/10\n"
        "1 means critical issues only. 10 means include small nits and minor improvements.\n"
        "Adjust granularity accordingly.\n"
    )


def convention_block(conventions: list[str] | None) -> str:
    labels = [c.strip().upper() for c in conventions or [] if c and c.strip()]
    if not labels:
        return ""
    return f"## Comment Conventions\nUse KIND labels from this set only: {', '.join(labels)}\n"


def guideline_block(guidelines: str) -> str:
    guidelines = (guidelines or "").strip()
    if not guidelines:
        return ""
    return "## Review Guidelines\n" + guidelines + "\n"


def merge_guidelines(*parts: str) -> str:
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def _instructions(strictness: str, nitpick: int, conventions: list[str] | None, guidelines: str) -> str:
    return "\n".join(
        [
            strictness_block(strictness),
            nitpick_block(nitpick),
            convention_block(conventions),
            guideline_block(guidelines),
        ]
    )


_RESPONSE_CONTRACT = """Please provide:

1. **Summary**: 2-3 sentences.

2. **Analysis priority**:
   - Source code first.
   - .md/.txt/.rst/.adoc: typos/spelling/grammar only unless critical correctness/security.
   - Prioritize CRITICAL/HIGH, then MEDIUM/LOW.
   - Review each changed hunk line-by-line, then assess full-hunk interaction.

3. **File-by-file findings** (exact format):
   **File: path/to/file.ext** (line N) [KIND] [SEVERITY]: Description of the issue

   Where KIND is one of: ISSUE, SUGGESTION, REMARK
   and SEVERITY is one of: CRITICAL, HIGH, MEDIUM, LOW

4. **Suggestions**: When you have a code fix, use this format:
   **File: path/to/file.ext** (line N) [SUGGESTION] [SEVERITY]: Description
   ```suggestion
   corrected code here
   ```

5. **Output constraints**:
   - concise findings (one short sentence preferred).
   - every finding line must include (line N) with a concrete changed line number.
   - keep suggestion patches scoped to target hunk only.
   - preserve exact code characters/spacing.

Order findings by severity: CRITICAL, HIGH, MEDIUM, LOW.
Keep the review focused and actionable.
Respond in Markdown format."""


def build_mr_review_prompt(
    mr: MergeRequest,
    formatted_diffs: str,
    strictness: str = "normal",
    nitpick: int = 0,
    conventions: list[str] | None = None,
    guidelines: str = "",
    structured: bool = False,
) -> str:
    prompt = f"""You are an expert code reviewer. Review this Merge Request.

## Merge Request Info
- **Title**: {mr.title}
- **Description**: {mr.description}
- **Branch**: {mr.source_branch} -> {mr.target_branch}

## Changes
{formatted_diffs}

## Review Instructions
{_instructions(strictness, nitpick, conventions, guidelines)}

{_RESPONSE_CONTRACT}"""
    prompt += LINE_ANCHOR_INSTRUCTIONS
    if structured:
        prompt += STRUCTURED_OUTPUT_INSTRUCTIONS
    return prompt


def build_local_review_prompt(
    formatted_diffs: str,
    source: str,
    strictness: str = "normal",
    nitpick: int = 0,
    conventions: list[str] | None = None,
    guidelines: str = "",
    structured: bool = False,
) -> str:
    prompt = f"""You are an expert code reviewer. Review these local changes ({source}).

## Changes
{formatted_diffs}

## Review Instructions
{_instructions(strictness, nitpick, conventions, guidelines)}

{_RESPONSE_CONTRACT}"""
    prompt += LINE_ANCHOR_INSTRUCTIONS
    if structured:
        prompt += STRUCTURED_OUTPUT_INSTRUCTIONS
    return prompt


def review_messages(prompt: str) -> list[dict]:
    return [system_message(REVIEW_SYSTEM_PROMPT), user_message(prompt)]


def reply_messages(system_prompt: str, prompt: str) -> list[dict]:
    return [system_message(system_prompt), user_message(prompt)]


RECOVERY_SYSTEM_PROMPT = "You are an expert code reviewer extracting structured findings."
NO_FINDINGS = "NO_FINDINGS"

_RECOVERY_TEMPLATE = """You must output only parseable file findings from this review context.

Requirements:
- Output only findings lines in this exact format:
  **File: path/to/file.ext** (line N) [KIND] [SEVERITY]: short message
- KIND must be one of: ISSUE, SUGGESTION, REMARK
- SEVERITY must be one of: CRITICAL, HIGH, MEDIUM, LOW
- If none found, output exactly: {no_findings}
- Do not include summary/headers/tables.

Original MR review prompt:
{prompt}

Prior full review output:
{review}"""


def build_recovery_prompt(prompt: str, review: str) -> str:
    """Ask again for just the finding lines of a review that yielded none."""
    return _RECOVERY_TEMPLATE.format(no_findings=NO_FINDINGS, prompt=prompt, review=review)


def recovery_messages(prompt: str, review: str) -> list[dict]:
    return [system_message(RECOVERY_SYSTEM_PROMPT), user_message(build_recovery_prompt(prompt, review))]
