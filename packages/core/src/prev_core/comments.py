"""Inline comment bodies and the hidden markers the bot leaves in them."""

from __future__ import annotations

from typing import Callable

from prev_core.aggregate import InlineGroup
from prev_core.findings import Severity

THREAD_MARKER = "<!-- prev:thread -->"
CARRY_OVER_MARKER = "<!-- prev:carry-over -->"
REPLY_MARKER = "<!-- prev:reply -->"
SUMMARY_MARKER = "<!-- prev:summary -->"
REUSE_MARKER = "<!-- prev:reuse -->"

FIX_PROMPT_MODES = ("off", "auto", "always")

_MAX_BODY = 220
_MAX_POINTS = 4
_DEFAULT_POINT = "Review this change for correctness and side effects."
_NON_ACTIONABLE = {"summary", "analysis priority", "project scope map", "remediation plan", "file-by-file findings"}


def limit_len(text: str, limit: int) -> str:
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: limit - 1].strip() + "…"


def _strip_fences(message: str) -> str:
    out = []
    in_fence = False
    for line in message.strip().split("\n"):
        if line.strip().startswith("```"):
            in_fence = not in_fence
            continue
        if not in_fence:
            out.append(line)
    return "\n".join(out).strip()


def extract_key_points(message: str) -> list[str]:
    """Bullet-free, de-duplicated points of a (possibly merged) message, at most four."""
    points: list[str] = []
    for line in _strip_fences(message).split("\n"):
        text = line.strip().removeprefix("-").removeprefix("*").strip()
        if not text:
            continue
        lowered = text.lower()
        if lowered in ("key points:", "key point:") or lowered.startswith("key points ("):
            continue
        points.append(limit_len(" ".join(text.split()), _MAX_BODY))

    seen: set[str] = set()
    unique = []
    for point in points[:_MAX_POINTS]:
        if point.lower() in seen:
            continue
        seen.add(point.lower())
        unique.append(point)
    return unique


def _is_non_actionable(point: str) -> bool:
    lowered = point.strip().lower()
    if not lowered:
        return True
    if lowered.startswith(("hunk new lines ", "hunk anchor line ")):
        return True
    return lowered in _NON_ACTIONABLE


def concise_body(body: str) -> str:
    """First paragraph, cut to its first sentence unless it is a bullet list."""
    text = body.strip()
    if not text:
        return text
    candidate = text.split("\n\n")[0]
    if "\n- " not in candidate and "\n* " not in candidate:
        for sep in (". ", "! ", "? "):
            pos = candidate.find(sep)
            if pos >= 0:
                candidate = candidate[: pos + 1]
                break
    return limit_len(candidate.strip(), _MAX_BODY)


def normalize_suggestion(suggestion: str) -> str:
    lines = suggestion.replace("\r\n", "\n").split("\n")
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return "\n".join(lines[start:end])


def _leading_indent(text: str) -> str:
    return text[: len(text) - len(text.lstrip(" \t"))]


def _common_prefix(a: str, b: str) -> str:
    i = 0
    while i < min(len(a), len(b)) and a[i] == b[i]:
        i += 1
    return a[:i]


def rebase_suggestion_indentation(suggestion: str, anchor_line: str) -> str:
    """Re-indent a suggestion so its shallowest line matches the anchor line."""
    suggestion = normalize_suggestion(suggestion)
    if not suggestion:
        return ""
    anchor_indent = _leading_indent(anchor_line)
    if not anchor_indent:
        return suggestion

    lines = suggestion.split("\n")
    non_empty = [line for line in lines if line.strip()]
    common = _leading_indent(non_empty[0])
    for line in non_empty[1:]:
        common = _common_prefix(common, _leading_indent(line))
        if not common:
            break
    return "\n".join(anchor_indent + line.removeprefix(common) if line.strip() else line for line in lines)


def build_inline_body(
    severity: Severity | str,
    message: str,
    suggestion: str = "",
    format_suggestion: Callable[[str], str] | None = None,
) -> str:
    """``[SEV] primary point``, optionally followed by a suggested patch block."""
    sev = severity.value if isinstance(severity, Severity) else (severity or "").strip().upper()
    sev = sev or Severity.MEDIUM.value

    points = extract_key_points(message)
    primary = next((p for p in points if not _is_non_actionable(p)), "")
    if not primary and points:
        primary = points[0]
    body = concise_body(f"[{sev}] {primary or _DEFAULT_POINT}")

    suggestion = normalize_suggestion(suggestion)
    if suggestion and format_suggestion is not None:
        body += "\n\nSuggested patch:\n" + format_suggestion(suggestion)
    return body


def normalize_fix_prompt_mode(mode: str | None) -> str:
    mode = (mode or "").strip().lower()
    return mode if mode in FIX_PROMPT_MODES else "off"


def should_include_fix_prompt(group: InlineGroup, mode: str) -> bool:
    mode = normalize_fix_prompt_mode(mode)
    if mode == "off":
        return False
    if not group.file_path.strip() or group.new_line <= 0 or not group.message.strip():
        return False
    if mode == "always":
        return True
    # auto: only high-impact findings without a concrete patch
    if group.suggestion.strip():
        return False
    return group.severity.rank >= Severity.HIGH.rank


def build_fix_prompt(group: InlineGroup, mode: str) -> str:
    if not should_include_fix_prompt(group, mode):
        return ""
    return (
        "You are fixing a code-review finding.\n"
        f"Target file: {group.file_path.strip()}\n"
        f"Target line: {group.new_line}\n"
        f"Severity: {group.severity.value}\n"
        f"Finding: {concise_body(group.message)}\n\n"
        "Task:\n"
        "1) Produce a minimal patch that fixes the issue without changing unrelated behavior.\n"
        "2) Preserve API/ABI compatibility unless a breaking change is explicitly required.\n"
        "3) Add or update tests to prevent regression.\n"
        "4) Explain any concurrency/race-condition implications if shared state is touched.\n"
        "5) Return: (a) unified diff, (b) test diff, (c) short risk note."
    )


def render_inline_comment(
    group: InlineGroup,
    anchor_content: str = "",
    format_suggestion: Callable[[str], str] | None = None,
    fix_prompt: str = "off",
) -> str:
    """Full body posted for a group, ending with the thread marker."""
    suggestion = rebase_suggestion_indentation(group.suggestion, anchor_content)
    body = build_inline_body(group.severity, group.message, suggestion, format_suggestion)
    prompt = build_fix_prompt(group, fix_prompt)
    if prompt:
        body += "\n\nAI agent fix prompt:\n```text\n" + prompt + "\n```"
    return body + "\n\n" + THREAD_MARKER
