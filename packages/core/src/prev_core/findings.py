"""Finding types and parsing of the model's review output.

Severity and kind are parsed from free text by isolated functions that return
None when nothing matches. The product defaults (ISSUE, MEDIUM) are applied in
one place, classify(), so the fallback policy is explicit and testable.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class Kind(str, Enum):
    ISSUE = "ISSUE"
    SUGGESTION = "SUGGESTION"
    REMARK = "REMARK"


_SEVERITY_RANK = {Severity.CRITICAL: 4, Severity.HIGH: 3, Severity.MEDIUM: 2, Severity.LOW: 1}

DEFAULT_SEVERITY = Severity.MEDIUM
DEFAULT_KIND = Kind.ISSUE


def parse_severity(text: str | None) -> Severity | None:
    token = (text or "").strip().upper()
    try:
        return Severity(token)
    except ValueError:
        return None


def parse_kind(text: str | None) -> Kind | None:
    token = (text or "").strip().upper()
    try:
        return Kind(token)
    except ValueError:
        return None


def severity_rank(value: Severity | str | None) -> int:
    """Rank a severity (4 = CRITICAL … 1 = LOW); unknown values rank 0."""
    if isinstance(value, Severity):
        return value.rank
    parsed = parse_severity(value)
    return parsed.rank if parsed else 0


def classify(*tokens: str | None) -> tuple[Kind, Severity]:
    """Pick kind and severity out of loosely ordered label tokens.

    Tokens can arrive in either order (``[HIGH] [ISSUE]`` is as common as the
    documented ``[ISSUE] [HIGH]``); unmatched tokens are ignored and the
    defaults ISSUE / MEDIUM apply.
    """
    kind, severity = DEFAULT_KIND, DEFAULT_SEVERITY
    for token in tokens:
        parsed_kind = parse_kind(token)
        if parsed_kind is not None:
            kind = parsed_kind
            continue
        parsed_severity = parse_severity(token)
        if parsed_severity is not None:
            severity = parsed_severity
    return kind, severity


@dataclass(frozen=True)
class Finding:
    """A raw finding as reported by the model. ``line`` is 0 when unknown."""

    file_path: str
    line: int = 0
    kind: Kind = DEFAULT_KIND
    severity: Severity = DEFAULT_SEVERITY
    message: str = ""
    suggestion: str = ""


@dataclass
class ReviewResult:
    summary: str = ""
    findings: list[Finding] | None = None

    def __post_init__(self):
        if self.findings is None:
            self.findings = []


# ---------------------------------------------------------------------------
# Markdown output
# ---------------------------------------------------------------------------

_HEADER_RE = re.compile(
    r"^\s*(?:[-*]\s*)?(?:File:\s*)?([^\s]+?\.\w+)\s*(?:\(line\s*(\d+)\)|:(\d+))?"
    r"\s*(?:\[(\w+)\])?\s*(?:\[(\w+)\])?\s*:?\s*(.*)\s*$",
    re.IGNORECASE,
)
_RELAXED_HEADER_RE = re.compile(
    r"^\s*(?:[-*]\s*)?(?:File:\s*)?([^\s]+?\.\w+)\s*(?:\(([^)]*)\))?"
    r"\s*(?:\[(\w+)\])?\s*(?:\[(\w+)\])?\s*:?\s*(.*)\s*$",
    re.IGNORECASE,
)
_LINE_IN_PARENS_RE = re.compile(r"\bline\s*(\d+)\b", re.IGNORECASE)


@dataclass(frozen=True)
class _Header:
    file_path: str
    line: int
    kind: Kind
    severity: Severity
    message: str


def _parse_header(line: str) -> _Header | None:
    normalized = line.replace("**", "").strip()
    if not normalized:
        return None

    match = _HEADER_RE.match(normalized)
    if match and match.group(1):
        path, paren_line, colon_line, first, second, message = match.groups()
        has_meta = any((paren_line, colon_line, first, second))
        # "file.py (modified) ..." is the relaxed form, not a bare header.
        if has_meta or not message.strip().startswith("("):
            line_no = int(paren_line or colon_line or 0)
            kind, severity = classify(first, second)
            return _Header(path.strip(), line_no, kind, severity, message.strip())

    relaxed = _RELAXED_HEADER_RE.match(normalized)
    if not relaxed or not relaxed.group(1):
        return None
    path, parens, first, second, message = relaxed.groups()
    line_match = _LINE_IN_PARENS_RE.search(parens or "")
    kind, severity = classify(first, second)
    return _Header(
        path.strip(),
        int(line_match.group(1)) if line_match else 0,
        kind,
        severity,
        message.strip(),
    )


def _trim_blank_edges(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _split_suggestion(msg_lines: list[str]) -> tuple[str, str]:
    """Separate a ```suggestion fenced block from the finding text."""
    message: list[str] = []
    suggestion: list[str] = []
    in_suggestion = False
    for line in msg_lines:
        stripped = line.strip()
        if not in_suggestion and stripped.startswith("```suggestion"):
            in_suggestion = True
            continue
        if in_suggestion:
            if stripped == "```":
                in_suggestion = False
                continue
            suggestion.append(line)
        else:
            message.append(line)
    return "\n".join(message).strip(), "\n".join(_trim_blank_edges(suggestion))


def _collect_findings(lines: list[str]) -> list[Finding]:
    findings: list[Finding] = []
    current: _Header | None = None
    msg_lines: list[str] = []
    in_code = False

    def flush():
        if current is None:
            return
        message, suggestion = _split_suggestion(msg_lines)
        findings.append(
            Finding(
                file_path=current.file_path,
                line=current.line,
                kind=current.kind,
                severity=current.severity,
                message=message,
                suggestion=suggestion,
            )
        )

    for line in lines:
        if line.strip().startswith("```"):
            in_code = not in_code
            if current is not None:
                msg_lines.append(line)
            continue
        if in_code:
            if current is not None:
                msg_lines.append(line)
            continue
        header = _parse_header(line)
        if header is not None:
            flush()
            current = header
            msg_lines = [header.message] if header.message else []
        elif current is not None:
            msg_lines.append(line)

    flush()
    return findings


def parse_review_markdown(content: str) -> ReviewResult:
    """Parse markdown review output.

    Everything before the first finding header is the summary. Recognised
    headers include ``**File: path** (line N) [KIND] [SEVERITY]: message``,
    ``path:N [SEVERITY] message`` and ``File: path (modified) [ISSUE] [HIGH]: ...``.
    """
    lines = content.split("\n")
    for i, line in enumerate(lines):
        if _parse_header(line) is not None:
            return ReviewResult(summary="\n".join(lines[:i]).strip(), findings=_collect_findings(lines[i:]))
    return ReviewResult(summary=content.strip())


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------

_FINDING_KEYS = ("findings", "file_comments", "comments", "issues")


def _extract_json_payload(content: str) -> str:
    text = content.strip()
    if not text:
        return ""
    if text.startswith("```"):
        lines = text.split("\n")
        if len(lines) >= 3 and lines[-1].strip() == "```":
            text = "\n".join(lines[1:-1]).strip()
    if not text:
        return ""
    if text[0] in "[{":
        closer = "]" if text[0] == "[" else "}"
        end = text.rfind(closer)
        return text[: end + 1].strip() if end > 0 else ""
    for opener, closer in (("[", "]"), ("{", "}")):
        start, end = text.find(opener), text.rfind(closer)
        if 0 <= start < end:
            return text[start : end + 1].strip()
    return ""


def _first_str(item: dict, *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _first_int(item: dict, *keys: str) -> int:
    for key in keys:
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                continue
    return 0


def _to_findings(items: list) -> list[Finding]:
    out: list[Finding] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        path = _first_str(item, "file", "file_path", "path", "filename").strip()
        if not path:
            continue
        kind, severity = classify(
            _first_str(item, "kind", "type"),
            _first_str(item, "severity", "level", "priority"),
        )
        suggestion = _first_str(item, "suggestion", "patch", "fix")
        out.append(
            Finding(
                file_path=path,
                line=_first_int(item, "line", "new_line", "line_number"),
                kind=kind,
                severity=severity,
                message=_first_str(item, "message", "title", "description").strip(),
                suggestion="\n".join(_trim_blank_edges(suggestion.replace("\r\n", "\n").split("\n"))),
            )
        )
    return out


def parse_review_json(content: str) -> ReviewResult | None:
    """Parse structured JSON output; None when the payload is unusable."""
    payload = _extract_json_payload(content)
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Structured review output is not valid JSON: %s", payload[:200])
        return None

    if isinstance(data, dict) and data:
        summary = data.get("summary")
        items = next((data[k] for k in _FINDING_KEYS if isinstance(data.get(k), list)), None)
        if not items:
            return None
        findings = _to_findings(items)
        if not findings:
            return None
        return ReviewResult(summary=summary.strip() if isinstance(summary, str) else "", findings=findings)
    if isinstance(data, list) and data:
        return ReviewResult(findings=_to_findings(data))
    return None


def parse_review(content: str, structured: bool = False) -> ReviewResult:
    """Parse model output, trying JSON first when structured output was requested."""
    if structured:
        parsed = parse_review_json(content)
        if parsed is not None:
            return parsed
    return parse_review_markdown(content)
