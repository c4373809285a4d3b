"""Incremental review baselines.

After an incremental run the reviewer posts a hidden note recording the head
commit and one content signature per file. The next run only reviews files
whose signature changed since the most recent such note.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field

from prev_core.diff.models import FileChange
from prev_core.vcs.models import Note

logger = logging.getLogger(__name__)

BASELINE_PREFIX = "<!-- prev:baseline "


@dataclass
class ReviewBaseline:
    head_sha: str
    file_sigs: dict[str, str] = field(default_factory=dict)


def file_signature(change: FileChange) -> str:
    """sha1 over paths, hunk headers and every line; any textual or positional change alters it."""
    parts = [change.new_path.strip(), change.old_path.strip()]
    for hunk in change.hunks:
        parts.append(f"{hunk.old_start}:{hunk.old_lines}:{hunk.new_start}:{hunk.new_lines}")
        for line in hunk.lines:
            parts.append(f"{int(line.type)}:{line.old_line}:{line.new_line}:{line.content}")
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def build_file_signatures(changes: list[FileChange]) -> dict[str, str]:
    return {change.path: file_signature(change) for change in changes if change.path}


def filter_by_baseline(changes: list[FileChange], baseline: dict[str, str]) -> list[FileChange]:
    """Files whose signature differs from (or is missing in) the baseline."""
    if not changes or not baseline:
        return changes
    return [c for c in changes if c.path and baseline.get(c.path) != file_signature(c)]


def latest_baseline(notes: list[Note]) -> ReviewBaseline | None:
    """Most recent well-formed baseline marker; malformed markers are skipped."""
    for note in reversed(notes):
        body = note.body.strip()
        idx = body.find(BASELINE_PREFIX)
        if idx < 0:
            continue
        start = idx + len(BASELINE_PREFIX)
        end = body.find("-->", start)
        if end < 0:
            continue
        try:
            data = json.loads(base64.b64decode(body[start:end].strip(), validate=True))
        except (binascii.Error, ValueError) as e:
            logger.debug("Skipping malformed baseline marker in note %s: %s", note.id, e)
            continue
        if not isinstance(data, dict) or not data.get("head_sha"):
            continue
        sigs = data.get("file_sigs") or {}
        return ReviewBaseline(head_sha=str(data["head_sha"]), file_sigs=dict(sigs) if isinstance(sigs, dict) else {})
    return None


def baseline_marker(baseline: ReviewBaseline) -> str:
    payload = json.dumps({"head_sha": baseline.head_sha, "file_sigs": baseline.file_sigs}, separators=(",", ":"))
    return BASELINE_PREFIX + base64.b64encode(payload.encode("utf-8")).decode("ascii") + " -->"
