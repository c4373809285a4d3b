"""Where a merge request diff is read from.

Sources are tried in order until one yields changes:

  git  ``git diff base...head`` of the MR's diff refs in a local checkout
  raw  the platform's raw unified diff of the whole MR
  api  the platform's per-file diff API

``auto`` tries all three; any other setting uses only the named source.
"""

from __future__ import annotations

import logging
from typing import Callable

from prev_core.diff.models import FileChange
from prev_core.diff.parser import parse_unified_diff
from prev_core.vcs.base import BaseVCS, VCSError
from prev_core.vcs.models import MergeRequest

logger = logging.getLogger(__name__)

DIFF_SOURCES = ("auto", "git", "raw", "api")

# (base_sha, head_sha) -> unified diff text
LocalDiff = Callable[[str, str], str]
Source = tuple[str, Callable[[], list[FileChange]]]


def normalize_diff_source(source: str | None) -> str:
    value = (source or "").strip().lower()
    return value if value in DIFF_SOURCES else "auto"


def _parse_raw(raw: str, what: str) -> list[FileChange]:
    if not raw.strip():
        return []
    try:
        return parse_unified_diff(raw)
    except ValueError as e:
        raise VCSError(f"{what}: {e}") from e


def mr_diff_sources(
    vcs: BaseVCS,
    project: str,
    mr_id: int,
    mr: MergeRequest,
    source: str | None = "auto",
    local_diff: LocalDiff | None = None,
) -> list[Source]:
    """Ordered sources for ``source``. Raises VCSError when a forced source cannot run."""
    source = normalize_diff_source(source)
    base, head = mr.diff_refs.base_sha.strip(), mr.diff_refs.head_sha.strip()
    sources: list[Source] = []

    if source in ("auto", "git"):
        if local_diff is not None and base and head:
            sources.append(("git", lambda: _parse_raw(local_diff(base, head), "local git diff")))
        elif source == "git":
            raise VCSError("diff source 'git' needs a local checkout and the MR's base and head commits.")
    if source in ("auto", "raw"):
        sources.append(("raw", lambda: _parse_raw(vcs.fetch_raw_diff(project, mr_id), "raw MR diff")))
    if source in ("auto", "api"):
        sources.append(("api", lambda: vcs.fetch_changes(project, mr_id)))
    return sources


def fetch_mr_changes(sources: list[Source]) -> tuple[str, list[FileChange]]:
    """First non-empty result as ``(source name, changes)``.

    A failing or empty source falls through to the next one. The last source's
    result is returned even when empty, and its errors propagate.
    """
    if not sources:
        raise VCSError("no diff source configured")
    *fallbacks, (last_name, last_fetch) = sources
    for name, fetch in fallbacks:
        try:
            changes = fetch()
        except VCSError as e:
            logger.info("Diff source %s unavailable, trying the next one: %s", name, e)
            continue
        if changes:
            return name, changes
        logger.info("Diff source %s returned no changes, trying the next one", name)
    return last_name, last_fetch()
