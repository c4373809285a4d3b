"""Platform-neutral shapes of merge request state, shared by GitHub and GitLab."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DiffRefs:
    base_sha: str = ""
    head_sha: str = ""
    start_sha: str = ""


@dataclass
class MergeRequest:
    number: int
    title: str = ""
    description: str = ""
    source_branch: str = ""
    target_branch: str = ""
    author: str = ""
    state: str = ""
    web_url: str = ""
    diff_refs: DiffRefs = field(default_factory=DiffRefs)


@dataclass(frozen=True)
class DiscussionNote:
    """One note of a discussion. ``file_path``/``line`` are set for inline notes."""

    id: str
    author: str = ""
    body: str = ""
    file_path: str = ""
    line: int = 0
    resolvable: bool = False
    resolved: bool = False


@dataclass
class Discussion:
    id: str
    notes: list[DiscussionNote] = field(default_factory=list)


@dataclass(frozen=True)
class Note:
    """A top-level (non-inline) comment on the merge request."""

    id: str
    author: str = ""
    body: str = ""


@dataclass(frozen=True)
class InlineComment:
    file_path: str
    new_line: int
    body: str
    old_path: str = ""
    old_line: int = 0
