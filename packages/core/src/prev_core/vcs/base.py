"""Common interface of the code hosting platforms a review can be posted to."""

from __future__ import annotations

from abc import ABC, abstractmethod

from prev_core.diff.models import FileChange
from prev_core.vcs.models import DiffRefs, Discussion, InlineComment, MergeRequest, Note


class VCSError(Exception):
    """A platform API call failed."""


class BaseVCS(ABC):
    NAME: str = "base"

    @abstractmethod
    def fetch_mr(self, project: str, number: int) -> MergeRequest: ...

    @abstractmethod
    def fetch_changes(self, project: str, number: int) -> list[FileChange]: ...

    def fetch_raw_diff(self, project: str, number: int) -> str:
        """Whole merge request as one unified diff, for platforms that serve it."""
        raise VCSError(f"{self.NAME}: raw merge request diffs are not supported")

    @abstractmethod
    def list_discussions(self, project: str, number: int) -> list[Discussion]: ...

    @abstractmethod
    def list_notes(self, project: str, number: int) -> list[Note]: ...

    @abstractmethod
    def list_open_mrs(self, project: str) -> list[MergeRequest]: ...

    @abstractmethod
    def post_summary_note(self, project: str, number: int, body: str) -> None: ...

    @abstractmethod
    def post_inline_comment(self, project: str, number: int, refs: DiffRefs, comment: InlineComment) -> None: ...

    @abstractmethod
    def reply_to_discussion(self, project: str, number: int, discussion_id: str, body: str) -> None: ...

    @abstractmethod
    def format_suggestion_block(self, suggestion: str) -> str:
        """Wrap replacement code in the platform's native suggestion syntax."""

    def close(self) -> None:
        pass
