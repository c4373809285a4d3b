from __future__ import annotations

import itertools

import httpx
from github import Github, GithubException

from prev_core.diff.models import FileChange
from prev_core.diff.parser import parse_file_patch
from prev_core.vcs.base import BaseVCS, VCSError
from prev_core.vcs.models import DiffRefs, Discussion, DiscussionNote, InlineComment, MergeRequest, Note

OPEN_MR_LIMIT = 20
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0


def _login(user) -> str:
    return getattr(user, "login", "") or ""


def _to_merge_request(pr) -> MergeRequest:
    return MergeRequest(
        number=pr.number,
        title=pr.title or "",
        description=pr.body or "",
        source_branch=pr.head.ref,
        target_branch=pr.base.ref,
        author=_login(pr.user),
        state=pr.state or "",
        web_url=pr.html_url or "",
        diff_refs=DiffRefs(base_sha=pr.base.sha, head_sha=pr.head.sha, start_sha=pr.base.sha),
    )


class GitHubVCS(BaseVCS):
    """Pull requests through PyGithub.

    GitHub has no discussion objects: review comments are grouped into threads
    by ``in_reply_to_id`` and the root comment id doubles as the discussion id.
    Review threads carry no resolved state in the REST API, so every note is
    reported resolvable and unresolved.
    """

    NAME = "github"

    def __init__(self, token: str, base_url: str = "", http: httpx.Client | None = None):
        self.client = Github(base_url=base_url, login_or_token=token) if base_url else Github(token)
        # PyGithub has no raw diff call; the diff media type is fetched directly.
        self.http = http or httpx.Client(base_url=(base_url or DEFAULT_API_URL).rstrip("/"), timeout=DEFAULT_TIMEOUT)
        self.http.headers.update({"Authorization": f"Bearer {token}", "User-Agent": "prev-cli"})
        self._repos: dict = {}
        self._pulls: dict = {}

    def _repo(self, project: str):
        if project not in self._repos:
            self._repos[project] = self.client.get_repo(project)
        return self._repos[project]

    def _pull(self, project: str, number: int):
        key = (project, number)
        if key not in self._pulls:
            self._pulls[key] = self._repo(project).get_pull(number)
        return self._pulls[key]

    def fetch_mr(self, project: str, number: int) -> MergeRequest:
        try:
            return _to_merge_request(self._pull(project, number))
        except GithubException as e:
            raise VCSError(f"github: failed to fetch PR #{number}: {e}") from e

    def fetch_changes(self, project: str, number: int) -> list[FileChange]:
        try:
            files = list(self._pull(project, number).get_files())
        except GithubException as e:
            raise VCSError(f"github: failed to fetch PR files: {e}") from e
        changes = []
        for f in files:
            # GitHub omits the patch for binary and very large files.
            changes.append(
                parse_file_patch(
                    f.patch or "",
                    new_path=f.filename,
                    old_path=f.previous_filename or "",
                    is_new=f.status == "added",
                    is_deleted=f.status == "removed",
                    is_renamed=f.status == "renamed",
                )
            )
        return changes

    def fetch_raw_diff(self, project: str, number: int) -> str:
        try:
            response = self.http.get(
                f"/repos/{project}/pulls/{number}", headers={"Accept": "application/vnd.github.diff"}
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise VCSError(f"github: failed to fetch PR #{number} diff: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise VCSError(f"github: failed to fetch PR #{number} diff: {e}") from e
        return response.text

    def list_discussions(self, project: str, number: int) -> list[Discussion]:
        try:
            comments = list(self._pull(project, number).get_review_comments())
        except GithubException as e:
            raise VCSError(f"github: failed to list review comments: {e}") from e
        threads: dict[str, Discussion] = {}
        for c in comments:
            root = str(c.in_reply_to_id or c.id)
            thread = threads.setdefault(root, Discussion(id=root))
            thread.notes.append(
                DiscussionNote(
                    id=str(c.id),
                    author=_login(c.user),
                    body=c.body or "",
                    file_path=c.path or "",
                    line=c.line or c.original_line or 0,
                    resolvable=True,
                    resolved=False,
                )
            )
        return list(threads.values())

    def list_notes(self, project: str, number: int) -> list[Note]:
        try:
            comments = list(self._pull(project, number).get_issue_comments())
        except GithubException as e:
            raise VCSError(f"github: failed to list PR comments: {e}") from e
        return [Note(id=str(c.id), author=_login(c.user), body=c.body or "") for c in comments]

    def list_open_mrs(self, project: str) -> list[MergeRequest]:
        try:
            pulls = self._repo(project).get_pulls(state="open")
            return [_to_merge_request(pr) for pr in itertools.islice(pulls, OPEN_MR_LIMIT)]
        except GithubException as e:
            raise VCSError(f"github: failed to list pull requests: {e}") from e

    def post_summary_note(self, project: str, number: int, body: str) -> None:
        try:
            self._pull(project, number).create_issue_comment(body)
        except GithubException as e:
            raise VCSError(f"github: failed to post PR comment: {e}") from e

    def post_inline_comment(self, project: str, number: int, refs: DiffRefs, comment: InlineComment) -> None:
        try:
            commit = self._repo(project).get_commit(refs.head_sha)
            self._pull(project, number).create_review_comment(
                body=comment.body,
                commit=commit,
                path=comment.file_path,
                line=comment.new_line,
                side="RIGHT",
            )
        except GithubException as e:
            raise VCSError(f"github: failed to post review comment on {comment.file_path}:{comment.new_line}: {e}") from e

    def reply_to_discussion(self, project: str, number: int, discussion_id: str, body: str) -> None:
        try:
            self._pull(project, number).create_review_comment_reply(int(discussion_id), body)
        except GithubException as e:
            raise VCSError(f"github: failed to reply to comment {discussion_id}: {e}") from e

    def format_suggestion_block(self, suggestion: str) -> str:
        return "```suggestion\n" + suggestion + "\n```"

    def close(self) -> None:
        self.client.close()
        self.http.close()
