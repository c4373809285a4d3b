from __future__ import annotations

from urllib.parse import quote

import httpx

from prev_core.config import DEFAULT_GITLAB_URL
from prev_core.diff.models import FileChange
from prev_core.diff.parser import parse_file_patch
from prev_core.vcs.base import BaseVCS, VCSError
from prev_core.vcs.models import DiffRefs, Discussion, DiscussionNote, InlineComment, MergeRequest, Note

PER_PAGE = 100
OPEN_MR_LIMIT = 20
DEFAULT_TIMEOUT = 30.0


def _username(data: dict) -> str:
    return (data.get("author") or {}).get("username") or ""


def _to_merge_request(data: dict) -> MergeRequest:
    refs = data.get("diff_refs") or {}
    return MergeRequest(
        number=int(data.get("iid") or 0),
        title=data.get("title") or "",
        description=data.get("description") or "",
        source_branch=data.get("source_branch") or "",
        target_branch=data.get("target_branch") or "",
        author=_username(data),
        state=data.get("state") or "",
        web_url=data.get("web_url") or "",
        diff_refs=DiffRefs(
            base_sha=refs.get("base_sha") or "",
            head_sha=refs.get("head_sha") or "",
            start_sha=refs.get("start_sha") or "",
        ),
    )


def _has_next_page(header: str | None) -> bool:
    return bool(header) and header != "0"


class GitLabVCS(BaseVCS):
    """Merge requests through the GitLab REST API (v4)."""

    NAME = "gitlab"

    def __init__(self, token: str, base_url: str = DEFAULT_GITLAB_URL, client: httpx.Client | None = None):
        if not token:
            raise ValueError("GITLAB_TOKEN is not set.")
        self.base_url = (base_url or DEFAULT_GITLAB_URL).rstrip("/")
        self.client = client or httpx.Client(base_url=self.base_url, timeout=DEFAULT_TIMEOUT)
        self.client.headers.update(
            {"PRIVATE-TOKEN": token, "Accept": "application/json", "User-Agent": "prev-cli"}
        )

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                        #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _mr_path(project: str, number: int, suffix: str = "") -> str:
        return f"/api/v4/projects/{quote(project, safe='')}/merge_requests/{number}{suffix}"

    def _request(self, method: str, path: str, what: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise VCSError(f"gitlab: failed to {what}: HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise VCSError(f"gitlab: failed to {what}: {e}") from e
        return response

    def _paginate(self, path: str, what: str) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            response = self._request("GET", path, what, params={"per_page": PER_PAGE, "page": page})
            items.extend(response.json() or [])
            if not _has_next_page(response.headers.get("X-Next-Page")):
                return items
            page += 1

    # ------------------------------------------------------------------ #
    # BaseVCS                                                             #
    # ------------------------------------------------------------------ #

    def fetch_mr(self, project: str, number: int) -> MergeRequest:
        data = self._request("GET", self._mr_path(project, number), f"fetch MR !{number}").json()
        return _to_merge_request(data)

    def fetch_changes(self, project: str, number: int) -> list[FileChange]:
        diffs = self._paginate(self._mr_path(project, number, "/diffs"), "fetch MR diffs")
        return [
            parse_file_patch(
                d.get("diff") or "",
                new_path=d.get("new_path") or "",
                old_path=d.get("old_path") or "",
                is_new=bool(d.get("new_file")),
                is_deleted=bool(d.get("deleted_file")),
                is_renamed=bool(d.get("renamed_file")),
            )
            for d in diffs
        ]

    def fetch_raw_diff(self, project: str, number: int) -> str:
        path = self._mr_path(project, number, "/raw_diffs")
        response = self._request("GET", path, "fetch raw MR diff", headers={"Accept": "text/plain"})
        return response.text

    def list_discussions(self, project: str, number: int) -> list[Discussion]:
        raw = self._paginate(self._mr_path(project, number, "/discussions"), "list MR discussions")
        discussions = []
        for d in raw:
            thread = Discussion(id=str(d.get("id") or ""))
            for n in d.get("notes") or []:
                position = n.get("position") or {}
                thread.notes.append(
                    DiscussionNote(
                        id=str(n.get("id") or ""),
                        author=_username(n),
                        body=n.get("body") or "",
                        file_path=position.get("new_path") or "",
                        line=int(position.get("new_line") or 0),
                        resolvable=bool(n.get("resolvable")),
                        resolved=bool(n.get("resolved")),
                    )
                )
            discussions.append(thread)
        return discussions

    def list_notes(self, project: str, number: int) -> list[Note]:
        raw = self._paginate(self._mr_path(project, number, "/notes"), "list MR notes")
        return [Note(id=str(n.get("id") or ""), author=_username(n), body=n.get("body") or "") for n in raw]

    def list_open_mrs(self, project: str) -> list[MergeRequest]:
        path = f"/api/v4/projects/{quote(project, safe='')}/merge_requests"
        raw = self._request("GET", path, "list MRs", params={"state": "opened", "per_page": OPEN_MR_LIMIT}).json()
        return [_to_merge_request(mr) for mr in raw or []]

    def post_summary_note(self, project: str, number: int, body: str) -> None:
        self._request("POST", self._mr_path(project, number, "/notes"), "post MR note", json={"body": body})

    def post_inline_comment(self, project: str, number: int, refs: DiffRefs, comment: InlineComment) -> None:
        position = {
            "base_sha": refs.base_sha,
            "head_sha": refs.head_sha,
            "start_sha": refs.start_sha,
            "position_type": "text",
            "new_path": comment.file_path,
            "old_path": comment.old_path.strip() or comment.file_path,
            "new_line": comment.new_line,
        }
        if comment.old_line > 0:
            position["old_line"] = comment.old_line
        self._request(
            "POST",
            self._mr_path(project, number, "/discussions"),
            "post inline discussion",
            json={"body": comment.body, "position": position},
        )

    def reply_to_discussion(self, project: str, number: int, discussion_id: str, body: str) -> None:
        self._request(
            "POST",
            self._mr_path(project, number, f"/discussions/{discussion_id}/notes"),
            f"reply to discussion {discussion_id}",
            json={"body": body},
        )

    def format_suggestion_block(self, suggestion: str) -> str:
        return "```suggestion:-0+0\n" + suggestion + "\n```"

    def close(self) -> None:
        self.client.close()
