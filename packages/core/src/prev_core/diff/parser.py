"""Unified diff parsing.

Two entry points:
  - parse_unified_diff: full ``git diff`` output with ``diff --git`` headers
  - parse_file_patch:   a single file's hunks, as returned by the GitHub and
                        GitLab APIs alongside separate path metadata

Line numbers follow the hunk headers exactly; the ``@@`` header itself is not a
diff line and ``\\ No newline at end of file`` markers are ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from prev_core.diff.models import DiffLine, FileChange, Hunk, LineType
from prev_core.utils.code import is_binary_path

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_NO_NEWLINE = "\\ No newline at end of file"


@dataclass
class _FileBuilder:
    old_path: str = ""
    new_path: str = ""
    is_new: bool = False
    is_deleted: bool = False
    is_renamed: bool = False
    is_binary: bool = False
    hunks: list[Hunk] = field(default_factory=list)
    additions: int = 0
    deletions: int = 0

    # Current hunk state.
    header: tuple[int, int, int, int] | None = None
    lines: list[DiffLine] = field(default_factory=list)
    old_no: int = 0
    new_no: int = 0

    def start_hunk(self, header: tuple[int, int, int, int]) -> None:
        self.flush_hunk()
        self.header = header
        self.lines = []
        self.old_no = header[0]
        self.new_no = header[2]

    def flush_hunk(self) -> None:
        if self.header is None:
            return
        old_start, old_lines, new_start, new_lines = self.header
        self.hunks.append(Hunk(old_start, old_lines, new_start, new_lines, tuple(self.lines)))
        self.header = None
        self.lines = []

    def add_line(self, raw: str) -> None:
        if self.header is None or raw == "" or raw == _NO_NEWLINE:
            return
        marker = raw[0]
        if marker == "+":
            self.lines.append(DiffLine(LineType.ADDED, raw[1:], 0, self.new_no))
            self.new_no += 1
            self.additions += 1
        elif marker == "-":
            self.lines.append(DiffLine(LineType.DELETED, raw[1:], self.old_no, 0))
            self.old_no += 1
            self.deletions += 1
        else:
            content = raw[1:] if marker == " " else raw
            self.lines.append(DiffLine(LineType.CONTEXT, content, self.old_no, self.new_no))
            self.old_no += 1
            self.new_no += 1

    def build(self) -> FileChange:
        self.flush_hunk()
        old_path, new_path = self.old_path, self.new_path
        if self.is_new:
            old_path = ""
        if self.is_deleted:
            new_path = ""
        is_renamed = self.is_renamed or bool(old_path and new_path and old_path != new_path)
        is_binary = self.is_binary or is_binary_path(new_path or old_path)
        return FileChange(
            old_path=old_path,
            new_path=new_path,
            is_new=self.is_new,
            is_deleted=self.is_deleted,
            is_renamed=is_renamed,
            is_binary=is_binary,
            hunks=tuple(self.hunks),
            additions=self.additions,
            deletions=self.deletions,
        )


def parse_hunk_header(line: str) -> tuple[int, int, int, int] | None:
    """Return (old_start, old_lines, new_start, new_lines), or None if malformed.

    An omitted length means one line, as in ``@@ -3 +3 @@``.
    """
    match = _HUNK_HEADER_RE.match(line)
    if not match:
        return None
    old_start, old_lines, new_start, new_lines = match.groups()
    return (
        int(old_start),
        int(old_lines) if old_lines is not None else 1,
        int(new_start),
        int(new_lines) if new_lines is not None else 1,
    )


def _clean_path(path: str) -> str:
    path = path.strip().strip('"')
    for prefix in ("a/", "b/"):
        if path.startswith(prefix):
            return path[len(prefix) :]
    return path


def _path_marker(raw: str) -> str:
    value = raw.strip().split("\t", 1)[0]
    if value.startswith('"') and value.endswith('"'):
        return value.strip('"')
    return value.split(" ", 1)[0]


def parse_unified_diff(raw: str) -> list[FileChange]:
    """Parse ``git diff`` output into FileChanges.

    Raises ValueError when non-empty input contains no file diff at all.
    """
    changes: list[FileChange] = []
    current: _FileBuilder | None = None

    for line in raw.replace("\r\n", "\n").split("\n"):
        if line.startswith("diff --git "):
            if current is not None:
                changes.append(current.build())
            parts = line.split()
            current = _FileBuilder()
            if len(parts) >= 4:
                current.old_path = _clean_path(parts[2])
                current.new_path = _clean_path(parts[3])
            continue

        if current is None:
            continue

        if line.startswith("new file mode "):
            current.is_new = True
        elif line.startswith("deleted file mode "):
            current.is_deleted = True
        elif line.startswith("rename from "):
            current.is_renamed = True
            current.old_path = _clean_path(line[len("rename from ") :])
        elif line.startswith("rename to "):
            current.is_renamed = True
            current.new_path = _clean_path(line[len("rename to ") :])
        elif line.startswith("Binary files ") or "GIT binary patch" in line:
            current.is_binary = True
        elif line.startswith("--- ") and current.header is None:
            path = _path_marker(line[4:])
            if path == "/dev/null":
                current.is_new = True
            else:
                current.old_path = _clean_path(path)
        elif line.startswith("+++ ") and current.header is None:
            path = _path_marker(line[4:])
            if path == "/dev/null":
                current.is_deleted = True
            else:
                current.new_path = _clean_path(path)
        elif line.startswith("@@ "):
            header = parse_hunk_header(line)
            if header is None:
                current.flush_hunk()
            else:
                current.start_hunk(header)
        else:
            current.add_line(line)

    if current is not None:
        changes.append(current.build())

    if not changes and raw.strip():
        raise ValueError("failed to parse diff: no file diffs found")
    return changes


def parse_file_patch(
    patch: str,
    new_path: str,
    old_path: str = "",
    is_new: bool = False,
    is_deleted: bool = False,
    is_renamed: bool = False,
) -> FileChange:
    """Parse a single file's hunks (no ``diff --git`` header) into a FileChange."""
    builder = _FileBuilder(
        old_path=old_path or new_path,
        new_path=new_path,
        is_new=is_new,
        is_deleted=is_deleted,
        is_renamed=is_renamed,
    )
    if "Binary files" in patch or "GIT binary patch" in patch:
        builder.is_binary = True
    for line in patch.replace("\r\n", "\n").split("\n"):
        if line.startswith("@@"):
            header = parse_hunk_header(line)
            if header is None:
                builder.flush_hunk()
            else:
                builder.start_hunk(header)
            continue
        builder.add_line(line)
    return builder.build()


def format_for_review(changes: list[FileChange]) -> str:
    """Render changes as numbered hunks for the review prompt.

    Each line carries its new-file number so the model can anchor findings.
    """
    out: list[str] = []
    for change in changes:
        if change.is_binary:
            continue
        if change.is_new:
            label = "New"
        elif change.is_deleted:
            label = "Deleted"
        elif change.is_renamed:
            label = f"Renamed from {change.old_path}"
        else:
            label = "Modified"
        out.append(f"### File: {change.path} ({label}) [+{change.additions}/-{change.deletions}]")
        for hunk in change.hunks:
            out.append(f"@@ -{hunk.old_start},{hunk.old_lines} +{hunk.new_start},{hunk.new_lines} @@")
            for line in hunk.lines:
                if line.type == LineType.ADDED:
                    out.append(f"+{line.new_line:>5} {line.content}")
                elif line.type == LineType.DELETED:
                    out.append(f"-{'':>5} {line.content}")
                else:
                    out.append(f" {line.new_line:>5} {line.content}")
        out.append("")
    return "\n".join(out)
