"""MarkdownMemoryStore: review memory as a markdown file committed with the repo.

The file is readable in a code browser (snapshot plus open/fixed tables) while
the authoritative state lives in one fenced ``prev-memory-json`` block:

    # prev Review Memory
    ...
    ## Machine Data

    ```prev-memory-json
    {"version": 1, "updated_at": "...", "entries": [...]}
    ```

Files holding plain JSON (no fence) are accepted on load.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from prev_store.base import BaseMemoryStore
from prev_store.memory import format_time, normalize
from prev_store.models import STATUS_FIXED, STATUS_OPEN, ReviewMemory, ReviewMemoryEntry

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_FILE = ".prev/review-memory.md"

_JSON_FENCE_RE = re.compile(r"```prev-memory-json\s*(\{.*?\})\s*```", re.DOTALL)
_MAX_TABLE_ROWS = 30


def resolve_memory_path(repo_root: str | Path = ".", configured: str | None = None) -> Path:
    """Configured path (default ``.prev/review-memory.md``), relative to the repo root."""
    path = Path((configured or "").strip() or DEFAULT_MEMORY_FILE)
    if path.is_absolute():
        return path
    return Path(repo_root or ".") / path


def parse_memory_markdown(text: str) -> ReviewMemory:
    """Parse a memory document. Raises ValueError when the payload is not valid JSON."""
    text = text.strip()
    if not text:
        return ReviewMemory()
    match = _JSON_FENCE_RE.search(text)
    payload = match.group(1) if match else text
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid review memory payload: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("invalid review memory payload: expected a JSON object")
    return ReviewMemory.from_dict(data)


def _cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ").strip()


def _table(title: str, entries: list[ReviewMemoryEntry]) -> list[str]:
    out = [f"## {title}", "", "| File | Line | Severity | Hits | Message |", "|---|---:|---|---:|---|"]
    for e in entries[:_MAX_TABLE_ROWS]:
        out.append(f"| `{_cell(e.file_path)}` | {e.line} | {e.severity.upper()} | {e.hits} | {_cell(e.message)} |")
    if not entries:
        out.append("| _none_ |  |  |  |  |")
    out.append("")
    return out


def render_memory_markdown(memory: ReviewMemory) -> str:
    open_count, fixed_count = memory.counts()
    lines = [
        "# prev Review Memory",
        "",
        "<!-- prev:memory:v1 -->",
        "",
        "Persistent reviewer memory across merge requests.",
        "",
        "## Snapshot",
        "",
        f"- Updated: `{memory.updated_at.strip()}`",
        f"- Entries: `{len(memory.entries)}`",
        f"- Open: `{open_count}`",
        f"- Fixed: `{fixed_count}`",
        "",
    ]
    lines += _table("Open Findings", [e for e in memory.entries if e.status == STATUS_OPEN])
    lines += _table("Fixed Findings", [e for e in memory.entries if e.status == STATUS_FIXED])
    lines += [
        "## Machine Data",
        "",
        "```prev-memory-json",
        json.dumps(memory.to_dict(), indent=2),
        "```",
    ]
    return "\n".join(lines) + "\n"


class MarkdownMemoryStore(BaseMemoryStore):
    """Stores review memory in a markdown file, ``.prev/review-memory.md`` by default."""

    def __init__(self, path: str | Path = DEFAULT_MEMORY_FILE):
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ReviewMemory:
        if not self.path.exists():
            return ReviewMemory()
        try:
            return normalize(parse_memory_markdown(self.path.read_text(encoding="utf-8")))
        except (UnicodeDecodeError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable review memory at %s: %s", self.path, e)
            return ReviewMemory()

    def save(self, memory: ReviewMemory) -> None:
        normalize(memory)
        memory.updated_at = format_time(datetime.now(timezone.utc))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(render_memory_markdown(memory), encoding="utf-8")
