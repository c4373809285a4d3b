"""Local git access for the ``diff``, ``commit`` and ``branch`` commands."""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 30


class GitError(Exception):
    """A git invocation failed or git is unavailable."""


def repo_root(path: str = ".") -> str:
    """Directory the review memory file is resolved against.

    CI_PROJECT_DIR wins (GitLab CI), then the enclosing git toplevel, then ``path``.
    """
    ci_dir = os.environ.get("CI_PROJECT_DIR", "").strip()
    if ci_dir:
        return ci_dir
    try:
        result = subprocess.run(
            ["git", "-C", path, "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return path
    top = result.stdout.strip()
    return top if result.returncode == 0 and top else path


def _git(args: list[str], repo: str = ".", ok_codes: tuple[int, ...] = (0,)) -> str:
    cmd = ["git", "-C", repo, *args]
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=GIT_TIMEOUT)
    except FileNotFoundError as e:
        raise GitError("git is not installed or not on PATH.") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"git {args[0]} timed out after {GIT_TIMEOUT}s.") from e
    if result.returncode not in ok_codes:
        raise GitError(result.stderr.strip() or f"git {args[0]} exited with status {result.returncode}.")
    return result.stdout


def _pathspec(paths: tuple[str, ...] | list[str]) -> list[str]:
    return ["--", *paths] if paths else []


def working_tree_diff(repo: str = ".", staged: bool = False, paths: tuple[str, ...] = ()) -> str:
    args = ["diff", "--no-color", "--no-ext-diff"]
    if staged:
        args.append("--cached")
    return _git(args + _pathspec(paths), repo)


def files_diff(old: str, new: str) -> str:
    """Diff two arbitrary files. ``git diff --no-index`` exits 1 when they differ."""
    return _git(["diff", "--no-index", "--no-color", "--no-ext-diff", "--", old, new], ok_codes=(0, 1))


def commit_diff(sha: str, repo: str = ".", paths: tuple[str, ...] = ()) -> str:
    return _git(["show", "--format=", "--no-color", "--no-ext-diff", "-p", sha] + _pathspec(paths), repo)


def branch_diff(branch: str, base: str, repo: str = ".", paths: tuple[str, ...] = ()) -> str:
    """Changes on ``branch`` since it forked from ``base``."""
    return _git(["diff", "--no-color", "--no-ext-diff", f"{base}...{branch}"] + _pathspec(paths), repo)


def range_diff(base: str, head: str, repo: str = ".") -> str:
    """Merge request diff from a local checkout; both commits must be fetched."""
    return _git(["diff", "--no-color", "--no-ext-diff", f"{base}...{head}"], repo)
