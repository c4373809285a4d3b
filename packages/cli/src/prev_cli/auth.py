"""Token resolution for the VCS hosts, with CLI-session fallbacks.

GitHub, stopping at the first success:
  1. GITHUB_TOKEN environment variable (CI / explicit override)
  2. `gh auth token` (GitHub CLI session, after `gh auth login`)

GitLab, stopping at the first success:
  1. GITLAB_TOKEN environment variable
  2. `glab config get token --host <host>` (GitLab CLI session)
"""

from __future__ import annotations

import logging
import os
import subprocess
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_CLI_TIMEOUT = 5


def _cli_token(args: list[str], tool: str) -> str | None:
    """Run a host CLI that prints a token; None when it is missing, slow, or fails."""
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=_CLI_TIMEOUT)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    token = result.stdout.strip()
    if token:
        logger.debug("Resolved token via %s CLI session.", tool)
    return token or None


def resolve_github_token() -> str | None:
    """Return a GitHub token or None if no valid source is available.

    Never raises; callers check for None and emit a UsageError.
    """
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token
    return _cli_token(["gh", "auth", "token"], "gh")


def resolve_gitlab_token(gitlab_url: str = "https://gitlab.com") -> str | None:
    """Return a GitLab token for ``gitlab_url`` or None."""
    token = os.environ.get("GITLAB_TOKEN")
    if token:
        return token
    host = urlparse(gitlab_url).netloc or gitlab_url
    return _cli_token(["glab", "config", "get", "token", "--host", host], "glab")
