"""VCS lookup table, built once at startup like the provider table."""

from __future__ import annotations

from typing import Callable

from prev_core.vcs.base import BaseVCS

VCSFactory = Callable[[dict], BaseVCS]


def _github(config: dict) -> BaseVCS:
    from prev_core.vcs.github import GitHubVCS

    token = config.get("github_token")
    if not token:
        raise ValueError("GITHUB_TOKEN is not set and `gh auth token` returned nothing.")
    return GitHubVCS(token, base_url=config.get("github_url") or "")


def _gitlab(config: dict) -> BaseVCS:
    from prev_core.vcs.gitlab import GitLabVCS

    token = config.get("gitlab_token")
    if not token:
        raise ValueError("GITLAB_TOKEN is not set.")
    return GitLabVCS(token, base_url=config.get("gitlab_url") or "")


def build_vcs_table() -> dict[str, VCSFactory]:
    return {"github": _github, "gitlab": _gitlab}


def detect_vcs(config: dict) -> str:
    """Explicit ``vcs`` setting wins; otherwise GitLab when its token is present."""
    name = str(config.get("vcs") or "").strip().lower()
    if name:
        return name
    return "gitlab" if config.get("gitlab_token") else "github"


def resolve_vcs(table: dict[str, VCSFactory], config: dict) -> BaseVCS:
    name = detect_vcs(config)
    factory = table.get(name)
    if factory is None:
        raise ValueError(f"Unknown VCS '{name}'. Choose one of: {', '.join(sorted(table))}.")
    return factory(config)
