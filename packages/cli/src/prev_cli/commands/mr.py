"""mr commands: review, list and inspect merge requests on GitHub or GitLab."""

from __future__ import annotations

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from prev_cli.commands.common import (
    build_provider,
    config_with_overrides,
    fix_prompt_option,
    memory_store,
    review_options,
)
from prev_core.vcs.base import BaseVCS, VCSError

console = Console()

_vcs_option = click.option(
    "--vcs",
    type=click.Choice(["github", "gitlab"]),
    default=None,
    help="VCS host. Auto-detected: gitlab when GITLAB_TOKEN is set, else github.",
)


_diff_source_option = click.option(
    "--diff-source",
    type=click.Choice(["auto", "git", "raw", "api"]),
    default=None,
    help="Where the MR diff is read from. auto tries the local checkout, then the raw diff, then the file API.",
)


def _local_diff(repo: str):
    """Read ``base...head`` from the local checkout, surfacing git failures as VCS errors."""
    from prev_cli import git

    def read(base: str, head: str) -> str:
        try:
            return git.range_diff(base, head, repo)
        except git.GitError as e:
            raise VCSError(f"local git diff {base[:12]}...{head[:12]} failed: {e}") from e

    return read


def _build_vcs(ctx: click.Context, config: dict) -> BaseVCS:
    """Instantiate the configured VCS client, resolving a GitLab CLI token when needed."""
    from prev_cli.auth import resolve_gitlab_token
    from prev_core.vcs.registry import detect_vcs, resolve_vcs

    if detect_vcs(config) == "gitlab" and not config.get("gitlab_token"):
        config["gitlab_token"] = resolve_gitlab_token(config.get("gitlab_url") or "https://gitlab.com")
    try:
        return resolve_vcs(ctx.obj["vcs"], config)
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@click.group("mr")
def mr_group():
    """Review and inspect merge requests (GitHub pull requests or GitLab MRs)."""


@mr_group.command("review")
@click.argument("project")
@click.argument("mr_id", type=int)
@review_options
@fix_prompt_option
@_vcs_option
@_diff_source_option
@click.option(
    "--incremental/--no-incremental",
    default=None,
    help="Only review files that changed since the last baseline marker.",
)
@click.option("--inline-only/--no-inline-only", default=None, help="Post inline comments only, no notes or replies.")
@click.option("--summary-only/--no-summary-only", default=None, help="Skip inline comments.")
@click.option("--dry-run", is_flag=True, help="Print the review prompt without calling the AI or posting.")
@click.pass_context
def review_cmd(ctx, project: str, mr_id: int, dry_run: bool, **overrides):
    """Review merge request MR_ID of PROJECT and post inline findings.

    PROJECT is owner/name on GitHub, or the numeric id or group/name path on
    GitLab.

    \b
    Required environment variables:
      GITHUB_TOKEN or GITLAB_TOKEN   VCS access (or a gh / glab CLI session)
      OPENAI_API_KEY                 for --provider openai (default)
      ANTHROPIC_API_KEY              for --provider anthropic
      AZURE_OPENAI_API_KEY           for --provider azure, with AZURE_OPENAI_ENDPOINT
      OPENAI_COMPAT_BASE_URL         for --provider openai-compat
    """
    from prev_core.providers.base import ProviderError
    from prev_core.reviewer import NoReviewableHunks, run_mr_review

    config = config_with_overrides(ctx, overrides)
    # The prompt is printed before any completion, so a dry run needs no credentials.
    provider = None if dry_run else build_provider(ctx, config)
    vcs = _build_vcs(ctx, config)
    try:
        summary = run_mr_review(
            vcs,
            provider,
            project,
            mr_id,
            config,
            memory=memory_store(ctx, config),
            dry_run=dry_run,
            local_diff=_local_diff(ctx.obj.get("repo_root") or "."),
        )
    except NoReviewableHunks as e:
        raise click.ClickException(str(e)) from e
    except ProviderError as e:
        raise click.ClickException(f"AI provider error: {e}") from e
    except (VCSError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        vcs.close()

    if summary.status == "reviewed" and summary.failed:
        console.print(f"[yellow]{summary.failed} inline comment(s) could not be posted; see warnings above.[/yellow]")


@mr_group.command("list")
@click.argument("project")
@_vcs_option
@click.pass_context
def list_cmd(ctx, project: str, vcs: str | None):
    """List open merge requests of PROJECT."""
    config = config_with_overrides(ctx, {"vcs": vcs})
    client = _build_vcs(ctx, config)
    try:
        mrs = client.list_open_mrs(project)
    except VCSError as e:
        raise click.ClickException(str(e)) from e
    finally:
        client.close()

    if not mrs:
        console.print("[yellow]No open merge requests.[/yellow]")
        return

    table = Table(title=f"Open Merge Requests: {escape(project)}", show_header=True, header_style="bold cyan")
    table.add_column("MR", style="bold", width=7)
    table.add_column("Title", max_width=50)
    table.add_column("Branch")
    table.add_column("Author")
    for mr in mrs:
        table.add_row(
            f"!{mr.number}",
            escape(mr.title[:50]),
            escape(f"{mr.source_branch} -> {mr.target_branch}"),
            escape(f"@{mr.author}" if mr.author else ""),
        )
    console.print(table)


@mr_group.command("diff")
@click.argument("project")
@click.argument("mr_id", type=int)
@_vcs_option
@_diff_source_option
@click.pass_context
def diff_cmd(ctx, project: str, mr_id: int, vcs: str | None, diff_source: str | None):
    """Show the files changed by a merge request (no AI)."""
    from prev_core.diff_source import fetch_mr_changes, mr_diff_sources

    config = config_with_overrides(ctx, {"vcs": vcs, "diff_source": diff_source})
    client = _build_vcs(ctx, config)
    local_diff = _local_diff(ctx.obj.get("repo_root") or ".")
    try:
        mr = client.fetch_mr(project, mr_id)
        _, changes = fetch_mr_changes(
            mr_diff_sources(client, project, mr_id, mr, config.get("diff_source"), local_diff)
        )
    except VCSError as e:
        raise click.ClickException(str(e)) from e
    finally:
        client.close()

    console.print(
        f"[bold]MR !{mr.number}: {escape(mr.title)}[/bold] ({escape(mr.source_branch)} -> {escape(mr.target_branch)})\n"
    )
    for change in changes:
        console.print(f"--- {change.path} (+{change.additions}/-{change.deletions})", markup=False)
