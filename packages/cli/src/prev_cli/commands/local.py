"""Local review commands: diff, commit and branch.

These run the same placement engine as ``mr review`` on a local git diff and
print the findings instead of posting them.
"""

from __future__ import annotations

import click
from rich.console import Console
from rich.markdown import Markdown

from prev_cli.commands.common import build_provider, config_with_overrides, memory_store, review_options
from prev_cli.git import GitError

console = Console()

_repo_option = click.option(
    "--repo",
    "repo",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Path to the git repository.",
)
_path_option = click.option(
    "-p",
    "--path",
    "paths",
    default="",
    help="Comma-separated paths to restrict the diff to.",
)


def _split_paths(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _review(ctx: click.Context, read_diff, source: str, overrides: dict) -> None:
    """Parse a local diff, review it and print the placed findings."""
    from prev_core.diff.parser import parse_unified_diff
    from prev_core.providers.base import ProviderError
    from prev_core.reviewer import NoReviewableHunks, print_groups, run_local_review

    config = config_with_overrides(ctx, overrides)
    try:
        changes = parse_unified_diff(read_diff())
    except GitError as e:
        raise click.ClickException(str(e)) from e
    except ValueError as e:
        raise click.ClickException(f"{source}: {e}") from e
    if not changes:
        console.print(f"[yellow]No changes found in {source}.[/yellow]")
        return

    provider = build_provider(ctx, config)
    console.print(f"\n[bold]Reviewing {source}[/bold] ({len(changes)} file(s))")
    try:
        result = run_local_review(changes, provider, config, source=source, memory=memory_store(ctx, config))
    except NoReviewableHunks as e:
        raise click.ClickException(str(e)) from e
    except ProviderError as e:
        raise click.ClickException(f"AI provider error: {e}") from e
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e

    console.print(Markdown(result.content))
    print_groups(result.placement.groups, result.placement.unplaced)


@click.command("diff")
@click.argument("files", nargs=-1)
@click.option("--staged", is_flag=True, help="Review staged changes instead of the working tree.")
@_repo_option
@_path_option
@review_options
@click.pass_context
def diff_cmd(ctx, files: tuple[str, ...], staged: bool, repo: str, paths: str, **overrides):
    """Review uncommitted changes, or the difference between two files.

    \b
    prev diff                      working tree against HEAD
    prev diff --staged             staged changes
    prev diff old.py,new.py        two files, not git related
    """
    from prev_cli import git

    if len(files) == 1:
        files = tuple(f.strip() for f in files[0].split(",") if f.strip())
    if len(files) == 2:
        old, new = files
        _review(ctx, lambda: git.files_diff(old, new), f"{old} -> {new}", overrides)
    elif not files:
        source = "staged changes" if staged else "working tree"
        _review(ctx, lambda: git.working_tree_diff(repo, staged, _split_paths(paths)), source, overrides)
    else:
        raise click.UsageError("Pass no file to review the working tree, or exactly two files to compare.")


@click.command("commit")
@click.argument("sha")
@_repo_option
@_path_option
@review_options
@click.pass_context
def commit_cmd(ctx, sha: str, repo: str, paths: str, **overrides):
    """Review the changes introduced by commit SHA."""
    from prev_cli import git

    _review(ctx, lambda: git.commit_diff(sha, repo, _split_paths(paths)), f"commit {sha}", overrides)


@click.command("branch")
@click.argument("branch")
@click.option("--base", default="main", show_default=True, help="Branch the reviewed branch forked from.")
@_repo_option
@_path_option
@review_options
@click.pass_context
def branch_cmd(ctx, branch: str, base: str, repo: str, paths: str, **overrides):
    """Review the changes on BRANCH since it forked from --base."""
    from prev_cli import git

    _review(
        ctx,
        lambda: git.branch_diff(branch, base, repo, _split_paths(paths)),
        f"branch {branch} (vs {base})",
        overrides,
    )
