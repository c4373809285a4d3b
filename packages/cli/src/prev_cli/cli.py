"""CLI entry point for prev.

Commands:
  mr review  - review a merge request and post inline findings
  mr list    - list open merge requests
  mr diff    - show the files a merge request changes (no AI)
  diff       - review the working tree, staged changes, or two files
  commit     - review a single commit
  branch     - review a branch against its base
  memory     - show, export, prune or reset the review memory
"""

from __future__ import annotations

import importlib.metadata
import logging

import click
from rich.console import Console
from rich.logging import RichHandler

from prev_cli.commands.local import branch_cmd, commit_cmd, diff_cmd
from prev_cli.commands.memory import memory_group
from prev_cli.commands.mr import mr_group

console = Console()


def _build_store(config: dict, repo_root: str = "."):
    """Instantiate the memory store from .prev.yml settings.

      memory: false  -> NoOpMemoryStore (nothing remembered)
      (default)      -> MarkdownMemoryStore at memory_file, relative to the repo root

    This factory lives in cli.py so neither prev_core nor prev_store
    know about the CLI config format.
    """
    from prev_store.noop import NoOpMemoryStore

    if not config.get("memory", True):
        return NoOpMemoryStore()

    from prev_store.markdown import MarkdownMemoryStore, resolve_memory_path

    return MarkdownMemoryStore(resolve_memory_path(repo_root, config.get("memory_file")))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    if not verbose:
        # SDK transport chatter stays hidden unless debugging.
        for name in ("httpx", "httpcore", "openai", "anthropic", "urllib3"):
            logging.getLogger(name).setLevel(logging.WARNING)


@click.group()
@click.version_option(
    version=importlib.metadata.version("prev"),
    prog_name="prev",
)
@click.option(
    "--config",
    "config_path",
    default=".prev.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PREV_CONFIG",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str, verbose: bool):
    """AI-powered merge request reviewer for GitHub and GitLab."""
    import yaml

    from prev_cli.auth import resolve_github_token
    from prev_cli.git import repo_root
    from prev_core.config import load_config
    from prev_core.providers.registry import build_provider_table
    from prev_core.vcs.registry import build_vcs_table

    _configure_logging(verbose)
    ctx.ensure_object(dict)

    try:
        config = load_config(config_path)
    except (ValueError, yaml.YAMLError) as e:
        raise click.UsageError(f"Invalid configuration: {e}") from e

    # Resolve the GitHub token early so all subcommands share the same resolution.
    token = resolve_github_token()
    if token:
        config["github_token"] = token

    root = repo_root()
    store = _build_store(config, root)
    ctx.obj["config"] = config
    ctx.obj["repo_root"] = root
    ctx.obj["store"] = store
    ctx.obj["providers"] = build_provider_table()
    ctx.obj["vcs"] = build_vcs_table()
    ctx.call_on_close(store.close)


main.add_command(mr_group)
main.add_command(diff_cmd)
main.add_command(commit_cmd)
main.add_command(branch_cmd)
main.add_command(memory_group)
