"""memory commands: inspect and maintain the persistent review memory file."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

console = Console()

_memory_file_option = click.option(
    "--memory-file",
    default=None,
    help="Path of the review memory markdown file. Defaults to memory_file from the config.",
)

_STATUS_STYLE = {"open": "yellow", "fixed": "green"}


def _markdown_store(ctx: click.Context, memory_file: str | None):
    """The memory commands always use the markdown file, even when ``memory: false``."""
    from prev_store.markdown import MarkdownMemoryStore, resolve_memory_path

    configured = memory_file or ctx.obj["config"].get("memory_file")
    return MarkdownMemoryStore(resolve_memory_path(ctx.obj.get("repo_root", "."), configured))


@click.group("memory")
def memory_group():
    """Manage the persistent review memory."""


@memory_group.command("show")
@_memory_file_option
@click.option("--json", "as_json", is_flag=True, help="Print only the machine-readable JSON payload.")
@click.option("--limit", default=30, show_default=True, help="Maximum number of entries to list.")
@click.pass_context
def show_cmd(ctx, memory_file: str | None, as_json: bool, limit: int):
    """Show remembered findings, open first."""
    store = _markdown_store(ctx, memory_file)
    memory = store.load()
    if as_json:
        console.print_json(json.dumps(memory.to_dict()))
        return
    if not store.exists():
        console.print(f"[yellow]No memory file found at {escape(store.location)}[/yellow]")
        return

    open_count, fixed_count = memory.counts()
    console.print(
        f"[bold]{escape(store.location)}[/bold]  entries={len(memory.entries)} "
        f"open={open_count} fixed={fixed_count} updated={escape(memory.updated_at)}"
    )
    if not memory.entries:
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Status", width=6)
    table.add_column("Severity", width=8)
    table.add_column("Location")
    table.add_column("Hits", justify="right", width=5)
    table.add_column("Fixes", justify="right", width=5)
    table.add_column("Message", max_width=60)
    table.add_column("Last MR")
    for e in memory.entries[:limit]:
        style = _STATUS_STYLE.get(e.status, "white")
        table.add_row(
            f"[{style}]{e.status}[/{style}]",
            e.severity,
            escape(f"{e.file_path}:{e.line}"),
            str(e.hits),
            str(e.fixes),
            escape(e.message),
            escape(e.last_mr),
        )
    console.print(table)


@memory_group.command("export")
@click.argument("output", type=click.Path(dir_okay=False))
@_memory_file_option
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["markdown", "json"]),
    default="markdown",
    show_default=True,
    help="Export format.",
)
@click.pass_context
def export_cmd(ctx, output: str, memory_file: str | None, fmt: str):
    """Export the review memory to OUTPUT as markdown or JSON."""
    from prev_store.markdown import MarkdownMemoryStore

    memory = _markdown_store(ctx, memory_file).load()
    out = Path(output)
    if fmt == "json":
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(memory.to_dict(), indent=2) + "\n", encoding="utf-8")
    else:
        MarkdownMemoryStore(out).save(memory)
    console.print(f"Exported review memory to {escape(str(out))}")


@memory_group.command("prune")
@_memory_file_option
@click.option("--max-entries", type=int, default=None, help="Entries to keep after pruning. Defaults to memory_max_entries.")
@click.option(
    "--fixed-older-than-days",
    type=int,
    default=None,
    help="Drop fixed entries older than N days (0 disables). Defaults to memory_fixed_days.",
)
@click.option("--dry-run", is_flag=True, help="Report what would be removed without writing.")
@click.pass_context
def prune_cmd(ctx, memory_file: str | None, max_entries: int | None, fixed_older_than_days: int | None, dry_run: bool):
    """Drop stale fixed entries and trim the memory to its size cap."""
    from prev_store.memory import prune

    config = ctx.obj["config"]
    if max_entries is None:
        max_entries = int(config.get("memory_max_entries") or 0)
    if fixed_older_than_days is None:
        fixed_older_than_days = int(config.get("memory_fixed_days") or 0)

    store = _markdown_store(ctx, memory_file)
    memory = store.load()
    before = len(memory.entries)
    removed = prune(memory, max_entries=max_entries, fixed_older_than_days=fixed_older_than_days)
    after = len(memory.entries)
    if dry_run:
        console.print(f"Dry-run prune: removed={removed} before={before} after={after} file={escape(store.location)}")
        return
    store.save(memory)
    console.print(f"Pruned review memory: removed={removed} before={before} after={after} file={escape(store.location)}")


@memory_group.command("reset")
@_memory_file_option
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def reset_cmd(ctx, memory_file: str | None, yes: bool):
    """Reset the review memory to empty."""
    from prev_store.models import ReviewMemory

    store = _markdown_store(ctx, memory_file)
    if not yes:
        click.confirm(f"Reset review memory at {store.location}?", abort=True)
    store.save(ReviewMemory())
    console.print(f"Review memory reset: {escape(store.location)}")
