"""Options and helpers shared by the review commands."""

from __future__ import annotations

import click

from prev_core.aggregate import FILTER_MODES
from prev_core.comments import FIX_PROMPT_MODES
from prev_core.providers.base import BaseProvider

_MEMORY_KEYS = ("memory", "memory_file")


def review_options(func):
    """Flags that tune how a review is produced. Unset flags leave the config value alone."""
    options = [
        click.option("--provider", default=None, help="AI provider: openai, anthropic, azure, openai-compat."),
        click.option("--model", default=None, help="Model (or Azure deployment) name. Overrides config file."),
        click.option(
            "--strictness",
            type=click.Choice(["strict", "normal", "lenient"]),
            default=None,
            help="How much the reviewer reports.",
        ),
        click.option("--nitpick", type=click.IntRange(0, 10), default=None, help="Nitpick level 1-10 (0 = from strictness)."),
        click.option("--guidelines", default=None, help="Path to a Markdown guidelines file."),
        click.option(
            "--filter-mode",
            type=click.Choice(FILTER_MODES),
            default=None,
            help="Which findings may become inline comments.",
        ),
        click.option(
            "--structured-output/--no-structured-output",
            "structured_output",
            default=None,
            help="Ask the model for JSON findings instead of Markdown.",
        ),
        click.option("--max-comments", type=click.IntRange(0), default=None, help="Cap on inline comments (0 = no cap)."),
        click.option("--memory/--no-memory", "memory", default=None, help="Use the persistent review memory."),
        click.option("--memory-file", default=None, help="Path of the review memory markdown file."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def config_with_overrides(ctx: click.Context, overrides: dict) -> dict:
    """The startup config with every non-None CLI override applied."""
    config = dict(ctx.obj["config"])
    for key, value in overrides.items():
        if value is not None:
            config[key] = value
    return config


def memory_store(ctx: click.Context, config: dict):
    """Startup store, or a fresh one when the command overrides the memory settings."""
    base = ctx.obj["config"]
    if all(config.get(k) == base.get(k) for k in _MEMORY_KEYS):
        return ctx.obj["store"]
    from prev_cli.cli import _build_store

    store = _build_store(config, ctx.obj.get("repo_root", "."))
    ctx.call_on_close(store.close)
    return store


def build_provider(ctx: click.Context, config: dict) -> BaseProvider:
    from prev_core.providers.registry import resolve_provider

    try:
        return resolve_provider(ctx.obj["providers"], config)
    except ValueError as e:
        raise click.UsageError(str(e)) from e


def fix_prompt_option(func):
    return click.option(
        "--fix-prompt",
        type=click.Choice(FIX_PROMPT_MODES),
        default=None,
        help="Append an agent fix prompt to inline comments.",
    )(func)
