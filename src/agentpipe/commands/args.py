"""agentpipe args: print the CLI argument vector for the current config."""

from __future__ import annotations

import click

from agentpipe.commands.common import option_overrides
from agentpipe.config import ConfigError, load_config
from agentpipe.transport import build_arguments


@click.command()
@click.option("--streaming", is_flag=True, help="Build arguments for streaming-input mode.")
@option_overrides
def args(streaming: bool, config_file: str | None, model: str | None, max_turns: int | None) -> None:
    """Print the argument vector the CLI would be launched with, one per line."""
    try:
        config = load_config(
            config_file, overrides={"model": model, "max_turns": max_turns}, required=False
        )
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    for arg in build_arguments(streaming, config.options):
        click.echo(arg)
