"""agentpipe query: run one prompt and print every message as JSON."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from agentpipe.commands.common import option_overrides
from agentpipe.config import AgentPipeConfig, ConfigError, load_config
from agentpipe.errors import AgentPipeError
from agentpipe.messages import ResultMessage
from agentpipe.query import query as run_query


@click.command()
@click.argument("prompt")
@option_overrides
@click.option(
    "--cwd",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory for the CLI process.",
)
def query(
    prompt: str,
    config_file: str | None,
    model: str | None,
    max_turns: int | None,
    cwd: Path | None,
) -> None:
    """Run PROMPT in one-shot mode and print each message as a JSON line."""
    try:
        config = load_config(
            config_file,
            overrides={"model": model, "max_turns": max_turns, "cwd": cwd},
            required=False,
        )
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    try:
        is_error = asyncio.run(_run(prompt, config))
    except AgentPipeError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if is_error:
        raise SystemExit(1)


async def _run(prompt: str, config: AgentPipeConfig) -> bool:
    """Echo messages as they arrive; return True if the result was an error."""
    is_error = False
    async for message in run_query(prompt, config.options, config.transport):
        click.echo(message.model_dump_json(exclude_none=True))
        if isinstance(message, ResultMessage):
            is_error = message.is_error
    return is_error
