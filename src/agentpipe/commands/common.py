"""Options shared by the CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import click


def option_overrides(func: Callable[..., Any]) -> Callable[..., Any]:
    """Attach ``-f/--file``, ``--model`` and ``--max-turns`` to a command."""
    func = click.option(
        "--max-turns", type=click.IntRange(min=1), default=None, help="Maximum agentic turns."
    )(func)
    func = click.option("--model", type=str, default=None, help="Model to use.")(func)
    func = click.option(
        "-f", "--file", "config_file", type=click.Path(), help="Config file path."
    )(func)
    return func
