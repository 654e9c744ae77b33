"""Root CLI group, version flag and verbosity."""

import logging

import click

from agentpipe import __version__
from agentpipe.commands.args import args
from agentpipe.commands.query import query


@click.group()
@click.version_option(version=__version__, prog_name="agentpipe")
@click.option("-v", "--verbose", is_flag=True, help="Log transport activity to stderr.")
def cli(verbose: bool) -> None:
    """agentpipe: drive an agent CLI over its JSON stdio protocol."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


cli.add_command(args)
cli.add_command(query)
