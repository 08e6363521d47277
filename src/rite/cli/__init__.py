from __future__ import annotations

import click

from rite.cli.admin import config, init
from rite.cli.info import status
from rite.cli.utils import _setup_logging
from rite.cli.workflow import assess, batch, merge, review, run, undo_cmd


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def cli(verbose: bool) -> None:
    """rite: drive GitHub issues from development through review to merge."""
    _setup_logging(verbose)


# Workflow commands
cli.add_command(run)
cli.add_command(batch)

# Single-phase commands
cli.add_command(review)
cli.add_command(assess)
cli.add_command(merge)
cli.add_command(undo_cmd)

# Info commands
cli.add_command(status)

# Admin commands
cli.add_command(config)
cli.add_command(init)

__all__ = ["cli"]
