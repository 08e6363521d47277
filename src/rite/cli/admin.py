from __future__ import annotations

import os
import subprocess

import click

from rite.config import ensure_config

from rite.cli.utils import _resolve_repo


@click.command()
@click.option("--edit", is_flag=True, help="Open config in $EDITOR.")
def config(edit: bool) -> None:
    """View or edit the user configuration."""
    config_path = ensure_config()

    if edit:
        editor = os.environ.get("EDITOR", "vi")
        subprocess.run([editor, str(config_path)])
    else:
        click.echo(config_path.read_text())


@click.command()
@click.option("-r", "--repo", "repo_path", default=None, help="Target repo path.")
def init(repo_path: str | None) -> None:
    """Create the per-project state directory and ignore it in git."""
    repo = _resolve_repo(repo_path)
    state_dir = repo / ".rite"
    state_dir.mkdir(exist_ok=True)
    gitignore = repo / ".gitignore"
    lines = gitignore.read_text().splitlines() if gitignore.exists() else []
    if ".rite/" not in lines:
        with open(gitignore, "a") as f:
            if lines and lines[-1] != "":
                f.write("\n")
            f.write(".rite/\n")
        click.echo(f"Added .rite/ to {gitignore}")
    click.echo(f"State directory: {state_dir}")
