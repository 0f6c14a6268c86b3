"""List the empty-room recording associated with every recording."""

from __future__ import annotations

from pathlib import Path

import click

from ..io.raw import DsFolderAdapter
from ..pipelines.discovery import list_recordings
from ..pipelines.noise import NoiseAssociator, NoiseFound
from ..utils.display import echo_banner
from ._common import CTX_SETTINGS, curate_errors


@click.command(
    name="find-noise",
    context_settings=CTX_SETTINGS,
    help="Show the empty-room association of each recording (read-only).",
)
@click.option("--force", is_flag=True, help="Search again even when an association is stored.")
@click.pass_context
def cli(ctx: click.Context, force: bool) -> None:
    """Entry-point for ``bidscurate-cli find-noise``."""
    root: Path = ctx.obj["root"]
    cfg = ctx.obj["cfg"]
    echo_banner("empty-room associations")
    with curate_errors():
        recordings = list_recordings(root, cfg)
        associator = NoiseAssociator(root, cfg, DsFolderAdapter(), candidates=recordings)
        for rec in recordings:
            if rec.is_noise:
                continue
            match = associator.associate(rec, force=force)
            if match.found is NoiseFound.NOT_FOUND:
                click.secho(f"  ! {rec.relative}: none", fg="yellow")
                continue
            delta = f" ({match.delta})" if match.delta is not None else ""
            click.echo(f"  • {rec.relative}: {match.path} [{match.found.name.lower()}]{delta}")
