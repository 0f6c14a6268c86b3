"""
Create a minimal dataset with ``dataset_description.json``.

Invoked through ``bidscurate-cli init PATH``.  The description is rendered
from the packaged template; ``--force`` overwrites an existing one.
"""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import click

from .._init_dataset import initialise_dataset
from ..utils.display import echo_banner, echo_success
from ._common import CTX_SETTINGS


@click.command(
    name="init",
    context_settings=CTX_SETTINGS,
    help="Create a minimal dataset with dataset_description.json.",
)
@click.argument("path", type=click.Path(file_okay=False, writable=True, path_type=Path))
@click.option("--name", help="Study title (Name field); defaults to the folder name.")
@click.option("--authors", multiple=True, help="Author name (option may be repeated).")
@click.option("--license", "license_", help="License identifier (License field).")
@click.option("--acknowledgements", help="Acknowledgements text.")
@click.option("--how-to-acknowledge", help="Instructions on how to cite the dataset.")
@click.option("--funding", multiple=True, help="Funding sources (repeatable).")
@click.option("--dataset-doi", help="Dataset DOI string.")
@click.option(
    "--dataset-type",
    default="raw",
    type=click.Choice(["raw", "derivative"]),
    help="BIDS dataset category.",
)
@click.option("--force", is_flag=True, help="Overwrite if the JSON already exists.")
@click.pass_context
def cli(
    ctx: click.Context,
    path: Path,
    name: str | None,
    authors: Tuple[str, ...],
    license_: str | None,
    acknowledgements: str | None,
    how_to_acknowledge: str | None,
    funding: Tuple[str, ...],
    dataset_doi: str | None,
    dataset_type: str,
    force: bool,
) -> None:
    """Entry-point for ``bidscurate-cli init``."""
    cfg = ctx.obj["cfg"]
    echo_banner("init dataset")
    try:
        written = initialise_dataset(
            path,
            name=name or path.resolve().name,
            authors=list(authors) or None,
            license=license_,
            acknowledgements=acknowledgements or "",
            how_to_ack=how_to_acknowledge or "",
            funding=list(funding) or None,
            dataset_doi=dataset_doi,
            dataset_type=dataset_type,
            bids_version=cfg.bids_version,
            force=force,
        )
    except FileExistsError as exc:
        raise click.ClickException(str(exc)) from exc
    echo_success(f"Created {written}")
