"""Shift acquisition dates of the dataset for anonymisation."""

from __future__ import annotations

from pathlib import Path
from typing import Tuple

import click

from ..io.raw import DsFolderAdapter
from ..pipelines.shift import DateShifter
from ..utils.display import echo_banner, echo_messages, echo_success
from ..utils.filters import split_subjects
from ._common import CTX_SETTINGS, curate_errors, dry_run_option


@click.command(
    name="shift-dates",
    context_settings=CTX_SETTINGS,
    help="Shift dates per subject; the real dates are kept under sourcedata/.",
)
@click.option(
    "--subject",
    "subjects",
    multiple=True,
    callback=split_subjects,
    metavar="<sub>",
    help="Only these subjects (repeatable or comma-separated).",
)
@click.option(
    "--trust-scans",
    is_flag=True,
    help="Only check embedded dates of recordings whose scan row changed.",
)
@dry_run_option
@click.pass_context
def cli(
    ctx: click.Context, subjects: Tuple[str, ...], trust_scans: bool, dry_run: bool
) -> None:
    """Entry-point for ``bidscurate-cli shift-dates``."""
    root: Path = ctx.obj["root"]
    echo_banner("shift dates")
    with curate_errors():
        shifter = DateShifter(
            root, ctx.obj["cfg"], DsFolderAdapter(), trust_scans=trust_scans, dry_run=dry_run
        )
        result = shifter.run(subjects or None)
    echo_messages(result.messages, dry_run=dry_run)
    echo_success(
        f"{len(result.updated_scans)} scans file(s) and "
        f"{len(result.updated_recordings)} recording(s) updated"
    )
