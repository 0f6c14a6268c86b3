"""Merge another dataset into the current one (``--bids-root``)."""

from __future__ import annotations

from pathlib import Path

import click

from ..io.raw import DsFolderAdapter
from ..pipelines.merge import MergeEngine, MergeOptions
from ..utils.display import echo_banner, echo_messages, echo_success
from ._common import CTX_SETTINGS, curate_errors, dry_run_option


@click.command(
    name="merge",
    context_settings=CTX_SETTINGS,
    help="Merge SOURCE into the dataset, renumbering sessions chronologically.",
)
@click.argument(
    "source",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
)
@click.option(
    "--sort/--no-sort",
    "sort_sessions",
    default=None,
    help="Renumber sessions by date (default: on, off with --rename-source-only).",
    show_default=False,
)
@click.option("--zero-pad", type=click.IntRange(min=1), help="Digits of session labels.")
@click.option(
    "--rename-source-only",
    is_flag=True,
    help="Only rename SOURCE sessions to fit the destination; nothing is moved.",
)
@click.option(
    "--use-backup-dates",
    is_flag=True,
    help="Date sessions with the real times backed up under sourcedata/.",
)
@dry_run_option
@click.pass_context
def cli(
    ctx: click.Context,
    source: Path | None,
    sort_sessions: bool | None,
    zero_pad: int | None,
    rename_source_only: bool,
    use_backup_dates: bool,
    dry_run: bool,
) -> None:
    """Entry-point for ``bidscurate-cli merge``."""
    echo_banner("merge" if source else "renumber sessions")
    options = MergeOptions(
        sort_sessions=sort_sessions,
        zero_pad=zero_pad,
        rename_source_only=rename_source_only,
        use_backup_dates=use_backup_dates,
        dry_run=dry_run,
    )
    with curate_errors():
        engine = MergeEngine(
            source, ctx.obj["root"], options, cfg=ctx.obj["cfg"], adapter=DsFolderAdapter()
        )
        result = engine.run()
    echo_messages(result.messages, dry_run=dry_run)
    renamed = result.table[result.table["old_session"] != result.table["session"]]
    for row in renamed.itertuples(index=False):
        click.echo(f"  • sub-{row.subject} ({row.side}): ses-{row.old_session} -> ses-{row.session}")
    if result.audit_path is not None:
        click.echo(f"  audit table: {result.audit_path}")
    echo_success(f"{len(result.renames)} session rename(s)")
