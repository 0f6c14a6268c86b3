"""
Subject and session rename commands.

* ``rename-session SUBJECT OLD NEW`` – one session of one subject
* ``rename-subject OLD NEW`` – one subject, dataset-wide
* ``rename-subjects TABLE`` – batch subject renames from a two-column CSV
* ``swap-sessions SUBJECT A B`` – exchange two session labels

Every command also updates the ``sourcedata``/``derivatives``/``extras``
mirrors and writes an audit table under ``derivatives/curation_audit``.
"""

from __future__ import annotations

from pathlib import Path

import click

from ..io.raw import DsFolderAdapter
from ..pipelines.rename import RenameEngine
from ..utils.display import echo_banner, echo_messages, echo_success
from ._common import CTX_SETTINGS, curate_errors, dry_run_option

_full_option = click.option(
    "--full",
    is_flag=True,
    help="Match whole labels only (default: replace OLD as a substring).",
)


def _engine(ctx: click.Context, dry_run: bool) -> RenameEngine:
    return RenameEngine(ctx.obj["root"], ctx.obj["cfg"], DsFolderAdapter(), dry_run=dry_run)


@click.command(name="rename-session", context_settings=CTX_SETTINGS, help="Rename a session label.")
@click.argument("subject")
@click.argument("old")
@click.argument("new")
@_full_option
@dry_run_option
@click.pass_context
def rename_session(
    ctx: click.Context, subject: str, old: str, new: str, full: bool, dry_run: bool
) -> None:
    echo_banner(f"rename session {old} -> {new}")
    engine = _engine(ctx, dry_run)
    with curate_errors():
        done = engine.rename_session(subject, old, new, full=full)
    echo_messages(engine.messages, dry_run=dry_run)
    if done:
        echo_success("Session renamed")


@click.command(name="rename-subject", context_settings=CTX_SETTINGS, help="Rename a subject label.")
@click.argument("old")
@click.argument("new")
@_full_option
@dry_run_option
@click.pass_context
def rename_subject(ctx: click.Context, old: str, new: str, full: bool, dry_run: bool) -> None:
    echo_banner(f"rename subject {old} -> {new}")
    engine = _engine(ctx, dry_run)
    with curate_errors():
        done = engine.rename_subject(old, new, full=full)
    echo_messages(engine.messages, dry_run=dry_run)
    if done:
        echo_success("Subject renamed")


@click.command(
    name="rename-subjects",
    context_settings=CTX_SETTINGS,
    help="Rename subjects listed in a two-column (old, new) CSV file.",
)
@click.argument("table", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@dry_run_option
@click.pass_context
def rename_subjects(ctx: click.Context, table: Path, dry_run: bool) -> None:
    echo_banner("rename subjects")
    engine = _engine(ctx, dry_run)
    with curate_errors():
        done = engine.rename_subjects_from_table(table)
    echo_messages(engine.messages, dry_run=dry_run)
    echo_success(f"{len(done)} subject(s) renamed")


@click.command(
    name="swap-sessions",
    context_settings=CTX_SETTINGS,
    help="Exchange two session labels of a subject.",
)
@click.argument("subject")
@click.argument("first")
@click.argument("second")
@dry_run_option
@click.pass_context
def swap_sessions(
    ctx: click.Context, subject: str, first: str, second: str, dry_run: bool
) -> None:
    echo_banner(f"swap sessions {first} <-> {second}")
    engine = _engine(ctx, dry_run)
    with curate_errors():
        engine.swap_sessions(subject, first, second)
    echo_messages(engine.messages, dry_run=dry_run)
    echo_success("Sessions swapped")
