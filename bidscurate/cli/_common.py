"""Helpers shared by the sub-command modules."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

import click

from bidscurate.utils.errors import CurateError

__all__ = ["CTX_SETTINGS", "curate_errors", "dry_run_option"]

CTX_SETTINGS: Dict[str, Any] = dict(
    help_option_names=["-h", "--help"], show_default=True, max_content_width=120
)

dry_run_option = click.option(
    "-n",
    "--dry-run",
    is_flag=True,
    help="Report every planned change without touching the dataset.",
)


@contextmanager
def curate_errors() -> Iterator[None]:
    """Turn usage and consistency errors into clean Click failures."""
    try:
        yield
    except CurateError as exc:
        raise click.ClickException(str(exc)) from exc
