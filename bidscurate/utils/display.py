"""Utility functions to print formatted CLI messages for progress updates."""

from __future__ import annotations

import click

from bidscurate.utils.messages import CHANGE, WARNING, MessageLog

__all__ = ["echo_banner", "echo_success", "echo_messages"]


def echo_banner(text: str) -> None:
    """Print a colourful banner announcing a processing step.

    Args:
        text: Banner text.
    """
    click.secho(f"\n=== {text} ===", fg="cyan")


def echo_success(text: str) -> None:
    """Echo a green success message prefixed with a tick.

    Args:
        text: Message to display.
    """
    click.secho(f"✓ {text}", fg="green")


def echo_messages(messages: MessageLog, *, dry_run: bool = False) -> None:
    """Echo warnings and changes of a run; informational entries stay in the log."""
    prefix = "[dry run] " if dry_run else ""
    for msg in messages:
        if msg.level == WARNING:
            click.secho(f"  ! {msg.text}", fg="yellow")
        elif msg.level == CHANGE:
            click.echo(f"  • {prefix}{msg.text}")
