"""Expose the project-wide Click group for the ``bidscurate-cli`` script.

The module:

* declares a single Click *group* called :pyfunc:`main`;
* wires common global flags (dataset root, YAML override, verbosity, etc.);
* sets up logging via :pyfunc:`bidscurate.utils.logging.setup_logging`;
* validates that the root is a dataset for commands that require one;
* loads the merged *curate.yaml* configuration;
* registers every sub-command located in sibling modules, imported lazily.
"""

from __future__ import annotations

import importlib
import os
from pathlib import Path
from typing import Any, Dict

import click

from bidscurate import __version__
from bidscurate.config import load_config
from bidscurate.pipelines.discovery import find_dataset_root
from bidscurate.utils.logging import setup_logging


class LazyGroup(click.Group):
    """Click group that imports sub-commands lazily."""

    def __init__(self, *args, **kwargs):
        self._lazy: dict[str, str] = {}
        super().__init__(*args, **kwargs)

    def set_lazy_command(self, name: str, target: str) -> None:
        """Register *name* to be imported from ``target`` on first use."""
        self._lazy[name] = target

    def list_commands(self, ctx):
        return sorted(set(super().list_commands(ctx)) | set(self._lazy))

    def get_command(self, ctx, cmd_name):  # noqa: D401 - Click signature
        """Resolve *cmd_name* from the eager map or import table."""
        cmd = super().get_command(ctx, cmd_name)
        if cmd is not None:
            return cmd
        target = self._lazy.get(cmd_name)
        if not target:
            return None
        module_name, attr = target.split(":", 1)
        module = importlib.import_module(module_name)
        cmd = getattr(module, attr)
        self.add_command(cmd, name=cmd_name)
        return cmd


# ─────────────────────────────────────────────────────────────────────────────
# Context settings shared by the entire Click hierarchy
# ─────────────────────────────────────────────────────────────────────────────
_CTX: Dict[str, Any] = dict(
    help_option_names=["-h", "--help"],
    show_default=True,
    max_content_width=120,
)

# Commands that run before (or without) a dataset description.
_NO_DATASET = {"init"}


@click.group(
    cls=LazyGroup,
    context_settings=_CTX,
    help="""\b
bidscurate-cli – keep an MEG BIDS dataset consistent while rebuilding,
renaming, merging and date-shifting it.
""",
)
@click.version_option(__version__)
@click.option(
    "-r",
    "--bids-root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Path to the dataset root (folder with dataset_description.json).",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    help="Explicit curate.yaml (overrides code/config/curate.yaml).",
)
@click.option("-v", "--verbose", is_flag=True, help="INFO-level console output.")
@click.option("--debug", is_flag=True, help="DEBUG console + JSON logfile.")
@click.option(
    "--save-logfile",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    help="Mirror console output into this plain-text file.",
)
@click.pass_context
def main(  # noqa: D401 – Click requires the callback to be named “main”.
    ctx: click.Context,
    bids_root: Path | None,
    config_path: Path | None,
    verbose: bool,
    debug: bool,
    save_logfile: Path | None,
) -> None:
    """Root command executed by *bidscurate-cli*.

    Args:
        ctx: Click runtime context that carries objects across sub-commands.
        bids_root: Dataset root; falls back to ``$BIDS_ROOT`` or the nearest dataset
            above the current directory.
        config_path: Explicit configuration file.
        verbose: Emit INFO-level messages on the console.
        debug: Emit DEBUG-level messages.
        save_logfile: Optional plain-text copy of the console output.

    Raises:
        click.ClickException: Missing dataset or invalid configuration.
    """
    root = (bids_root or Path(os.environ.get("BIDS_ROOT", "."))).resolve()
    subcmd = ctx.invoked_subcommand or ""
    if bids_root is None and subcmd not in _NO_DATASET:
        # Allow running from any folder inside the dataset.
        root = find_dataset_root(root) or root
    is_dataset = (root / "dataset_description.json").exists()

    if subcmd not in _NO_DATASET and not is_dataset:
        raise click.ClickException(
            f"{root} is not a BIDS dataset – create one first:\n\n"
            f"  bidscurate-cli init {root} --name \"MyStudy\"\n"
        )

    setup_logging(
        dataset_root=root if is_dataset else None,
        verbose=verbose,
        debug=debug,
        extra_text_log=save_logfile,
    )

    try:
        cfg = load_config(
            config_path=config_path,
            dataset_root=root if is_dataset else None,
        )
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    ctx.obj = {
        "root": root,
        "cfg": cfg,
        "verbose": verbose,
        "debug": debug,
    }


main.set_lazy_command("init", "bidscurate.cli.init:cli")
main.set_lazy_command("rebuild", "bidscurate.cli.rebuild:cli")
main.set_lazy_command("find-noise", "bidscurate.cli.noise:cli")
main.set_lazy_command("rename-session", "bidscurate.cli.rename:rename_session")
main.set_lazy_command("rename-subject", "bidscurate.cli.rename:rename_subject")
main.set_lazy_command("rename-subjects", "bidscurate.cli.rename:rename_subjects")
main.set_lazy_command("swap-sessions", "bidscurate.cli.rename:swap_sessions")
main.set_lazy_command("merge", "bidscurate.cli.merge:cli")
main.set_lazy_command("shift-dates", "bidscurate.cli.shift:cli")

# The public symbol exported by this module.  Required for ``python -m`` entry-points.
cli = main
__all__: list[str] = ["main"]
