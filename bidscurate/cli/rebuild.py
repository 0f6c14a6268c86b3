"""
Regenerate recording sidecars, scan indexes and the dataset description.

``--overrides`` accepts a JSON/YAML list of mappings or a TSV/CSV table with
one row per recording (``Name``, ``Task``, ``Acq``, ``Run``, ``Noise`` and
any recording-document field as columns).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Tuple

import click
import pandas as pd
import yaml

from ..pipelines.rebuild import RebuildOptions, ReconciliationEngine
from ..utils.display import echo_banner, echo_messages, echo_success
from ..utils.filters import split_commas
from ._common import CTX_SETTINGS, curate_errors, dry_run_option


def _load_overrides(path: Path) -> List[Dict[str, Any]]:
    """Read curator overrides from a structured file or a table."""
    if path.suffix.lower() in {".tsv", ".csv"}:
        sep = "\t" if path.suffix.lower() == ".tsv" else ","
        table = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False)
        return [
            {k: v for k, v in row.items() if v not in ("", "n/a")}
            for row in table.to_dict(orient="records")
        ]
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or []
    if isinstance(data, dict):
        data = data.get("recordings", [data])
    if not isinstance(data, list):
        raise click.ClickException(f"{path}: expected a list of recording overrides")
    return data


def _load_mapping(path: Path | None) -> Dict[str, Any] | None:
    if path is None:
        return None
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise click.ClickException(f"{path}: expected a mapping")
    return data


@click.command(
    name="rebuild",
    context_settings=CTX_SETTINGS,
    help="Rebuild sidecars and scan indexes from the raw recordings.",
)
@click.option(
    "--overrides",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Curator values per recording (JSON, YAML, TSV or CSV).",
)
@click.option(
    "--dataset-overrides",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Fields merged over dataset_description.json (JSON or YAML).",
)
@click.option(
    "--subject",
    help="Only rebuild this subject (label or sub-<label>).",
)
@click.option(
    "--keep",
    "keep_fields",
    multiple=True,
    callback=split_commas,
    metavar="<field>",
    help="Existing sidecar fields to keep ('*' keeps all; channels/events keep the tables).",
)
@click.option("--rename-files", is_flag=True, help="Allow renaming recordings to fix their names.")
@click.option("--ignore-mismatch", is_flag=True, help="Only warn when overrides and recordings differ.")
@click.option("--overwrite-times", is_flag=True, help="Replace scan times with the recordings' own.")
@click.option("--remove-empty", "remove_empty_fields", is_flag=True, help="Drop empty sidecar fields.")
@click.option("--force-noise-search", is_flag=True, help="Ignore stored empty-room associations.")
@click.option("--continue-from", help="Resume at this subject, or 'scans' for scan indexes only.")
@click.option(
    "--ignore-pattern",
    "ignore_patterns",
    multiple=True,
    help="Write these patterns to .bidsignore (repeatable).",
)
@dry_run_option
@click.pass_context
def cli(
    ctx: click.Context,
    overrides: Path | None,
    dataset_overrides: Path | None,
    subject: str | None,
    keep_fields: Tuple[str, ...],
    rename_files: bool,
    ignore_mismatch: bool,
    overwrite_times: bool,
    remove_empty_fields: bool,
    force_noise_search: bool,
    continue_from: str | None,
    ignore_patterns: Tuple[str, ...],
    dry_run: bool,
) -> None:
    """Entry-point for ``bidscurate-cli rebuild``."""
    root: Path = ctx.obj["root"]
    echo_banner("rebuild")
    scope = None
    if subject:
        scope = root / (subject if subject.startswith("sub-") else f"sub-{subject}")
        if not scope.is_dir():
            raise click.ClickException(f"Subject folder not found: {scope}")

    options = RebuildOptions(
        keep_fields=list(keep_fields),
        rename_files=rename_files,
        ignore_mismatch=ignore_mismatch,
        overwrite_times=overwrite_times,
        dry_run=dry_run,
        remove_empty_fields=remove_empty_fields,
        force_noise_search=force_noise_search,
        continue_from=continue_from,
        ignore_patterns=list(ignore_patterns) or None,
    )
    engine = ReconciliationEngine(root, options, cfg=ctx.obj["cfg"], scope=scope)
    with curate_errors():
        result = engine.run(
            _load_overrides(overrides) if overrides else (),
            _load_mapping(dataset_overrides),
        )
    echo_messages(result.messages, dry_run=dry_run)
    echo_success(
        f"{len(result.recordings)} recording(s), {len(result.messages.changes)} change(s), "
        f"{len(result.messages.warnings)} warning(s)"
    )
