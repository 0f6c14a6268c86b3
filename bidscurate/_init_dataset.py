"""
Dataset-initialisation helpers shared by the CLI and the unit tests.

:func:`initialise_dataset` writes a minimal *dataset_description.json*
rendered from the packaged Jinja2 template, and
:func:`update_dataset_description` changes selected fields of an existing
one while preserving unknown keys.  Both write through
:class:`~bidscurate.io.sidecars.SidecarStore` so the JSON layout matches
every other document of the dataset.
"""
from __future__ import annotations

import json
from importlib.resources import files
from pathlib import Path
from typing import Optional

import jinja2
import structlog

from bidscurate import __version__
from bidscurate.config.schema import ConfigSchema
from bidscurate.io.sidecars import SidecarStore, render_json

log = structlog.get_logger()

__all__ = ["initialise_dataset", "update_dataset_description"]

_TEMPLATE_NAME = "dataset_description.json.j2"


def _render_dataset_json(
    *,
    name: str,
    dataset_type: str = "raw",
    authors: Optional[list[str]] = None,
    license: Optional[str] = None,
    acknowledgements: str = "",
    how_to_ack: str = "",
    funding: Optional[list[str]] = None,
    dataset_doi: Optional[str] = None,
    bids_version: str = ConfigSchema().bids_version,
) -> str:
    """Return the *dataset_description.json* text for a new dataset."""
    source = files("bidscurate.templates").joinpath(_TEMPLATE_NAME).read_text(encoding="utf-8")
    raw_json = jinja2.Template(source).render(
        name=name,
        dataset_type=dataset_type,
        authors=authors or [],
        license=license,
        acknowledgements=acknowledgements,
        how_to_ack=how_to_ack,
        funding=funding or [],
        dataset_doi=dataset_doi,
        bids_version=bids_version,
        tool_version=__version__,
    )
    # Round-trip through json to guarantee valid, indented output.
    return render_json(json.loads(raw_json))


def initialise_dataset(
    root: Path,
    *,
    name: str,
    authors: Optional[list[str]] = None,
    license: Optional[str] = None,
    acknowledgements: str = "",
    how_to_ack: str = "",
    funding: Optional[list[str]] = None,
    dataset_doi: Optional[str] = None,
    dataset_type: str = "raw",
    bids_version: Optional[str] = None,
    force: bool = False,
) -> Path:
    """Create or overwrite *dataset_description.json* inside *root*.

    Args:
        root: Dataset root; created when missing.
        name: Study title (``Name``).
        authors: Optional author names.
        license: Optional license identifier.
        acknowledgements: Text for ``Acknowledgements``.
        how_to_ack: Text for ``HowToAcknowledge``.
        funding: Optional funding strings.
        dataset_doi: Optional DOI.
        dataset_type: ``raw`` or ``derivative``.
        bids_version: ``BIDSVersion``; configuration default when omitted.
        force: Overwrite an existing file.

    Returns:
        Path of the written file.

    Raises:
        FileExistsError: The file exists and *force* is ``False``.
    """
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    dd_json = root / "dataset_description.json"
    if dd_json.exists() and not force:
        raise FileExistsError(
            f"{dd_json} exists - pass '--force' (CLI) or force=True (API) to overwrite."
        )
    dd_json.write_text(
        _render_dataset_json(
            name=name,
            dataset_type=dataset_type,
            authors=authors,
            license=license,
            acknowledgements=acknowledgements,
            how_to_ack=how_to_ack,
            funding=funding,
            dataset_doi=dataset_doi,
            bids_version=bids_version or ConfigSchema().bids_version,
        ),
        encoding="utf-8",
    )
    log.info("Created %s", dd_json)
    return dd_json


def update_dataset_description(
    root: Path,
    *,
    name: str | None = None,
    authors: Optional[list[str]] = None,
    license: str | None = None,
    acknowledgements: str | None = None,
    how_to_ack: str | None = None,
    funding: Optional[list[str]] = None,
    dataset_doi: str | None = None,
    dataset_type: str | None = None,
    store: Optional[SidecarStore] = None,
) -> bool:
    """Update fields of an existing ``dataset_description.json``.

    Only explicitly provided parameters are changed; an empty list clears a
    list field.

    Returns:
        ``True`` when the file changed.

    Raises:
        FileNotFoundError: When ``dataset_description.json`` does not exist.
    """
    root = Path(root)
    dd_json = root / "dataset_description.json"
    if not dd_json.exists():
        raise FileNotFoundError(dd_json)

    data = SidecarStore.read_json(dd_json)
    for key, value in (
        ("Name", name),
        ("Authors", authors),
        ("License", license),
        ("Acknowledgements", acknowledgements),
        ("HowToAcknowledge", how_to_ack),
        ("Funding", funding),
        ("DatasetDOI", dataset_doi),
        ("DatasetType", dataset_type),
    ):
        if value is not None:
            data[key] = value

    store = store or SidecarStore(root)
    changed = store.write_json(dd_json, data)
    if changed:
        log.info("Updated %s", dd_json)
    return changed
