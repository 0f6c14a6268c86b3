"""
Raw-source adapters.

Pipelines never parse recording formats themselves; they talk to an object
implementing :class:`RawSourceAdapter`:

* ``read_timestamp`` – acquisition time embedded in the recording;
* ``rewrite_identifier_and_date`` – move the recording to a new canonical
  name, rewriting the name wherever the format embeds it, and optionally
  replace the embedded acquisition date (time-of-day preserved);
* ``extract_metadata`` – sidecar fields derivable from the raw data.

:class:`DsFolderAdapter` handles recordings stored as ``<stem>.ds`` folders
whose acquisition header is a JSON member ``<stem>.header.json``.  Members
whose name starts with the stem are renamed with the folder, and text
members (history, markers, classes) have the stem rewritten in place.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Protocol, Tuple, runtime_checkable

import pandas as pd
import structlog

from bidscurate.models import Document
from bidscurate.utils.errors import ConsistencyError
from bidscurate.utils.timestamps import format_acq_time, parse_acq_time, replace_date

log = structlog.get_logger()

__all__ = ["RawMetadata", "RawSourceAdapter", "DsFolderAdapter"]


@dataclass
class RawMetadata:
    """Fields extracted from a raw recording, lowest precedence tier."""

    recording: Document = field(default_factory=dict)
    coordsystem: Document = field(default_factory=dict)
    channels: Optional[pd.DataFrame] = None
    events: Optional[pd.DataFrame] = None


@runtime_checkable
class RawSourceAdapter(Protocol):
    """Interface the pipelines need from a recording format."""

    extension: str

    def read_timestamp(self, path: Path) -> Optional[datetime]: ...

    def rewrite_identifier_and_date(
        self,
        path: Path,
        new_name: Optional[str] = None,
        new_date: Optional[date] = None,
        *,
        dry_run: bool = False,
    ) -> Path: ...

    def extract_metadata(self, path: Path) -> RawMetadata: ...


class DsFolderAdapter:
    """Adapter for ``.ds`` recording folders with a JSON acquisition header.

    Header keys: ``AcquisitionDateTime`` (``YYYY-MM-DDTHH:MM:SS``),
    ``RunName`` (the folder stem), and the optional sidecar seeds
    ``Recording``, ``CoordSystem``, ``Channels`` and ``Events``.
    """

    extension = ".ds"
    header_suffix = ".header.json"
    text_suffixes: Tuple[str, ...] = (".hist", ".mrk", ".cls", ".txt", ".json")

    # ------------------------------------------------------------------ #
    def header_path(self, path: Path) -> Path:
        return path / f"{path.stem}{self.header_suffix}"

    def _read_header(self, path: Path) -> Document:
        header = self.header_path(path)
        if not header.is_file():
            return {}
        with header.open(encoding="utf-8") as fh:
            return json.load(fh)

    # ------------------------------------------------------------------ #
    def read_timestamp(self, path: Path) -> Optional[datetime]:
        """Return the embedded acquisition time, *None* without a header."""
        return parse_acq_time(self._read_header(path).get("AcquisitionDateTime"))

    def extract_metadata(self, path: Path) -> RawMetadata:
        header = self._read_header(path)
        if not header:
            log.debug("[raw] no acquisition header in %s", path)
        channels = header.get("Channels")
        events = header.get("Events")
        return RawMetadata(
            recording=dict(header.get("Recording") or {}),
            coordsystem=dict(header.get("CoordSystem") or {}),
            channels=pd.DataFrame(channels).astype(str) if channels else None,
            events=pd.DataFrame(events).astype(str) if events else None,
        )

    # ------------------------------------------------------------------ #
    def rewrite_identifier_and_date(
        self,
        path: Path,
        new_name: Optional[str] = None,
        new_date: Optional[date] = None,
        *,
        dry_run: bool = False,
    ) -> Path:
        """Rename the recording folder and/or replace its acquisition date.

        Args:
            path: Current recording folder.
            new_name: New folder name (same parent); *None* keeps the name.
            new_date: New calendar date; the time-of-day is kept.
            dry_run: Return the would-be path without touching the disk.

        Returns:
            Path of the recording after the operation.

        Raises:
            ConsistencyError: When the target folder already exists.
        """
        target = path
        if new_name and new_name != path.name:
            target = path.with_name(new_name)
            if target.exists():
                raise ConsistencyError(f"Cannot rename {path.name}: {target} exists")
            if not dry_run:
                self._rename_folder(path, target)
        if new_date is not None and not dry_run:
            self._rewrite_date(target, new_date)
        return target

    def _rename_folder(self, src: Path, dst: Path) -> None:
        old_stem, new_stem = src.stem, dst.stem
        src.rename(dst)
        for member in sorted(dst.iterdir()):
            if member.name.startswith(old_stem):
                member.rename(dst / (new_stem + member.name[len(old_stem):]))
        for member in sorted(dst.iterdir()):
            if not member.is_file() or not member.name.endswith(self.text_suffixes):
                continue
            text = member.read_text(encoding="utf-8")
            if old_stem in text:
                member.write_text(text.replace(old_stem, new_stem), encoding="utf-8")
        log.debug("[raw] renamed %s -> %s", src.name, dst.name)

    def _rewrite_date(self, path: Path, new_date: date) -> None:
        header = self._read_header(path)
        current = parse_acq_time(header.get("AcquisitionDateTime"))
        if current is None:
            log.warning("[raw] %s has no acquisition time to rewrite", path.name)
            return
        header["AcquisitionDateTime"] = format_acq_time(replace_date(current, new_date))
        self.header_path(path).write_text(
            json.dumps(header, indent=2) + "\n", encoding="utf-8"
        )
        log.debug("[raw] %s date set to %s", path.name, new_date.isoformat())
