"""
Domain-level data models shared across I/O, pipeline and CLI layers.

The module provides:

* **`RecordingName`** – the canonical
  ``sub-<S>_ses-<Ses>_task-<T>[_acq-<A>][_run-<R>]_<suffix><ext>`` name, with
  a strict parser and a builder.  It is the only strongly-typed identifier;
  everything else in a sidecar is an opaque :data:`Document`.
* **`ScanRow`** – one row of a session scan index.
* Transient tree objects (`Recording`, `Session`, `Subject`, `Dataset`)
  rebuilt from the file system at the start of every operation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, field_validator

from bidscurate.utils.errors import RecordingNameError


# Sidecar values are loosely typed: strings, numbers, timestamps, nested
# mappings or lists.  Only the identifier fields are modelled explicitly.
Document = Dict[str, Any]

__all__ = [
    "Document",
    "RecordingName",
    "ScanRow",
    "Recording",
    "Session",
    "Subject",
    "Dataset",
    "is_noise_label",
]

# --------------------------------------------------------------------------- #
# 1 – Canonical recording names
# --------------------------------------------------------------------------- #
_LABEL_RE = re.compile(r"^[A-Za-z0-9]+$")
_ENTITY_ORDER = ("sub", "ses", "task", "acq", "run")
_REQUIRED = ("sub", "ses", "task")


def is_noise_label(
    subject: str, task: str, *, noise_subject: str = "emptyroom", noise_task: str = "noise"
) -> bool:
    """Return True when *subject*/*task* designate an empty-room recording."""
    return noise_subject.lower() in subject.lower() or task.lower().startswith(
        noise_task.lower()
    )


class RecordingName(BaseModel, frozen=True):
    """Composite recording key that renders to a canonical file name.

    Attributes:
        subject: Subject label without the ``sub-`` prefix.
        session: Session label without the ``ses-`` prefix.
        task: Task label.
        acq: Optional acquisition qualifier.
        run: Optional run index, kept as text so zero padding survives.
        suffix: Modality suffix (``meg``).
        extension: File or folder extension including the dot (``.ds``).
    """

    subject: str
    session: str
    task: str
    acq: Optional[str] = None
    run: Optional[str] = None
    suffix: str = "meg"
    extension: str = ".ds"

    @field_validator("subject", "session", "task", "acq", "run")
    @classmethod
    def _alphanumeric(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = str(v)
        if not _LABEL_RE.match(v):
            raise ValueError(f"label '{v}' must be alphanumeric")
        return v

    # ------------------------------------------------------------------ #
    @classmethod
    def parse(cls, name: str) -> "RecordingName":
        """Split a canonical file name into its entities.

        Args:
            name: File or folder name (no directories), e.g.
                ``sub-01_ses-01_task-rest_run-02_meg.ds``.

        Returns:
            The parsed :class:`RecordingName`.

        Raises:
            RecordingNameError: When an entity is unknown, repeated, out of
                order, or a required entity is missing.
        """
        if "/" in name or "\\" in name:
            raise RecordingNameError(f"Recording name must not contain a path: {name}")
        stem, dot, ext = name.partition(".")
        extension = dot + ext
        tokens = stem.split("_")
        if len(tokens) < 2 or "-" in tokens[-1]:
            raise RecordingNameError(f"Missing modality suffix in {name}")
        suffix = tokens[-1]

        values: Dict[str, str] = {}
        last = -1
        for token in tokens[:-1]:
            key, sep, value = token.partition("-")
            if not sep or not value:
                raise RecordingNameError(f"Malformed entity '{token}' in {name}")
            if key == "proc":
                raise RecordingNameError(
                    f"Processed recordings (proc-{value}) are not handled: {name}"
                )
            if key not in _ENTITY_ORDER:
                raise RecordingNameError(f"Unknown entity '{key}' in {name}")
            pos = _ENTITY_ORDER.index(key)
            if pos <= last:
                raise RecordingNameError(f"Entity '{key}' out of order in {name}")
            last = pos
            values[key] = value

        missing = [k for k in _REQUIRED if k not in values]
        if missing:
            raise RecordingNameError(
                f"Missing entit{'y' if len(missing) == 1 else 'ies'} "
                f"{', '.join(missing)} in {name}"
            )
        try:
            return cls(
                subject=values["sub"],
                session=values["ses"],
                task=values["task"],
                acq=values.get("acq"),
                run=values.get("run"),
                suffix=suffix,
                extension=extension,
            )
        except ValueError as exc:
            raise RecordingNameError(f"Invalid label in {name}: {exc}") from exc

    # ------------------------------------------------------------------ #
    @property
    def prefix(self) -> str:
        """Entity part of the name, shared by every recording sidecar."""
        parts = [f"sub-{self.subject}", f"ses-{self.session}", f"task-{self.task}"]
        if self.acq:
            parts.append(f"acq-{self.acq}")
        if self.run:
            parts.append(f"run-{self.run}")
        return "_".join(parts)

    @property
    def stem(self) -> str:
        return f"{self.prefix}_{self.suffix}"

    @property
    def name(self) -> str:
        return self.stem + self.extension

    def matches(self, text: str) -> bool:
        """Exact, case-sensitive comparison with a name given with or without extension."""
        return text in (self.name, self.stem)

    def replace(self, **changes: Any) -> "RecordingName":
        """Return a validated copy with *changes* applied."""
        data = self.model_dump()
        data.update(changes)
        return RecordingName(**data)

    def is_noise(self, noise_subject: str = "emptyroom", noise_task: str = "noise") -> bool:
        return is_noise_label(
            self.subject, self.task, noise_subject=noise_subject, noise_task=noise_task
        )

    def __str__(self) -> str:
        return self.name


class ScanRow(BaseModel, frozen=True):
    """One scan-index entry; *acq_time* is ``None`` for ``n/a``."""

    filename: str
    acq_time: Optional[datetime] = None


# --------------------------------------------------------------------------- #
# 2 – Transient tree objects
# --------------------------------------------------------------------------- #
@dataclass
class Recording:
    """A recording found on disk together with its current sidecars.

    Attributes:
        root: Dataset root the recording belongs to.
        path: Absolute path of the recording folder/file.
        name: Parsed canonical name.
        is_noise: Empty-room flag derived from the name.
        acq_time: Timestamp listed in the session scan index, if any.
        documents: Current JSON sidecars keyed by kind (``meg``,
            ``coordsystem``).
        tables: Current TSV sidecars keyed by kind (``channels``, ``events``).
    """

    root: Path
    path: Path
    name: RecordingName
    is_noise: bool = False
    acq_time: Optional[datetime] = None
    documents: Dict[str, Document] = field(default_factory=dict)
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)

    @property
    def folder(self) -> Path:
        return self.path.parent

    @property
    def session_dir(self) -> Path:
        return self.path.parent.parent

    @property
    def scans_file(self) -> Path:
        return self.session_dir / f"sub-{self.name.subject}_ses-{self.name.session}_scans.tsv"

    @property
    def scans_filename(self) -> str:
        """Name used in the ``filename`` column of the scan index."""
        return self.path.relative_to(self.session_dir).as_posix()

    @property
    def relative(self) -> str:
        """Root-relative POSIX path, as stored in cross-references."""
        return self.path.relative_to(self.root).as_posix()

    def sidecar(self, kind: str, ext: str) -> Path:
        """Path of the recording-level sidecar ``<prefix>_<kind><ext>``."""
        return self.folder / f"{self.name.prefix}_{kind}{ext}"

    @property
    def coordsystem_path(self) -> Path:
        return self.folder / f"sub-{self.name.subject}_ses-{self.name.session}_coordsystem.json"


@dataclass
class Session:
    """One ``ses-*`` folder with the earliest time of its scan index."""

    subject: str
    label: str
    path: Path
    date: Optional[datetime] = None

    @property
    def scans_file(self) -> Path:
        return self.path / f"sub-{self.subject}_ses-{self.label}_scans.tsv"


@dataclass
class Subject:
    label: str
    path: Path
    sessions: List[Session] = field(default_factory=list)


@dataclass
class Dataset:
    """Dataset-level state: description document and ignore list."""

    root: Path
    description: Document = field(default_factory=dict)
    ignore: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return str(self.description.get("Name") or self.root.name)
