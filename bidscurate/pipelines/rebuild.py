"""
Regenerate every derived sidecar of a dataset from raw sources.

Each field of a recording document is resolved with three-tier precedence:

    curator override  >  existing sidecar value (keep-fields)  >  raw source

Identifying entities come from the recording name and only change when
renaming is allowed, either because an override asks for it or because the
naming policy (empty-room task, resting-state synonyms, acquisition
qualifier) normalises them.  Scan indexes are then reconciled with the
recordings found on disk, and the dataset description is refreshed.

A dry run walks the exact same code path; only the final disk writes and
moves are skipped, so the message stream is the review of a real run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.raw import DsFolderAdapter, RawSourceAdapter
from bidscurate.io.sidecars import (
    SidecarStore,
    overwrite_top_level,
    scans_frame,
    trim_empty,
    update_nested,
)
from bidscurate.models import Document, Recording, RecordingName
from bidscurate.pipelines.discovery import list_recordings, load_dataset
from bidscurate.pipelines.ledger import ShiftLedger
from bidscurate.pipelines.noise import ASSOCIATION_FIELD, NoiseAssociator, NoiseMatch
from bidscurate.pipelines.rename import RenameEngine
from bidscurate.utils.errors import UsageError
from bidscurate.utils.messages import MessageLog
from bidscurate.utils.timestamps import shift_days, within

log = structlog.get_logger()

__all__ = [
    "RecordingOverride",
    "RebuildOptions",
    "RebuildResult",
    "ReconciliationEngine",
    "normalize_name",
]

KEEP_ALL = "*"


# --------------------------------------------------------------------------- #
# 1.  Inputs                                                                  #
# --------------------------------------------------------------------------- #
class RecordingOverride(BaseModel):
    """Curator-supplied values for one recording.

    Matching uses ``Name`` (canonical name, with or without extension) or,
    when absent, the name built from ``Subject``/``Session``/``Task``/
    ``Acq``/``Run``.  Unknown keys are recording-document fields.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = Field(None, alias="Name")
    subject: Optional[str] = Field(None, alias="Subject")
    session: Optional[str] = Field(None, alias="Session")
    task: Optional[str] = Field(None, alias="Task")
    acq: Optional[str] = Field(None, alias="Acq")
    run: Optional[str] = Field(None, alias="Run")
    noise: Optional[str] = Field(None, alias="Noise")
    meg: Dict[str, Any] = Field(default_factory=dict, alias="Meg")
    coordsystem: Dict[str, Any] = Field(default_factory=dict, alias="CoordSystem")

    @field_validator("subject", "session", "task", "acq", "run", mode="before")
    @classmethod
    def _as_text(cls, v):
        return None if v is None else str(v)

    def key(self, cfg: ConfigSchema) -> str:
        """Canonical name this override applies to.

        Raises:
            UsageError: Missing identifiers or a path separator in ``Name``.
        """
        if self.name is not None:
            if "/" in self.name or "\\" in self.name:
                raise UsageError(
                    f"Override Name must be a recording name, not a path: {self.name}"
                )
            return self.name
        if not (self.subject and self.session and self.task):
            raise UsageError("Override needs a Name, or Subject, Session and Task")
        try:
            return RecordingName(
                subject=self.subject,
                session=self.session,
                task=self.task,
                acq=self.acq,
                run=self.run,
                suffix=cfg.layout.suffix,
                extension=cfg.layout.extension,
            ).stem
        except ValueError as exc:
            raise UsageError(f"Invalid override identifiers: {exc}") from exc

    def document_fields(self) -> Document:
        """Recording-document overrides (``Meg`` plus unknown top-level keys)."""
        out = dict(self.model_extra or {})
        out.update(self.meg)
        return out


class RebuildOptions(BaseModel):
    """Switches of :class:`ReconciliationEngine`.

    Attributes:
        keep_fields: Existing sidecar fields that survive the rebuild; ``*``
            keeps all, ``channels``/``events`` keep the existing tables.
        rename_files: Allow identifier changes to rename recordings.
        ignore_mismatch: Downgrade override/recording mismatches to warnings.
        overwrite_times: Replace existing scan-index timestamps with the
            raw-source ones.
        dry_run: Report without writing.
        remove_empty_fields: Drop empty values from regenerated documents.
        force_noise_search: Ignore stored empty-room associations.
        continue_from: Subject label to resume from, or ``"scans"`` to only
            reconcile scan indexes and the dataset description.
        ignore_patterns: New content of ``.bidsignore`` (``None`` leaves it).
    """

    keep_fields: List[str] = Field(default_factory=list)
    rename_files: bool = False
    ignore_mismatch: bool = False
    overwrite_times: bool = False
    dry_run: bool = False
    remove_empty_fields: bool = False
    force_noise_search: bool = False
    continue_from: Optional[str] = None
    ignore_patterns: Optional[List[str]] = None


@dataclass
class RebuildResult:
    recordings: List[Recording]
    messages: MessageLog
    renamed: List[Tuple[str, str]] = field(default_factory=list)
    noise: Dict[str, NoiseMatch] = field(default_factory=dict)


# --------------------------------------------------------------------------- #
# 2.  Naming policy                                                           #
# --------------------------------------------------------------------------- #
def normalize_name(name: RecordingName, cfg: ConfigSchema) -> Tuple[RecordingName, List[str]]:
    """Apply the naming policy to *name*.

    Returns:
        The normalised name and one note per rule that fired.
    """
    notes: List[str] = []
    task, acq = name.task, name.acq

    if name.is_noise(cfg.noise.subject, cfg.noise.task):
        if task != cfg.noise.task:
            notes.append(f"Empty-room recording {name} should have task '{cfg.noise.task}'")
            task = cfg.noise.task
    elif any(syn.lower() in task.lower() for syn in cfg.naming.rest_synonyms):
        stripped = task
        for syn in cfg.naming.ordered_synonyms:
            stripped = re.sub(re.escape(syn), "", stripped, flags=re.IGNORECASE)
        candidate = cfg.naming.rest_prefix + stripped
        if candidate != task:
            notes.append(
                f"Likely non-standard resting-state task name '{task}' in {name}; "
                f"expected '{candidate}'"
            )
            task = candidate

    if acq and acq not in cfg.naming.allowed_acq:
        notes.append(f"Unexpected acquisition label '{acq}' in {name}")
        acq = None

    return name.replace(task=task, acq=acq), notes


# --------------------------------------------------------------------------- #
# 3.  Engine                                                                  #
# --------------------------------------------------------------------------- #
class ReconciliationEngine:
    """Rebuild sidecars and scan indexes of a dataset (or one subject of it).

    Args:
        root: Dataset root.
        options: Behaviour switches.
        cfg: Configuration; packaged defaults when omitted.
        adapter: Raw-source adapter.
        scope: Sub-folder to process (default: whole dataset).
    """

    def __init__(
        self,
        root: Path,
        options: Optional[RebuildOptions] = None,
        *,
        cfg: Optional[ConfigSchema] = None,
        adapter: Optional[RawSourceAdapter] = None,
        scope: Optional[Path] = None,
    ) -> None:
        self.root = Path(root)
        self.options = options or RebuildOptions()
        self.cfg = cfg or ConfigSchema()
        self.adapter = adapter or DsFolderAdapter()
        self.scope = Path(scope) if scope else self.root
        self.messages = MessageLog()
        self.store = SidecarStore(self.root, messages=self.messages, dry_run=self.options.dry_run)
        self.renamer = RenameEngine(
            self.root,
            self.cfg,
            self.adapter,
            messages=self.messages,
            dry_run=self.options.dry_run,
        )
        self._scans: Dict[Path, pd.DataFrame] = {}
        self._pool: List[Recording] = []
        self._keep = {k.lower() for k in self.options.keep_fields}

    # ------------------------------------------------------------------ #
    # Override matching
    # ------------------------------------------------------------------ #
    def _match_overrides(
        self,
        overrides: Iterable[RecordingOverride | Mapping[str, Any]],
        recordings: List[Recording],
    ) -> Dict[int, RecordingOverride]:
        """Pair overrides with recordings by exact canonical name.

        Raises:
            UsageError: Bad override, duplicate key, or (unless mismatches
                are ignored) an override matching nothing / a recording
                without override.
        """
        parsed = [
            o if isinstance(o, RecordingOverride) else RecordingOverride.model_validate(o)
            for o in overrides
        ]
        if not parsed:
            return {}
        keyed: Dict[str, RecordingOverride] = {}
        for ov in parsed:
            key = ov.key(self.cfg)
            if key in keyed:
                raise UsageError(f"Two overrides for {key}")
            keyed[key] = ov

        matched: Dict[int, RecordingOverride] = {}
        used = set()
        for idx, rec in enumerate(recordings):
            for key, ov in keyed.items():
                if rec.name.matches(key):
                    matched[idx] = ov
                    used.add(key)
                    break

        problems = [f"Override {k} matches no recording" for k in keyed if k not in used]
        problems += [
            f"Recording {rec.name} has no override"
            for idx, rec in enumerate(recordings)
            if idx not in matched
        ]
        if problems:
            if not self.options.ignore_mismatch:
                raise UsageError(
                    "Overrides do not match the recordings:\n  " + "\n  ".join(problems)
                )
            for text in problems:
                self.messages.warn(text)
        return matched

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _kept(self, doc: Document) -> Document:
        if KEEP_ALL in self._keep:
            return dict(doc)
        return {k: v for k, v in doc.items() if k.lower() in self._keep}

    def _scans_for(self, path: Path) -> pd.DataFrame:
        if path not in self._scans:
            self._scans[path] = SidecarStore.read_scans(path)
        return self._scans[path]

    def _requested_name(self, rec: Recording, ov: Optional[RecordingOverride]) -> RecordingName:
        if ov is None:
            return rec.name
        changes: Dict[str, Any] = {}
        for entity in ("subject", "session"):
            value = getattr(ov, entity)
            if value is not None and value != getattr(rec.name, entity):
                self.messages.warn(
                    f"Override changes {entity} of {rec.name} to '{value}'; use the "
                    f"{entity} rename command instead. Ignored."
                )
        for entity in ("task", "acq", "run"):
            value = getattr(ov, entity)
            if value is not None:
                changes[entity] = value or None
        try:
            return rec.name.replace(**changes) if changes else rec.name
        except ValueError as exc:
            raise UsageError(f"Invalid override for {rec.name}: {exc}") from exc

    # ------------------------------------------------------------------ #
    # Per-recording steps
    # ------------------------------------------------------------------ #
    def _apply_naming(
        self, rec: Recording, ov: Optional[RecordingOverride], result: RebuildResult
    ) -> Path:
        """Rename *rec* when needed and allowed; return the path to read raw data from."""
        requested = self._requested_name(rec, ov)
        target, notes = normalize_name(requested, self.cfg)
        if target == rec.name:
            if notes and not self.options.rename_files:
                for note in notes:
                    self.messages.warn(note, recording=str(rec.name))
            return rec.path

        if not self.options.rename_files:
            for note in notes:
                self.messages.warn(note, recording=str(rec.name))
            self.messages.warn(
                f"{rec.name} should be renamed to {target.name}; renaming is disabled.",
                recording=str(rec.name),
            )
            return rec.path

        for note in notes:
            self.messages.info(note, recording=str(rec.name))
        scans = self._scans_for(rec.scans_file)
        read_path, old_relative = rec.path, rec.relative
        new_path = self.renamer.rename_recording(rec, target, scans=scans)
        if not self.options.dry_run:
            read_path = new_path
        result.renamed.append((rec.name.name, target.name))
        rec.path, rec.name = new_path, target
        for other in self._pool:
            meg = other.documents.get("meg") or {}
            if meg.get(ASSOCIATION_FIELD) == old_relative:
                meg[ASSOCIATION_FIELD] = rec.relative
        return read_path

    def _write_recording_files(
        self,
        rec: Recording,
        read_path: Path,
        ov: Optional[RecordingOverride],
        result: RebuildResult,
        associator: NoiseAssociator,
    ):
        raw = self.adapter.extract_metadata(read_path)
        raw_time = self.adapter.read_timestamp(read_path)
        if raw_time is None:
            self.messages.warn(f"No acquisition time in {rec.name}", recording=str(rec.name))

        # recording document
        existing = rec.documents.get("meg") or {}
        meg = overwrite_top_level(raw.recording, self._kept(existing))
        if ov is not None:
            meg = overwrite_top_level(meg, ov.document_fields())
        meg["TaskName"] = rec.name.task
        if rec.is_noise:
            associator.associate(rec, existing=existing.get(ASSOCIATION_FIELD))
            meg.pop(ASSOCIATION_FIELD, None)
        else:
            match = associator.associate(
                rec,
                provided=ov.noise if ov is not None else None,
                existing=existing.get(ASSOCIATION_FIELD),
                force=self.options.force_noise_search,
                when=raw_time,
            )
            result.noise[rec.name.name] = match
            if match.path:
                meg[ASSOCIATION_FIELD] = match.path
            else:
                meg.pop(ASSOCIATION_FIELD, None)
        if self.options.remove_empty_fields:
            meg = trim_empty(meg)
        self.store.write_json(rec.sidecar(self.cfg.layout.suffix, ".json"), meg)

        # coordinate-system document, shared by the session
        if not rec.is_noise:
            existing_coord = rec.documents.get("coordsystem") or {}
            coord = overwrite_top_level(raw.coordsystem, self._kept(existing_coord))
            if ov is not None:
                coord = overwrite_top_level(coord, ov.coordsystem)
            if self.options.remove_empty_fields:
                coord = trim_empty(coord)
            if coord:
                self.store.write_json(rec.coordsystem_path, coord)
            elif not existing_coord:
                self.messages.warn(
                    f"No coordinate-system information for {rec.name}", recording=str(rec.name)
                )

        # tables
        for kind, generated in (("channels", raw.channels), ("events", raw.events)):
            current = rec.tables.get(kind)
            if current is not None and (kind in self._keep or KEEP_ALL in self._keep):
                table = current
            else:
                table = generated if generated is not None else current
            if table is None:
                if kind == "channels":
                    self.messages.warn(f"No channel table for {rec.name}", recording=str(rec.name))
                continue
            self.store.write_table(rec.sidecar(kind, ".tsv"), table)

        return raw_time

    def _update_scan_row(self, rec: Recording, raw_time, shift: Optional[int]) -> None:
        scans = self._scans_for(rec.scans_file)
        filename = rec.scans_filename
        hit = scans["filename"] == filename
        tolerance = self.cfg.scans.tolerance
        if hit.any():
            idx = scans.index[hit][0]
            stored = scans.at[idx, "acq_time"]
            if stored is not None and pd.isna(stored):
                stored = None
            if self.options.overwrite_times and raw_time is not None:
                scans.at[idx, "acq_time"] = raw_time
                stored = raw_time
            elif raw_time is not None and stored is not None and not within(stored, raw_time, tolerance):
                if shift is None or not within(stored, shift_days(raw_time, shift), tolerance):
                    self.messages.warn(
                        f"Scan time {stored} of {rec.name} differs from the recording ({raw_time}).",
                        recording=str(rec.name),
                    )
            elif stored is None and raw_time is not None:
                scans.at[idx, "acq_time"] = raw_time
                stored = raw_time
            rec.acq_time = stored
        else:
            self._scans[rec.scans_file] = pd.concat(
                [scans, scans_frame([(filename, raw_time)])], ignore_index=True
            )
            rec.acq_time = raw_time
            self.messages.info(f"Add scan row {filename} to {self.store.rel(rec.scans_file)}")

    # ------------------------------------------------------------------ #
    # Session / dataset steps
    # ------------------------------------------------------------------ #
    def _scans_files(self) -> List[Path]:
        """Scan indexes under the scope at ``sub-*/ses-*/``."""
        found = []
        for path in self.root.glob("sub-*/ses-*/*_scans.tsv"):
            if path.is_file() and (self.scope == self.root or self.scope in path.parents):
                found.append(path)
        return found

    def _reconcile_scans(self, recordings: List[Recording]) -> None:
        modality = self.cfg.layout.modality + "/"
        present: Dict[Path, set] = {}
        for rec in recordings:
            present.setdefault(rec.scans_file, set()).add(rec.scans_filename)

        for path in sorted(set(self._scans) | set(self._scans_files()) | set(present)):
            session_dir = path.parent
            expected = f"{session_dir.parent.name}_{session_dir.name}_scans.tsv"
            if path.name != expected:
                self.messages.warn(f"Extra scans file {self.store.rel(path)} (kept).")
                continue
            scans = self._scans_for(path)
            rows = present.get(path, set())
            for filename in scans["filename"]:
                if not str(filename).startswith(modality) or filename in rows:
                    continue
                if not (session_dir / filename).exists():
                    self.messages.warn(
                        f"Scan row {filename} in {self.store.rel(path)} has no recording (kept)."
                    )
            self.store.write_scans(path, scans)

    def _reconcile_dataset(self, dataset_overrides: Optional[Document]) -> None:
        dataset = load_dataset(self.root)
        description = update_nested(dataset.description, dataset_overrides or {})
        if not description.get("Name"):
            description["Name"] = self.root.name
        if not description.get("BIDSVersion"):
            description["BIDSVersion"] = self.cfg.bids_version
        if not description.get("DatasetType"):
            description["DatasetType"] = "raw"
        if self.options.remove_empty_fields:
            description = trim_empty(description)
        self.store.write_json(self.root / "dataset_description.json", description)
        if self.options.ignore_patterns is not None:
            self.store.write_ignore(self.root / ".bidsignore", self.options.ignore_patterns)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def run(
        self,
        overrides: Iterable[RecordingOverride | Mapping[str, Any]] = (),
        dataset_overrides: Optional[Document] = None,
    ) -> RebuildResult:
        """Rebuild everything under the scope.

        Args:
            overrides: Curator values per recording.
            dataset_overrides: Fields merged over ``dataset_description.json``.

        Returns:
            :class:`RebuildResult` with the processed recordings and messages.

        Raises:
            UsageError: Override problems or an unknown ``continue_from``.
            ConsistencyError: A rename target already exists.
        """
        recordings = list_recordings(
            self.root, self.cfg, scope=self.scope, messages=self.messages, noise_first=True
        )
        pool = self._pool = list(recordings)
        if self.scope != self.root:
            central = self.root / f"sub-{self.cfg.noise.subject}"
            if central.is_dir() and central != self.scope and central not in self.scope.parents:
                pool += list_recordings(self.root, self.cfg, scope=central, messages=self.messages)
        matched = self._match_overrides(overrides, recordings)
        result = RebuildResult(recordings=recordings, messages=self.messages)

        start = 0
        cont = self.options.continue_from
        if cont == "scans":
            start = len(recordings)
        elif cont:
            label = cont[len("sub-"):] if cont.startswith("sub-") else cont
            hits = [i for i, r in enumerate(recordings) if r.name.subject == label]
            if not hits:
                raise UsageError(f"continue_from: no recording of subject {label}")
            start = hits[0]

        associator = NoiseAssociator(
            self.root, self.cfg, self.adapter, candidates=lambda: pool, messages=self.messages
        )
        ledger = ShiftLedger(ShiftLedger.path_for(self.root, self.cfg)).load()

        for idx in range(start, len(recordings)):
            rec = recordings[idx]
            ov = matched.get(idx)
            log.debug("[rebuild] %s", rec.name)
            read_path = self._apply_naming(rec, ov, result)
            raw_time = self._write_recording_files(rec, read_path, ov, result, associator)
            self._update_scan_row(rec, raw_time, ledger.shift_of(f"sub-{rec.name.subject}"))

        self._reconcile_scans(recordings)
        self._reconcile_dataset(dataset_overrides)
        log.info("[rebuild] %d recording(s) processed under %s", len(recordings) - start, self.scope)
        return result
