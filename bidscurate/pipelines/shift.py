"""Shift acquisition dates per subject for anonymisation.

Every subject gets one constant shift, in whole days, that moves its
earliest real scan to the target epoch (2000-01-01 12:00 by default).  Real
dates stay recoverable from two places: the ledger
(``sourcedata/date_shifting.tsv``) and a copy of each scan index taken under
``sourcedata/`` before its first shift.

A run is idempotent: scan-index rows already equal to ``backup + shift`` and
recordings whose embedded date is within an hour of their row are left
alone, so re-running on an unchanged tree writes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import pandas as pd
import structlog

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.raw import DsFolderAdapter, RawSourceAdapter
from bidscurate.io.sidecars import SidecarStore, merge_scans, scans_frame
from bidscurate.pipelines.discovery import scans_lookup
from bidscurate.pipelines.ledger import ShiftLedger, write_scans_description
from bidscurate.pipelines.rename import clean_label
from bidscurate.utils.errors import ConsistencyError, UsageError
from bidscurate.utils.messages import MessageLog
from bidscurate.utils.timestamps import shift_days

log = structlog.get_logger()

__all__ = ["DateShifter", "ShiftResult", "ShiftLedger", "compute_shift"]

_YEAR = timedelta(days=365)
_EMBEDDED_TOLERANCE = timedelta(hours=1)


def compute_shift(target: datetime, real: datetime) -> int:
    """Whole days to add to *real* so that it lands on the day of *target*."""
    return int(round((target - real) / timedelta(days=1)))


@dataclass
class ShiftResult:
    messages: MessageLog
    ledger: pd.DataFrame
    updated_scans: List[str] = field(default_factory=list)
    updated_recordings: List[str] = field(default_factory=list)


class DateShifter:
    """Apply (or verify) the per-subject date shift of a dataset.

    Args:
        root: Dataset root (must hold ``dataset_description.json``).
        cfg: Configuration (target epoch, backup folder, ledger name).
        adapter: Raw-source adapter reading and rewriting embedded dates.
        trust_scans: Only check embedded dates of recordings whose scan-index
            row had to change.
        dry_run: Report without writing.
    """

    def __init__(
        self,
        root: Path,
        cfg: Optional[ConfigSchema] = None,
        adapter: Optional[RawSourceAdapter] = None,
        *,
        trust_scans: bool = False,
        dry_run: bool = False,
    ) -> None:
        self.root = Path(root)
        if not (self.root / "dataset_description.json").is_file():
            raise UsageError(
                f"{self.root} is not a dataset root: missing dataset_description.json"
            )
        self.cfg = cfg or ConfigSchema()
        self.adapter = adapter or DsFolderAdapter()
        self.trust_scans = trust_scans
        self.dry_run = dry_run
        self.messages = MessageLog()
        self.store = SidecarStore(self.root, messages=self.messages, dry_run=dry_run)

    # ------------------------------------------------------------------ #
    def _scans_files(self, subjects: Optional[Iterable[str]]) -> List[Path]:
        if not subjects:
            return sorted(self.root.glob("sub-*/**/*_scans.tsv"))
        files: List[Path] = []
        for subject in subjects:
            sub_dir = self.root / f"sub-{clean_label(subject, 'sub')}"
            if not sub_dir.is_dir():
                raise UsageError(f"Subject folder not found: {sub_dir}")
            files += sorted(sub_dir.glob("**/*_scans.tsv"))
        return files

    def _backup_path(self, scans_file: Path) -> Path:
        return self.root / self.cfg.shift.backup_folder / scans_file.relative_to(self.root)

    def _first_scan(self, scans: pd.DataFrame, scans_file: Path) -> Tuple[str, datetime]:
        """Earliest plausible real scan of an unshifted index.

        Raises:
            ConsistencyError: Dates look shifted already, or are implausible.
        """
        target = self.cfg.shift.target_epoch
        dated = [
            (fn, t) for fn, t in zip(scans["filename"], scans["acq_time"]) if t is not None and not pd.isna(t)
        ]
        dated.sort(key=lambda item: item[1])
        if not dated:
            raise ConsistencyError(f"No acquisition time in {self.store.rel(scans_file)}")
        first = dated[0]
        if first[1] < target + _YEAR:
            if first[1] < target - _YEAR and len(dated) > 1:
                # probably a default header date; use the next scan
                first = dated[1]
                if first[1] < target + _YEAR:
                    raise ConsistencyError(
                        f"Implausible acquisition dates in {self.store.rel(scans_file)}"
                    )
            else:
                raise ConsistencyError(
                    f"{self.store.rel(scans_file)} is missing from the ledger and seems "
                    "already shifted"
                )
        return str(first[0]), first[1]

    # ------------------------------------------------------------------ #
    def _shift_file(self, scans_file: Path, ledger: ShiftLedger, result: ShiftResult) -> None:
        backup = self._backup_path(scans_file)
        if not backup.is_file():
            self.store.copy(scans_file, backup)
        participant = scans_file.name.split("_")[0]

        scans = SidecarStore.read_scans(scans_file)
        if scans.empty:
            self.messages.warn(f"Empty scans table {self.store.rel(scans_file)}")
            return
        real_scans = SidecarStore.read_scans(backup if backup.is_file() else scans_file)

        entry = ledger.get(participant)
        verify = entry is not None and entry.is_set
        if not verify:
            filename, real = self._first_scan(scans, scans_file)
            shift = compute_shift(self.cfg.shift.target_epoch, real)
            entry = ledger.set(participant, shift, filename, real)
            self.messages.info(
                f"{participant}: shift {shift} days (from {filename})", dry_run=self.dry_run
            )
        shift = entry.shift
        target = self.cfg.shift.target_epoch

        real_times = scans_lookup(real_scans)
        added = []
        changed = set()
        shifted = scans.copy()
        for idx, (filename, stored) in enumerate(zip(scans["filename"], scans["acq_time"])):
            stored = None if stored is None or pd.isna(stored) else stored
            if filename not in real_times:
                if stored is not None and stored >= target + _YEAR:
                    added.append((filename, stored))
                    real_times[filename] = stored
                else:
                    self.messages.warn(
                        f"{filename} of {self.store.rel(scans_file)} has no real date in the backup."
                    )
                    continue
            real = real_times[filename]
            if real is None:
                continue
            expected = shift_days(real, shift)
            if not verify or stored != expected:
                shifted.at[scans.index[idx], "acq_time"] = expected
                if stored != expected:
                    changed.add(filename)

        if added:
            self.store.write_scans(backup, merge_scans(real_scans, scans_frame(added)))
        if self.store.write_scans(scans_file, shifted):
            result.updated_scans.append(self.store.rel(scans_file))

        marker = f"_{self.cfg.layout.suffix}{self.adapter.extension}"
        for filename, when in zip(shifted["filename"], shifted["acq_time"]):
            if marker not in str(filename) or when is None or pd.isna(when):
                continue
            if self.trust_scans and filename not in changed:
                continue
            path = scans_file.parent / filename
            if not path.exists():
                self.messages.warn(f"Recording {filename} listed in {scans_file.name} not found")
                continue
            embedded = self.adapter.read_timestamp(path)
            if embedded is None:
                self.messages.warn(f"No embedded acquisition time in {self.store.rel(path)}")
                continue
            if abs(embedded - when) > _EMBEDDED_TOLERANCE:
                self.messages.info(
                    f"Set embedded date of {self.store.rel(path)}: {embedded.date()} -> {when.date()}",
                    dry_run=self.dry_run,
                )
                self.adapter.rewrite_identifier_and_date(path, None, when.date(), dry_run=self.dry_run)
                result.updated_recordings.append(self.store.rel(path))

    def run(self, subjects: Optional[Iterable[str]] = None) -> ShiftResult:
        """Shift every scan index (of *subjects*, default all).

        The ledger is saved on exit when it changed, even if a subject fails.

        Returns:
            :class:`ShiftResult` with the ledger content and touched files.

        Raises:
            ConsistencyError: Dates that look already shifted or implausible,
                or a conflicting ledger row.
        """
        files = self._scans_files(subjects)
        result = ShiftResult(messages=self.messages, ledger=pd.DataFrame())
        write_scans_description(self.root, self.store)
        with ShiftLedger.open(self.root, self.cfg, dry_run=self.dry_run) as ledger:
            if not ledger.exists:
                self.messages.warn(f"Shift ledger not found; creating {self.store.rel(ledger.path)}")
                ledger.modified = True
            try:
                for scans_file in files:
                    self._shift_file(scans_file, ledger, result)
            finally:
                result.ledger = ledger.to_frame()
        log.info(
            "[shift] %d scans file(s) checked, %d updated",
            len(files),
            len(result.updated_scans),
        )
        return result
