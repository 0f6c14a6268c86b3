"""Persistent per-subject date-shift ledger.

``<root>/sourcedata/date_shifting.tsv`` holds one row per subject::

    participant_id  shift  first_scan  real_datetime  shifted_datetime

Once a subject is shifted, the ledger (together with the backed-up scan
indexes) is the only place the real acquisition dates survive, so it is
handled as a repository object bound to one invocation: open it with
:meth:`ShiftLedger.open`, which saves it on exit, even after an exception,
and only when something changed.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pandas as pd
import structlog

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.sidecars import SidecarStore, render_json
from bidscurate.utils.errors import ConsistencyError
from bidscurate.utils.timestamps import format_acq_time, parse_acq_time, shift_days

log = structlog.get_logger()

__all__ = ["LEDGER_COLUMNS", "LedgerEntry", "ShiftLedger", "write_scans_description"]

LEDGER_COLUMNS = ["participant_id", "shift", "first_scan", "real_datetime", "shifted_datetime"]

_LEDGER_DESCRIPTION = {
    "participant_id": {"Description": "Participant identifier."},
    "shift": {
        "Description": "Number of days added to every real date of this participant.",
        "Units": "days",
    },
    "first_scan": {"Description": "Scan used as reference to compute the shift."},
    "real_datetime": {"Description": "Real acquisition time of the reference scan."},
    "shifted_datetime": {"Description": "Shifted acquisition time of the reference scan."},
}

_SCANS_DESCRIPTION = {
    "acq_time": {
        "LongName": "Acquisition time",
        "Description": (
            "Acquisition time of the first data point. Dates are shifted by a "
            "constant number of days per participant for anonymisation; times of "
            "day are real."
        ),
    }
}


@dataclass
class LedgerEntry:
    """One ledger row; *shift* is ``None`` until computed."""

    participant_id: str
    shift: Optional[int] = None
    first_scan: Optional[str] = None
    real_datetime: Optional[datetime] = None
    shifted_datetime: Optional[datetime] = None

    @property
    def is_set(self) -> bool:
        return self.shift is not None and self.shift != 0


def _parse_shift(value) -> Optional[int]:
    text = str(value).strip()
    if not text or text.lower() in {"n/a", "nan"}:
        return None
    return int(round(float(text)))


class ShiftLedger:
    """In-memory view of the ledger file.

    Args:
        path: Ledger TSV path.
        dry_run: Never write the file.
    """

    def __init__(self, path: Path, *, dry_run: bool = False) -> None:
        self.path = Path(path)
        self.dry_run = dry_run
        self.entries: Dict[str, LedgerEntry] = {}
        self.modified = False

    @staticmethod
    def path_for(root: Path, cfg: ConfigSchema) -> Path:
        return Path(root) / cfg.shift.backup_folder / cfg.shift.ledger

    @property
    def exists(self) -> bool:
        return self.path.is_file()

    # ------------------------------------------------------------------ #
    # Load / save
    # ------------------------------------------------------------------ #
    def load(self) -> "ShiftLedger":
        self.entries = {}
        if not self.exists:
            return self
        df = pd.read_csv(self.path, sep="\t", dtype=str, keep_default_na=False)
        missing = [c for c in LEDGER_COLUMNS if c not in df.columns]
        if missing:
            raise ConsistencyError(f"{self.path} lacks column(s): {', '.join(missing)}")
        for row in df.itertuples(index=False):
            entry = LedgerEntry(
                participant_id=row.participant_id,
                shift=_parse_shift(row.shift),
                first_scan=row.first_scan or None,
                real_datetime=parse_acq_time(row.real_datetime),
                shifted_datetime=parse_acq_time(row.shifted_datetime),
            )
            if entry.participant_id in self.entries:
                raise ConsistencyError(
                    f"{self.path} lists {entry.participant_id} more than once"
                )
            self.entries[entry.participant_id] = entry
        return self

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "participant_id": e.participant_id,
                "shift": "n/a" if e.shift is None else str(e.shift),
                "first_scan": e.first_scan or "n/a",
                "real_datetime": format_acq_time(e.real_datetime),
                "shifted_datetime": format_acq_time(e.shifted_datetime),
            }
            for e in sorted(self.entries.values(), key=lambda e: e.participant_id)
        ]
        return pd.DataFrame(rows, columns=LEDGER_COLUMNS)

    def save(self) -> None:
        """Write the ledger and, the first time, its description documents."""
        if self.dry_run:
            log.info("[ledger] dry run – %s not written", self.path)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        description = self.path.with_suffix(".json")
        if not description.exists():
            description.write_text(render_json(_LEDGER_DESCRIPTION), encoding="utf-8")
        self.to_frame().to_csv(
            self.path, sep="\t", index=False, na_rep="n/a", lineterminator="\n"
        )
        self.modified = False
        log.info("[ledger] saved %s", self.path)

    @classmethod
    @contextmanager
    def open(
        cls, root: Path, cfg: ConfigSchema, *, dry_run: bool = False
    ) -> Iterator["ShiftLedger"]:
        """Load the ledger and save it on exit if it was modified."""
        ledger = cls(cls.path_for(root, cfg), dry_run=dry_run).load()
        try:
            yield ledger
        finally:
            if ledger.modified:
                ledger.save()

    # ------------------------------------------------------------------ #
    # Queries / updates
    # ------------------------------------------------------------------ #
    def get(self, participant_id: str) -> Optional[LedgerEntry]:
        return self.entries.get(participant_id)

    def shift_of(self, participant_id: str) -> Optional[int]:
        entry = self.get(participant_id)
        return entry.shift if entry is not None and entry.is_set else None

    def set(
        self,
        participant_id: str,
        shift: int,
        first_scan: str,
        real: datetime,
    ) -> LedgerEntry:
        """Record the shift of a subject; an existing non-zero shift is immutable."""
        current = self.get(participant_id)
        if current is not None and current.is_set and current.shift != shift:
            raise ConsistencyError(
                f"{participant_id} already shifted by {current.shift} days; refusing {shift}"
            )
        entry = LedgerEntry(
            participant_id=participant_id,
            shift=int(shift),
            first_scan=first_scan,
            real_datetime=real,
            shifted_datetime=shift_days(real, shift),
        )
        self.entries[participant_id] = entry
        self.modified = True
        return entry

    def rename(self, rewrite: Callable[[str], str]) -> List[str]:
        """Apply *rewrite* to participant ids and reference file names.

        Returns:
            Participant ids that changed.
        """
        changed: List[str] = []
        renamed: Dict[str, LedgerEntry] = {}
        for pid, entry in self.entries.items():
            new_pid = rewrite(pid)
            new_scan = rewrite(entry.first_scan) if entry.first_scan else entry.first_scan
            if new_pid != pid or new_scan != entry.first_scan:
                changed.append(pid)
                entry = LedgerEntry(
                    participant_id=new_pid,
                    shift=entry.shift,
                    first_scan=new_scan,
                    real_datetime=entry.real_datetime,
                    shifted_datetime=entry.shifted_datetime,
                )
            if entry.participant_id in renamed:
                raise ConsistencyError(f"Ledger rename would duplicate {entry.participant_id}")
            renamed[entry.participant_id] = entry
        if changed:
            self.entries = renamed
            self.modified = True
        return changed

    def merge_from(self, other: "ShiftLedger") -> List[str]:
        """Add rows of *other*; conflicting shifts for one subject are fatal.

        Returns:
            Participant ids added.
        """
        added: List[str] = []
        for pid, entry in other.entries.items():
            mine = self.get(pid)
            if mine is None or (not mine.is_set and entry.is_set):
                self.entries[pid] = entry
                added.append(pid)
            elif entry.is_set and mine.shift != entry.shift:
                raise ConsistencyError(
                    f"{pid} shifted by {mine.shift} days in destination and {entry.shift} in source"
                )
        if added:
            self.modified = True
        return added


def write_scans_description(root: Path, store: SidecarStore) -> None:
    """Create the dataset-level ``scans.json`` explaining shifted dates."""
    path = Path(root) / "scans.json"
    if not path.exists():
        store.write_json(path, _SCANS_DESCRIPTION)
