"""Audit tables written around destructive rename and merge steps.

One TSV per run under ``<root>/<audit_folder>/<kind>_<timestamp>.tsv``.  The
file is saved before the first destructive step and again afterwards, so an
interrupted run leaves a record of what was planned and what completed.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import structlog

log = structlog.get_logger()

__all__ = ["AuditTrail"]


def _unique_path(folder: Path, kind: str) -> Path:
    stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    path = folder / f"{kind}_{stamp}.tsv"
    n = 2
    while path.exists():
        path = folder / f"{kind}_{stamp}_{n}.tsv"
        n += 1
    return path


class AuditTrail:
    """Rows describing one run; persisted with :meth:`save`.

    Args:
        root: Dataset root.
        folder: Audit folder relative to *root*.
        kind: Run type, used as file-name prefix (``rename``/``merge``).
        dry_run: Keep rows in memory only.
    """

    def __init__(self, root: Path, folder: str, kind: str, *, dry_run: bool = False) -> None:
        self.root = Path(root)
        self.kind = kind
        self.dry_run = dry_run
        self.folder = self.root / folder
        self.path: Optional[Path] = None
        self.rows: List[Dict[str, Any]] = []
        self.table: Optional[pd.DataFrame] = None

    def add(self, **row: Any) -> int:
        row.setdefault("status", "planned")
        row["time"] = datetime.now().isoformat(timespec="seconds")
        self.rows.append(row)
        return len(self.rows) - 1

    def update(self, index: int, **changes: Any) -> None:
        self.rows[index].update(changes)
        self.rows[index]["time"] = datetime.now().isoformat(timespec="seconds")

    def set_table(self, table: pd.DataFrame) -> None:
        """Use a caller-built table instead of the accumulated rows."""
        self.table = table

    def frame(self) -> pd.DataFrame:
        if self.table is not None:
            return self.table
        return pd.DataFrame(self.rows)

    def save(self) -> Optional[Path]:
        """Write the table; the first call fixes the file name."""
        if self.dry_run:
            return None
        if self.path is None:
            self.folder.mkdir(parents=True, exist_ok=True)
            self.path = _unique_path(self.folder, self.kind)
        df = self.frame().copy()
        for col in df.columns:
            if df[col].dtype == object:
                df[col] = df[col].map(
                    lambda v: v.isoformat(timespec="seconds") if isinstance(v, datetime) else v
                )
        df.to_csv(self.path, sep="\t", index=False, na_rep="n/a")
        log.debug("[audit] saved %s", self.path)
        return self.path
