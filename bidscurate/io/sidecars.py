"""
Read/write access to the three sidecar kinds plus precedence-aware merges.

* **Documents** – JSON key/value files (``*_meg.json``,
  ``*_coordsystem.json``, ``dataset_description.json``).
* **Tables** – tab-separated files; the scan index (``*_scans.tsv``) gets
  typed timestamps and a deterministic (acq_time, filename) order.
* **Ignore list** – ``.bidsignore`` glob patterns, one per line.

Every write goes through :class:`SidecarStore`, which compares the rendered
text with what is on disk, reports a diff to the message log and skips the
write when nothing changed or when running dry.
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

import pandas as pd
import structlog

from bidscurate.models import Document
from bidscurate.utils.compare import compare
from bidscurate.utils.errors import UsageError
from bidscurate.utils.messages import MessageLog
from bidscurate.utils.timestamps import NA, format_acq_time, parse_acq_time

log = structlog.get_logger()

__all__ = [
    "SCANS_COLUMNS",
    "SidecarStore",
    "empty_scans",
    "scans_frame",
    "sort_scans",
    "merge_scans",
    "update_nested",
    "overwrite_top_level",
    "trim_empty",
    "normalize_document",
    "render_json",
    "render_table",
]

SCANS_COLUMNS = ["filename", "acq_time"]


# --------------------------------------------------------------------------- #
# 1.  Pure helpers                                                            #
# --------------------------------------------------------------------------- #
def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_acq_time(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serialisable")


def render_json(doc: Document) -> str:
    """Return the on-disk text for *doc* (2-space indent, trailing newline)."""
    return json.dumps(doc, indent=2, ensure_ascii=False, default=_json_default) + "\n"


def normalize_document(doc: Document) -> Document:
    """Return *doc* as it would read back from disk (timestamps become text)."""
    return json.loads(render_json(doc))


def update_nested(old: Document, new: Document) -> Document:
    """Recursively overlay *new* onto *old*; nested mappings are merged.

    Args:
        old: Lower-precedence document.
        new: Higher-precedence document.

    Returns:
        A new dictionary; neither input is modified.
    """
    out = dict(old)
    for key, value in new.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = update_nested(out[key], value)
        else:
            out[key] = value
    return out


def overwrite_top_level(base: Document, new: Document) -> Document:
    """First-level precedence: keys of *new* replace those of *base* wholesale."""
    out = dict(base)
    out.update(new)
    return out


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)) and len(value) == 0:
        return True
    return False


def trim_empty(doc: Document) -> Document:
    """Drop ``None`` / empty string / empty container fields, recursively."""
    out: Document = {}
    for key, value in doc.items():
        if isinstance(value, dict):
            value = trim_empty(value)
        if not _is_empty(value):
            out[key] = value
    return out


def _time_column(values: Iterable[Any], index=None) -> pd.Series:
    """Object column of python datetimes / None (no datetime64 coercion)."""
    return pd.Series([parse_acq_time(v) for v in values], index=index, dtype=object)


def empty_scans() -> pd.DataFrame:
    return pd.DataFrame({"filename": pd.Series(dtype=object), "acq_time": pd.Series(dtype=object)})


def scans_frame(rows: Iterable[tuple]) -> pd.DataFrame:
    """Build a scan index from ``(filename, acq_time)`` pairs."""
    rows = list(rows)
    if not rows:
        return empty_scans()
    return pd.DataFrame(
        {
            "filename": pd.Series([r[0] for r in rows], dtype=object),
            "acq_time": _time_column(r[1] for r in rows),
        }
    )


def sort_scans(df: pd.DataFrame) -> pd.DataFrame:
    """Return *df* ordered by (acq_time, filename); unknown times go last."""
    if df.empty:
        return df.reset_index(drop=True)
    keyed = df.assign(
        _missing=df["acq_time"].isna(),
        _time=pd.to_datetime(df["acq_time"]),
    )
    keyed = keyed.sort_values(["_missing", "_time", "filename"], kind="mergesort")
    return keyed.drop(columns=["_missing", "_time"]).reset_index(drop=True)


def merge_scans(first: pd.DataFrame, second: pd.DataFrame) -> pd.DataFrame:
    """Union of two scan indexes restricted to filename/acq_time, sorted.

    When both list the same file, the row from *first* wins.
    """
    both = pd.concat(
        [first[SCANS_COLUMNS], second[SCANS_COLUMNS]], ignore_index=True
    )
    both = both.drop_duplicates(subset="filename", keep="first")
    return sort_scans(both)


def render_table(df: pd.DataFrame) -> str:
    return df.to_csv(sep="\t", index=False, na_rep=NA, lineterminator="\n")


def _scans_text(df: pd.DataFrame) -> str:
    out = sort_scans(df).copy()
    out["acq_time"] = out["acq_time"].map(format_acq_time)
    return render_table(out)


# --------------------------------------------------------------------------- #
# 2.  Store                                                                   #
# --------------------------------------------------------------------------- #
class SidecarStore:
    """Dry-run aware reader/writer bound to one dataset root.

    Args:
        root: Dataset root; paths in messages are reported relative to it.
        messages: Destination for change/warning messages.
        dry_run: Compute and report every change but never touch the disk.
    """

    def __init__(
        self,
        root: Path,
        *,
        messages: Optional[MessageLog] = None,
        dry_run: bool = False,
    ) -> None:
        self.root = Path(root)
        self.messages = messages if messages is not None else MessageLog()
        self.dry_run = dry_run

    # ------------------------------------------------------------------ #
    def rel(self, path: Path) -> str:
        try:
            return Path(path).relative_to(self.root).as_posix()
        except ValueError:
            return Path(path).as_posix()

    def _report(self, path: Path, old: Any, new: Any, created: bool) -> None:
        header = ("Create " if created else "Update ") + self.rel(path)
        lines = [] if created else compare(old, new)
        self.messages.change(header, lines, path=self.rel(path), dry_run=self.dry_run)

    def _write_text(self, path: Path, text: str) -> None:
        if self.dry_run:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    # ------------------------------------------------------------------ #
    # Documents
    # ------------------------------------------------------------------ #
    @staticmethod
    def read_json(path: Path) -> Document:
        """Return the document at *path*, ``{}`` when the file is absent."""
        if not path.is_file():
            return {}
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)

    def write_json(self, path: Path, doc: Document) -> bool:
        """Write *doc* when it differs from the file; return True if it did."""
        text = render_json(doc)
        if path.is_file():
            current = path.read_text(encoding="utf-8")
            if current == text:
                return False
            try:
                old = json.loads(current)
            except json.JSONDecodeError:
                old = current
            self._report(path, old, normalize_document(doc), created=False)
        else:
            self._report(path, None, doc, created=True)
        self._write_text(path, text)
        return True

    # ------------------------------------------------------------------ #
    # Tables
    # ------------------------------------------------------------------ #
    @staticmethod
    def read_table(path: Path) -> Optional[pd.DataFrame]:
        """Return a TSV as strings, or *None* when the file is absent."""
        if not path.is_file():
            return None
        return pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)

    def write_table(self, path: Path, df: pd.DataFrame) -> bool:
        text = render_table(df)
        old = self.read_table(path)
        if old is not None and path.read_text(encoding="utf-8") == text:
            return False
        self._report(path, old, df, created=old is None)
        self._write_text(path, text)
        return True

    @staticmethod
    def read_scans(path: Path) -> pd.DataFrame:
        """Return a scan index with ``acq_time`` parsed to datetimes / ``None``.

        A missing file yields an empty frame with the standard columns.
        Extra columns are kept as text.

        Raises:
            UsageError: When an ``acq_time`` cell is not a timestamp.
        """
        if not path.is_file():
            return empty_scans()
        df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
        for col in SCANS_COLUMNS:
            if col not in df.columns:
                df[col] = NA
        try:
            df["acq_time"] = _time_column(df["acq_time"])
        except UsageError as exc:
            raise UsageError(f"{path}: {exc}") from exc
        return df

    def write_scans(self, path: Path, df: pd.DataFrame) -> bool:
        """Sort and write a scan index when its text changes."""
        text = _scans_text(df)
        if path.is_file():
            if path.read_text(encoding="utf-8") == text:
                return False
            old = self.read_scans(path)
            self._report(
                path,
                _scans_mapping(old),
                _scans_mapping(df),
                created=False,
            )
        else:
            self._report(path, None, df, created=True)
        self._write_text(path, text)
        return True

    # ------------------------------------------------------------------ #
    # Ignore list
    # ------------------------------------------------------------------ #
    @staticmethod
    def read_ignore(path: Path) -> List[str]:
        if not path.is_file():
            return []
        lines = path.read_text(encoding="utf-8").splitlines()
        return [ln.strip() for ln in lines if ln.strip()]

    def write_ignore(self, path: Path, patterns: Iterable[str]) -> bool:
        patterns = list(dict.fromkeys(p.strip() for p in patterns if p.strip()))
        text = "\n".join(patterns) + "\n" if patterns else ""
        old = self.read_ignore(path)
        if path.is_file() and path.read_text(encoding="utf-8") == text:
            return False
        self._report(path, old, patterns, created=not path.is_file())
        self._write_text(path, text)
        return True

    # ------------------------------------------------------------------ #
    # Plain file operations
    # ------------------------------------------------------------------ #
    def write_text(self, path: Path, text: str) -> bool:
        """Replace the content of a text file, reporting changed lines."""
        old = path.read_text(encoding="utf-8") if path.is_file() else None
        if old == text:
            return False
        if old is None:
            self._report(path, None, text, created=True)
        else:
            old_lines, new_lines = old.splitlines(), text.splitlines()
            self._report(
                path,
                {f"line {i + 1}": ln for i, ln in enumerate(old_lines)},
                {f"line {i + 1}": ln for i, ln in enumerate(new_lines)},
                created=False,
            )
        self._write_text(path, text)
        return True

    def move(self, src: Path, dst: Path) -> None:
        """Rename *src* to *dst* (both under the root)."""
        self.messages.info(
            f"Rename {self.rel(src)} -> {self.rel(dst)}", dry_run=self.dry_run
        )
        if not self.dry_run:
            src.rename(dst)

    def copy(self, src: Path, dst: Path) -> None:
        self.messages.info(f"Copy {self.rel(src)} -> {self.rel(dst)}", dry_run=self.dry_run)
        if not self.dry_run:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)


def _scans_mapping(df: pd.DataFrame) -> dict:
    return {
        row.filename: format_acq_time(row.acq_time)
        for row in df[SCANS_COLUMNS].itertuples(index=False)
    }
