"""
Merge a source dataset into a destination dataset with chronological
session numbering.

Sessions of every subject, from both trees, are ordered by calendar day
(destination first on a tie).  Sessions sharing a day are one real-world
session split across trees: their scan indexes are united and they end up
under the destination label.  Every other day gets the next number, unless
sorting is disabled, in which case only colliding labels change.

A label about to be given away may still be held by a session of the same
tree that has not been processed yet; that session is first moved to a
temporary label, so no rename ever needs a true swap.

The run is fully planned before anything moves, including the check that no
source file would replace a different destination file.  The plan is saved
as an audit table, executed, and saved again with its final status.  A dry
run executes the same plan on a skeleton copy of both trees in a temporary
folder, so it reports exactly what a real run would.
"""

from __future__ import annotations

import filecmp
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import pandas as pd
import structlog
from pydantic import BaseModel, Field, model_validator

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.audit import AuditTrail
from bidscurate.io.raw import DsFolderAdapter, RawSourceAdapter
from bidscurate.io.sidecars import SidecarStore, merge_scans
from bidscurate.models import is_noise_label
from bidscurate.pipelines.discovery import list_sessions
from bidscurate.pipelines.ledger import ShiftLedger
from bidscurate.pipelines.rename import RenameEngine
from bidscurate.utils.errors import ConsistencyError, UsageError
from bidscurate.utils.messages import MessageLog
from bidscurate.utils.timestamps import parse_acq_time

log = structlog.get_logger()

__all__ = ["MergeOptions", "MergeResult", "MergeEngine", "merge_tree", "AUDIT_COLUMNS"]

DEST = "destination"
SOURCE = "source"

AUDIT_COLUMNS = [
    "subject",
    "side",
    "date",
    "old_session",
    "temp_session",
    "session",
    "action",
    "scans_file",
    "status",
]


class MergeOptions(BaseModel):
    """Switches of :class:`MergeEngine`.

    Attributes:
        sort_sessions: Renumber sessions chronologically.  Defaults to
            ``True`` unless *rename_source_only* is set.
        zero_pad: Digits of generated session labels (config default when
            omitted).
        rename_source_only: Only rename source sessions so they fit next to
            the destination ones; nothing is moved.
        use_backup_dates: Date sessions from the backed-up (real) scan index.
        dry_run: Plan and report only.
    """

    sort_sessions: Optional[bool] = None
    zero_pad: Optional[int] = Field(None, ge=1)
    rename_source_only: bool = False
    use_backup_dates: bool = False
    dry_run: bool = False

    @model_validator(mode="after")
    def _default_sort(self) -> "MergeOptions":
        if self.sort_sessions is None:
            self.sort_sessions = not self.rename_source_only
        return self


@dataclass
class _Row:
    subject: str
    side: str
    date: Optional[datetime]
    old: str
    scans_file: Path
    current: str = ""
    session: str = ""
    temp: Optional[str] = None
    action: str = "keep"
    status: str = "planned"

    def __post_init__(self) -> None:
        self.current = self.current or self.old
        self.session = self.session or self.old

    @property
    def day(self):
        return self.date.date() if self.date is not None else None


@dataclass
class MergeResult:
    table: pd.DataFrame
    messages: MessageLog
    audit_path: Optional[Path] = None
    renames: List[Tuple[str, str, str, str]] = field(default_factory=list)


# --------------------------------------------------------------------------- #
# Directory merge                                                             #
# --------------------------------------------------------------------------- #
SIDECAR_SUFFIXES = (".json", ".tsv")

# Larger files are compared byte-wise only and rehearsed as empty placeholders.
SMALL_FILE_LIMIT = 1 << 20


def _replaced_on_merge(parts: Tuple[str, ...], extension: str) -> bool:
    """Scan indexes and session-level sidecars: the source copy wins.

    *parts* is the path relative to the subject folder.
    """
    name = parts[-1]
    if name.endswith("_scans.tsv"):
        return True
    if len(parts) < 2 or not parts[0].startswith("ses-"):
        return False
    inside_recording = any(part.endswith(extension) for part in parts[:-1])
    return not inside_recording and name.endswith(SIDECAR_SUFFIXES)


def _relabel(text: str, label: Optional[Tuple[str, str]]) -> str:
    if label is None or label[0] == label[1]:
        return text
    old, new = label
    return re.sub(rf"(?<=ses-){re.escape(old)}(?![A-Za-z0-9])", new, text)


def _same_after_relabel(
    a: Path, a_label: Optional[Tuple[str, str]], b: Path, b_label: Optional[Tuple[str, str]]
) -> bool:
    """True when *a* and *b* match once both carry their final session labels."""
    if filecmp.cmp(a, b, shallow=False):
        return True
    if max(a.stat().st_size, b.stat().st_size) > SMALL_FILE_LIMIT:
        return False
    try:
        text_a, text_b = a.read_text(encoding="utf-8"), b.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return False
    return _relabel(text_a, a_label) == _relabel(text_b, b_label)


def _conflicts(src: Path, dst: Path, extension: str, parts: Tuple[str, ...] = ()) -> Iterator[Path]:
    """Files of *src* that would clobber a different file in *dst*."""
    if not dst.exists():
        return
    if src.is_dir() != dst.is_dir():
        yield src
        return
    if src.is_dir():
        for item in sorted(src.iterdir()):
            yield from _conflicts(item, dst / item.name, extension, parts + (item.name,))
    elif not _replaced_on_merge(parts or (src.name,), extension) and not filecmp.cmp(
        src, dst, shallow=False
    ):
        yield src


def merge_tree(src: Path, dst: Path, store: SidecarStore, *, extension: str = ".ds") -> None:
    """Move *src* into *dst*, merging directories that exist on both sides.

    Scan indexes of *src* replace those of *dst* (they were merged before),
    as do differing session-level sidecars (``*_coordsystem.json`` and the
    like); identical files are dropped; emptied source folders are removed.

    Raises:
        ConsistencyError: Any other source file would overwrite a different file.
    """
    clashes = list(_conflicts(src, dst, extension))
    if clashes:
        raise ConsistencyError(
            "Merge would overwrite different files:\n  "
            + "\n  ".join(store.rel(p) for p in clashes)
        )
    _merge_into(src, dst, store, extension, ())


def _merge_into(
    src: Path, dst: Path, store: SidecarStore, extension: str, parts: Tuple[str, ...]
) -> None:
    if not dst.exists():
        store.messages.info(f"Move {store.rel(dst)} from source", dry_run=store.dry_run)
        if not store.dry_run:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(src, dst)
        return
    if src.is_dir():
        for item in sorted(src.iterdir()):
            _merge_into(item, dst / item.name, store, extension, parts + (item.name,))
        if not store.dry_run:
            src.rmdir()
        return
    if src.name.endswith("_scans.tsv"):
        store.messages.info(f"Replace {store.rel(dst)} with merged scans", dry_run=store.dry_run)
        if not store.dry_run:
            shutil.move(src, dst)
        return
    if _replaced_on_merge(parts or (src.name,), extension) and not filecmp.cmp(
        src, dst, shallow=False
    ):
        store.write_text(dst, src.read_text(encoding="utf-8"))
    else:
        log.debug("[merge] identical %s dropped", src)
    if not store.dry_run:
        src.unlink()


def _skeleton_copy(src: Path, dst: Path) -> Path:
    """Copy the layout of *src* to *dst*; big files become empty placeholders."""
    dst.mkdir(parents=True, exist_ok=True)
    for path in sorted(src.rglob("*")):
        target = dst / path.relative_to(src)
        if path.is_dir():
            target.mkdir(parents=True, exist_ok=True)
        elif path.name.endswith(SIDECAR_SUFFIXES) or path.stat().st_size <= SMALL_FILE_LIMIT:
            shutil.copy2(path, target)
        else:
            target.touch()
    return dst


# --------------------------------------------------------------------------- #
# Engine                                                                      #
# --------------------------------------------------------------------------- #
class MergeEngine:
    """Merge *source* into *destination* (or only renumber *destination*).

    Args:
        source: Source dataset root, or ``None`` to reorder the destination
            alone.
        destination: Destination dataset root.
        options: Behaviour switches.
        cfg: Configuration.
        adapter: Raw-source adapter used by session renames.
    """

    def __init__(
        self,
        source: Optional[Path],
        destination: Path,
        options: Optional[MergeOptions] = None,
        *,
        cfg: Optional[ConfigSchema] = None,
        adapter: Optional[RawSourceAdapter] = None,
    ) -> None:
        self.source = Path(source) if source else None
        self.destination = Path(destination)
        self.options = options or MergeOptions()
        self.cfg = cfg or ConfigSchema()
        self.adapter = adapter or DsFolderAdapter()
        self.messages = MessageLog()
        self.zero_pad = self.options.zero_pad or self.cfg.merge.zero_pad
        if self.options.sort_sessions and self.options.rename_source_only:
            raise UsageError("Cannot sort sessions when only the source is renamed")
        if self.source is not None and not self.source.is_dir():
            raise UsageError(f"Source directory not found: {self.source}")
        if not self.destination.is_dir():
            raise UsageError(f"Destination directory not found: {self.destination}")

    # ------------------------------------------------------------------ #
    def root_of(self, side: str) -> Path:
        return self.destination if side == DEST else self.source

    def _label(self, n: int) -> str:
        return f"{n:0{self.zero_pad}d}"

    def _sessions(self) -> List[_Row]:
        rows: List[_Row] = []
        sides = [(DEST, self.destination)]
        if self.source is not None:
            sides.append((SOURCE, self.source))
        for side, root in sides:
            table = list_sessions(root, self.cfg, use_backup_dates=self.options.use_backup_dates)
            if side == DEST and table.empty:
                raise UsageError("Destination must exist and contain sessions")
            if side == SOURCE and table.empty:
                self.messages.warn("Source contains no sessions.")
            for rec in table.itertuples(index=False):
                date = parse_acq_time(rec.date)
                if date is None:
                    self.messages.warn(
                        f"No date for sub-{rec.subject}/ses-{rec.session} ({side}); ordered last."
                    )
                rows.append(
                    _Row(
                        subject=rec.subject,
                        side=side,
                        date=date,
                        old=rec.session,
                        scans_file=Path(rec.scans_file),
                    )
                )
        return rows

    def _is_noise(self, row: _Row) -> bool:
        return is_noise_label(row.subject, "", noise_subject=self.cfg.noise.subject)

    # ------------------------------------------------------------------ #
    # Planning
    # ------------------------------------------------------------------ #
    def _check_noise(self, rows: List[_Row]) -> None:
        """Refuse to merge same-label empty-room sessions that cannot be told apart."""
        by_label: Dict[Tuple[str, str], List[_Row]] = {}
        for row in rows:
            by_label.setdefault((row.subject, row.old), []).append(row)
        for (subject, label), group in by_label.items():
            if len(group) < 2:
                continue
            days = {r.day for r in group}
            if len(days) > 1 or "T" not in label:
                raise ConsistencyError(
                    f"Merging would overwrite empty-room session sub-{subject}/ses-{label} "
                    "without a time in its label; rename it manually first."
                )
            for row in group:
                row.action = "merge"

    def _free_temp(self, rows: List[_Row], row: _Row) -> str:
        taken = {r.current for r in rows if r.side == row.side} | {
            r.session for r in rows if r.side == row.side
        }
        base = row.current + self.cfg.merge.temp_suffix
        label, n = base, 2
        while label in taken or (self.root_of(row.side) / f"sub-{row.subject}" / f"ses-{label}").exists():
            label = f"{base}{n}"
            n += 1
        return label

    def _first_unused(self, rows: List[_Row]) -> str:
        used = {r.current for r in rows} | {r.session for r in rows}
        n = 2
        while self._label(n) in used:
            n += 1
        return self._label(n)

    def _plan_subject(self, rows: List[_Row], ops: List[Tuple[str, str, str, str]]) -> None:
        """Assign final labels to the (sorted) sessions of one subject."""
        sort = self.options.sort_sessions
        source_only = self.options.rename_source_only
        n = 0
        for i, row in enumerate(rows):
            prev = rows[i - 1] if i else None
            if prev is not None and prev.day is not None and prev.day == row.day:
                if prev.side == row.side:
                    raise ConsistencyError(
                        f"Two sessions of sub-{row.subject} on {row.day} in the {row.side}: "
                        f"ses-{prev.old} and ses-{row.old}"
                    )
                row.session = prev.session
                prev.action = row.action = "merge"
            elif sort:
                n += 1
                row.session = self._label(n)
            else:
                if source_only:
                    clash = row.side == SOURCE and any(
                        r.side == DEST and r.current == row.current for r in rows
                    )
                else:
                    clash = any(r.session == row.current for r in rows[:i])
                row.session = self._first_unused(rows) if clash else row.current

            # a later same-side session still holds the label: move it aside
            for other in rows[i + 1:]:
                if other.side == row.side and other.current == row.session and other is not row:
                    if source_only and other.side == DEST:
                        raise ConsistencyError(
                            f"Destination session sub-{other.subject}/ses-{other.current} "
                            "would have to be renamed"
                        )
                    temp = self._free_temp(rows, other)
                    ops.append((other.side, other.subject, other.current, temp))
                    other.temp, other.current = temp, temp

            if row.current != row.session:
                if source_only and row.side == DEST:
                    raise ConsistencyError(
                        f"Destination session sub-{row.subject}/ses-{row.current} would be renamed"
                    )
                ops.append((row.side, row.subject, row.current, row.session))
                row.current = row.session
                if row.action == "keep":
                    row.action = "rename"

    def _final_layout(
        self, subject_dir: Path, side: str, labels: Dict[Tuple[str, str, str], str]
    ) -> Dict[Tuple[str, ...], Tuple[Path, Optional[Tuple[str, str]]]]:
        """Paths under *subject_dir* keyed by where they end up after the renames."""
        subject = subject_dir.name[len("sub-"):]
        layout = {}
        for path in subject_dir.rglob("*"):
            parts = path.relative_to(subject_dir).parts
            label = None
            if parts[0].startswith("ses-"):
                old = parts[0][len("ses-"):]
                new = labels.get((side, subject, old), old)
                if new != old:
                    label = (old, new)
                    parts = tuple(_relabel(part, label) for part in parts)
            layout[parts] = (path, label)
        return layout

    def _check_overwrites(self, rows: List[_Row]) -> None:
        """Refuse a merge in which a source file would replace a different one.

        Scan indexes and session-level sidecars are excluded; the former are
        united, the latter take the source version.

        Raises:
            ConsistencyError: Listing every clashing source file.
        """
        labels = {(r.side, r.subject, r.old): r.session for r in rows}
        extension = self.cfg.layout.extension
        clashes: List[str] = []
        for tree in [Path(".")] + [Path(name) for name in self.cfg.sub_datasets]:
            src_root, dst_root = self.source / tree, self.destination / tree
            if not src_root.is_dir():
                continue
            for sub in sorted(p for p in src_root.glob("sub-*") if p.is_dir()):
                if not (dst_root / sub.name).is_dir():
                    continue
                theirs = self._final_layout(sub, SOURCE, labels)
                ours = self._final_layout(dst_root / sub.name, DEST, labels)
                for parts in sorted(set(theirs) & set(ours)):
                    (a, a_label), (b, b_label) = theirs[parts], ours[parts]
                    if a.is_dir() and b.is_dir():
                        continue
                    if a.is_dir() == b.is_dir():
                        if _replaced_on_merge(parts, extension):
                            continue
                        if _same_after_relabel(a, a_label, b, b_label):
                            continue
                    clashes.append((tree / sub.name / Path(*parts)).as_posix())
        if clashes:
            raise ConsistencyError(
                "Merge would overwrite different files:\n  " + "\n  ".join(clashes)
            )

    def plan(self) -> Tuple[List[_Row], List[Tuple[str, str, str, str]]]:
        """Compute final labels and the ordered list of session renames.

        Returns:
            The session rows and ``(side, subject, old, new)`` renames.

        Raises:
            ConsistencyError: Same-side sessions on one day, an ambiguous
                empty-room session, or a source file that would overwrite a
                different destination file.
        """
        rows = self._sessions()
        noise = [r for r in rows if self._is_noise(r)]
        self._check_noise(noise)

        regular = [r for r in rows if not self._is_noise(r)]
        regular.sort(
            key=lambda r: (r.subject, r.day is None, r.day or datetime.min.date(), r.side != DEST)
        )
        ops: List[Tuple[str, str, str, str]] = []
        subjects: Dict[str, List[_Row]] = {}
        for row in regular:
            subjects.setdefault(row.subject, []).append(row)
        for subject_rows in subjects.values():
            self._plan_subject(subject_rows, ops)
        rows = regular + noise
        if self.source is not None and not self.options.rename_source_only:
            self._check_overwrites(rows)
        return rows, ops

    def _table(self, rows: List[_Row]) -> pd.DataFrame:
        data = [
            {
                "subject": r.subject,
                "side": r.side,
                "date": r.date,
                "old_session": r.old,
                "temp_session": r.temp,
                "session": r.session,
                "action": r.action,
                "scans_file": str(r.scans_file),
                "status": r.status,
            }
            for r in rows
        ]
        return pd.DataFrame(data, columns=AUDIT_COLUMNS)

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def _merge_day_scans(self, rows: List[_Row], roots: Dict[str, Path]) -> None:
        """Unite scan indexes of same-day pairs into the source copy."""
        store = SidecarStore(roots[SOURCE], messages=self.messages)
        pairs: Dict[Tuple[str, str], Dict[str, _Row]] = {}
        for row in rows:
            if row.action == "merge":
                pairs.setdefault((row.subject, row.session), {})[row.side] = row
        for (subject, session), sides in sorted(pairs.items()):
            if DEST not in sides or SOURCE not in sides:
                continue
            name = f"sub-{subject}_ses-{session}_scans.tsv"
            rel = Path(f"sub-{subject}") / f"ses-{session}" / name
            trees = [Path(".")] + [Path(sub) for sub in self.cfg.sub_datasets]
            for tree in trees:
                src = roots[SOURCE] / tree / rel
                dst = roots[DEST] / tree / rel
                if not src.is_file():
                    continue
                merged = merge_scans(SidecarStore.read_scans(dst), SidecarStore.read_scans(src))
                store.write_scans(src, merged)

    def _merge_ledgers(self, roots: Dict[str, Path], check_only: bool) -> None:
        source_path = ShiftLedger.path_for(roots[SOURCE], self.cfg)
        if not source_path.is_file():
            return
        other = ShiftLedger(source_path).load()
        if check_only:
            mine = ShiftLedger(ShiftLedger.path_for(roots[DEST], self.cfg)).load()
            mine.merge_from(other)
            return
        with ShiftLedger.open(roots[DEST], self.cfg) as mine:
            for pid in mine.merge_from(other):
                self.messages.info(f"Shift ledger row {pid} added", dry_run=self.options.dry_run)

    def _move_trees(self, roots: Dict[str, Path]) -> None:
        store = SidecarStore(roots[DEST], messages=self.messages)
        source, destination = roots[SOURCE], roots[DEST]
        pairs = [(source, destination)] + [
            (source / name, destination / name)
            for name in self.cfg.sub_datasets
            if (source / name).is_dir()
        ]
        for src_root, dst_root in pairs:
            for sub in sorted(p for p in src_root.glob("sub-*") if p.is_dir()):
                merge_tree(sub, dst_root / sub.name, store, extension=self.cfg.layout.extension)

    def _execute(
        self,
        rows: List[_Row],
        ops: List[Tuple[str, str, str, str]],
        roots: Dict[str, Path],
        trail: AuditTrail,
    ) -> None:
        """Rename, merge scan indexes and move inside *roots*."""
        engines = {
            side: RenameEngine(
                roots[side], self.cfg, self.adapter, messages=self.messages, audit=False
            )
            for side in {op[0] for op in ops}
        }
        for side, subject, old, new in ops:
            self.messages.info(
                f"Rename {side} sub-{subject}/ses-{old} -> ses-{new}",
                dry_run=self.options.dry_run,
            )
            engines[side].rename_session(roots[side] / f"sub-{subject}", old, new, full=True)
        for row in rows:
            row.status = "renamed"
            row.scans_file = row.scans_file.parent.parent / f"ses-{row.session}" / (
                f"sub-{row.subject}_ses-{row.session}_scans.tsv"
            )
        trail.set_table(self._table(rows))
        trail.save()

        if self.source is not None and not self.options.rename_source_only:
            self._merge_day_scans(rows, roots)
            self._move_trees(roots)
            self._merge_ledgers(roots, check_only=False)
            for row in rows:
                row.status = "merged"
            trail.set_table(self._table(rows))
            trail.save()

    def run(self) -> MergeResult:
        """Plan, save the audit table, rename, merge scan indexes and move.

        Returns:
            :class:`MergeResult` with the final audit table.
        """
        dry = self.options.dry_run
        rows, ops = self.plan()
        roots = {DEST: self.destination}
        if self.source is not None:
            roots[SOURCE] = self.source
            if not self.options.rename_source_only:
                self._merge_ledgers(roots, check_only=True)

        audit_root = self.source if self.options.rename_source_only else self.destination
        trail = AuditTrail(audit_root, self.cfg.audit_folder, "merge", dry_run=dry)
        trail.set_table(self._table(rows))
        result = MergeResult(table=trail.frame(), messages=self.messages, renames=ops)
        result.audit_path = trail.save()

        if dry:
            with tempfile.TemporaryDirectory(prefix="bidscurate-merge-") as tmp:
                copies = {
                    side: _skeleton_copy(root, Path(tmp) / side) for side, root in roots.items()
                }
                self._execute(rows, ops, copies, trail)
        else:
            self._execute(rows, ops, roots, trail)

        result.table = trail.frame()
        log.info(
            "[merge] %d session rename(s), %d session(s) in table", len(ops), len(rows)
        )
        return result
