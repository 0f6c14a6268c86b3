"""Enumerate subjects, sessions and recordings of a dataset tree.

The file system is the system of record: every operation starts by calling
one of these helpers and works on the transient objects they return.
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pandas as pd
import structlog

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.sidecars import SidecarStore
from bidscurate.models import Dataset, Recording, RecordingName, Session, Subject
from bidscurate.utils.errors import RecordingNameError
from bidscurate.utils.messages import MessageLog
from bidscurate.utils.timestamps import parse_acq_time

log = structlog.get_logger()

__all__ = [
    "find_dataset_root",
    "subject_dirs",
    "list_subjects",
    "list_recordings",
    "load_recording",
    "list_sessions",
    "load_dataset",
    "scans_lookup",
]


def find_dataset_root(start: Path) -> Optional[Path]:
    """Return the nearest ancestor containing ``dataset_description.json``.

    Args:
        start: Path inside or below the dataset.

    Returns:
        The dataset root, or ``None`` when no ancestor qualifies.
    """
    cur = Path(start).resolve()
    if cur.is_file():
        cur = cur.parent
    for parent in (cur, *cur.parents):
        if (parent / "dataset_description.json").is_file():
            return parent
    return None


def subject_dirs(root: Path) -> List[Path]:
    return sorted(p for p in Path(root).glob("sub-*") if p.is_dir())


def list_subjects(root: Path) -> List[Subject]:
    """Return every ``sub-*`` folder with its ``ses-*`` sessions."""
    subjects: List[Subject] = []
    for sub_dir in subject_dirs(root):
        label = sub_dir.name[len("sub-"):]
        sessions = [
            Session(subject=label, label=ses.name[len("ses-"):], path=ses)
            for ses in sorted(sub_dir.glob("ses-*"))
            if ses.is_dir()
        ]
        subjects.append(Subject(label=label, path=sub_dir, sessions=sessions))
    return subjects


# --------------------------------------------------------------------------- #
# Recordings
# --------------------------------------------------------------------------- #
def _excluded(path: Path, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatch(path.name, pat) for pat in patterns)


def _recording_paths(root: Path, scope: Path, cfg: ConfigSchema) -> List[Path]:
    """Recordings under *scope* located at ``sub-*/ses-*/<modality>/``."""
    ext = cfg.layout.extension
    found: List[Path] = []
    for path in sorted(scope.rglob(f"*{ext}")):
        try:
            parts = path.relative_to(root).parts
        except ValueError:
            continue
        if len(parts) != 4 or not parts[0].startswith("sub-") or not parts[1].startswith("ses-"):
            continue
        if parts[2] != cfg.layout.modality or _excluded(path, cfg.layout.exclude):
            continue
        found.append(path)
    return found


def scans_lookup(scans: pd.DataFrame) -> Dict[str, object]:
    """Map scan-index filename to its timestamp."""
    return {
        str(fn): parse_acq_time(t) for fn, t in zip(scans["filename"], scans["acq_time"])
    }


def load_recording(
    root: Path,
    path: Path,
    cfg: ConfigSchema,
    *,
    scans: Optional[pd.DataFrame] = None,
) -> Recording:
    """Build a :class:`Recording` with its current sidecars.

    Args:
        root: Dataset root.
        path: Recording path.
        cfg: Configuration (layout, noise labels).
        scans: Already-loaded scan index of the session, read from disk when
            omitted.

    Raises:
        RecordingNameError: When the name is not canonical.
    """
    name = RecordingName.parse(path.name)
    rec = Recording(
        root=root,
        path=path,
        name=name,
        is_noise=name.is_noise(cfg.noise.subject, cfg.noise.task),
    )
    if scans is None:
        scans = SidecarStore.read_scans(rec.scans_file)
    rec.acq_time = scans_lookup(scans).get(rec.scans_filename)

    rec.documents["meg"] = SidecarStore.read_json(rec.sidecar(cfg.layout.suffix, ".json"))
    if not rec.is_noise:
        rec.documents["coordsystem"] = SidecarStore.read_json(rec.coordsystem_path)
    for kind in ("channels", "events"):
        table = SidecarStore.read_table(rec.sidecar(kind, ".tsv"))
        if table is not None:
            rec.tables[kind] = table
    return rec


def list_recordings(
    root: Path,
    cfg: ConfigSchema,
    *,
    scope: Optional[Path] = None,
    messages: Optional[MessageLog] = None,
    noise_first: bool = True,
) -> List[Recording]:
    """Enumerate recordings under *scope* (default: the whole root).

    Names that do not follow the canonical grammar are reported and skipped.

    Args:
        root: Dataset root.
        cfg: Configuration.
        scope: Sub-folder restricting the search (a subject or session).
        messages: Message log receiving warnings.
        noise_first: Put empty-room recordings ahead of the others.

    Returns:
        Recordings sorted by path, empty-room ones first when requested.
    """
    root = Path(root)
    messages = messages if messages is not None else MessageLog()
    scans_cache: Dict[Path, pd.DataFrame] = {}
    recordings: List[Recording] = []
    for path in _recording_paths(root, Path(scope or root), cfg):
        try:
            name = RecordingName.parse(path.name)
        except RecordingNameError as exc:
            messages.warn(f"Skipping recording with non-canonical name: {exc}")
            continue
        if path.parts[-4] != f"sub-{name.subject}" or path.parts[-3] != f"ses-{name.session}":
            messages.warn(
                f"Recording {path.name} is stored under "
                f"{path.parts[-4]}/{path.parts[-3]}, not its own subject/session"
            )
        scans_file = path.parent.parent / f"sub-{name.subject}_ses-{name.session}_scans.tsv"
        if scans_file not in scans_cache:
            scans_cache[scans_file] = SidecarStore.read_scans(scans_file)
        recordings.append(load_recording(root, path, cfg, scans=scans_cache[scans_file]))

    if noise_first:
        recordings.sort(key=lambda r: not r.is_noise)
    log.debug("[discovery] %d recording(s) under %s", len(recordings), scope or root)
    return recordings


# --------------------------------------------------------------------------- #
# Sessions
# --------------------------------------------------------------------------- #
def _first_time(scans: pd.DataFrame):
    times = [parse_acq_time(t) for t in scans["acq_time"]]
    times = [t for t in times if t is not None]
    return min(times) if times else None


def list_sessions(
    root: Path,
    cfg: ConfigSchema,
    *,
    use_backup_dates: bool = False,
) -> pd.DataFrame:
    """Return one row per session with its representative date.

    Args:
        root: Dataset root.
        cfg: Configuration (backup folder location).
        use_backup_dates: Take the date from the backed-up scan index under
            the backup folder when present, i.e. the real date of a shifted
            dataset.

    Returns:
        DataFrame with columns ``subject``, ``session``, ``date`` and
        ``scans_file``; ``date`` is the earliest scan time or ``None``.
    """
    rows = []
    backup_root = Path(root) / cfg.shift.backup_folder
    for subject in list_subjects(root):
        for session in subject.sessions:
            scans_file = session.scans_file
            source = scans_file
            if use_backup_dates:
                backup = backup_root / scans_file.relative_to(root)
                if backup.is_file():
                    source = backup
            date = _first_time(SidecarStore.read_scans(source))
            if date is None:
                log.warning("[sessions] no acquisition time for %s", scans_file.name)
            rows.append(
                {
                    "subject": subject.label,
                    "session": session.label,
                    "date": date,
                    "scans_file": scans_file,
                }
            )
    return pd.DataFrame(rows, columns=["subject", "session", "date", "scans_file"])


def load_dataset(root: Path) -> Dataset:
    root = Path(root)
    return Dataset(
        root=root,
        description=SidecarStore.read_json(root / "dataset_description.json"),
        ignore=SidecarStore.read_ignore(root / ".bidsignore"),
    )
