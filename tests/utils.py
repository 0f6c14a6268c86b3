"""Test helpers building small MEG datasets on disk."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

from bidscurate.models import RecordingName

CHANNELS = [
    {"name": "MLC11", "type": "MEGGRADAXIAL", "units": "T"},
    {"name": "UADC001", "type": "ADC", "units": "V"},
]


def make_dataset(root: Path, name: str = "Study") -> Path:
    """Create *root* with a minimal ``dataset_description.json``."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "dataset_description.json").write_text(
        json.dumps({"Name": name, "BIDSVersion": "1.7.0", "DatasetType": "raw"}, indent=2)
        + "\n",
        encoding="utf-8",
    )
    return root


def add_scan_row(scans_file: Path, filename: str, when: Optional[str]) -> None:
    """Append one row to a scan index, creating it with a header when missing."""
    if not scans_file.exists():
        scans_file.parent.mkdir(parents=True, exist_ok=True)
        scans_file.write_text("filename\tacq_time\n", encoding="utf-8")
    with scans_file.open("a", encoding="utf-8") as fh:
        fh.write(f"{filename}\t{when or 'n/a'}\n")


def make_recording(
    root: Path,
    subject: str,
    session: str,
    task: str,
    when: Optional[str],
    *,
    acq: Optional[str] = None,
    run: Optional[str] = None,
    scan_time: Optional[str] = "same",
    recording: Optional[Dict] = None,
    coordsystem: Optional[Dict] = None,
    channels: Optional[List[Dict]] = None,
) -> Path:
    """Write a ``.ds`` recording folder with its JSON acquisition header.

    Args:
        root: Dataset root.
        subject: Subject label.
        session: Session label.
        task: Task label.
        when: Embedded acquisition time (``YYYY-MM-DDTHH:MM:SS``).
        acq: Optional acquisition label.
        run: Optional run label.
        scan_time: Time listed in the scan index; ``"same"`` copies *when*,
            ``None`` leaves the recording out of the index.
        recording: ``Recording`` header seed.
        coordsystem: ``CoordSystem`` header seed.
        channels: Channel rows; a two-channel default when omitted.

    Returns:
        Path of the recording folder.
    """
    name = RecordingName(subject=subject, session=session, task=task, acq=acq, run=run)
    session_dir = root / f"sub-{subject}" / f"ses-{session}"
    folder = session_dir / "meg" / name.name
    folder.mkdir(parents=True)
    header = {
        "AcquisitionDateTime": when,
        "RunName": name.stem,
        "Recording": recording if recording is not None else {"SamplingFrequency": 1200},
        "CoordSystem": coordsystem or {},
        "Channels": channels if channels is not None else CHANNELS,
    }
    (folder / f"{name.stem}.header.json").write_text(
        json.dumps(header, indent=2) + "\n", encoding="utf-8"
    )
    (folder / f"{name.stem}.hist").write_text(f"Run {name.stem}\n", encoding="utf-8")
    if scan_time is not None:
        add_scan_row(
            session_dir / f"sub-{subject}_ses-{session}_scans.tsv",
            f"meg/{name.name}",
            when if scan_time == "same" else scan_time,
        )
    return folder


def read_header(folder: Path) -> Dict:
    stem = folder.name[: -len(".ds")]
    return json.loads((folder / f"{stem}.header.json").read_text(encoding="utf-8"))


def tree(root: Path) -> List[str]:
    """Sorted root-relative POSIX paths of every file under *root*."""
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())
