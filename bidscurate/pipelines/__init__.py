"""
Public façade for the *pipelines* sub-package.

* **Discovery** – :func:`list_recordings`, :func:`list_sessions`,
  :func:`find_dataset_root`
* **Rebuild** – :class:`ReconciliationEngine` with :class:`RebuildOptions`
  and :class:`RecordingOverride`
* **Empty-room association** – :class:`NoiseAssociator`
* **Renames** – :class:`RenameEngine`
* **Merge** – :class:`MergeEngine` with :class:`MergeOptions`
* **Anonymisation** – :class:`DateShifter` and :class:`ShiftLedger`

Importing from ``bidscurate.pipelines`` rather than individual modules keeps
call-sites stable even when underlying filenames change.
"""

from __future__ import annotations

from .discovery import find_dataset_root, list_recordings, list_sessions
from .ledger import ShiftLedger
from .merge import MergeEngine, MergeOptions, MergeResult
from .noise import NoiseAssociator, NoiseFound, NoiseMatch
from .rebuild import RebuildOptions, RebuildResult, ReconciliationEngine, RecordingOverride
from .rename import RenameEngine
from .shift import DateShifter, ShiftResult

__all__: list[str] = [
    "find_dataset_root",
    "list_recordings",
    "list_sessions",
    "ReconciliationEngine",
    "RebuildOptions",
    "RebuildResult",
    "RecordingOverride",
    "NoiseAssociator",
    "NoiseFound",
    "NoiseMatch",
    "RenameEngine",
    "MergeEngine",
    "MergeOptions",
    "MergeResult",
    "DateShifter",
    "ShiftResult",
    "ShiftLedger",
]
