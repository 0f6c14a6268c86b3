"""Associate recordings with the closest empty-room (noise) recording.

Candidates are the noise recordings stored next to the target recording
and those of the central empty-room subject (``sub-emptyroom``).  The
candidate with the smallest absolute time difference wins if it is within
the configured window (24 h by default); on an exact tie the co-located
recording is preferred.  The outcome always says *how* the association was
obtained so callers can decide whether to warn.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import structlog

from bidscurate.config.schema import ConfigSchema
from bidscurate.io.raw import RawSourceAdapter
from bidscurate.models import Recording
from bidscurate.pipelines.discovery import list_recordings
from bidscurate.utils.messages import MessageLog

log = structlog.get_logger()

__all__ = ["NoiseFound", "NoiseMatch", "NoiseAssociator", "ASSOCIATION_FIELD"]

ASSOCIATION_FIELD = "AssociatedEmptyRoom"


class NoiseFound(enum.IntEnum):
    """How an association was obtained."""

    NOT_FOUND = 0
    SEARCH = 1
    EXISTING = 2
    PROVIDED = 3


@dataclass(frozen=True)
class NoiseMatch:
    """Result of :meth:`NoiseAssociator.associate`.

    Attributes:
        path: Root-relative POSIX path of the noise recording, or *None*.
        found: Outcome category.
        delta: Absolute time difference for searched matches.
    """

    path: Optional[str]
    found: NoiseFound
    delta: Optional[timedelta] = None

    def __bool__(self) -> bool:
        return self.found is not NoiseFound.NOT_FOUND


class NoiseAssociator:
    """Find the best empty-room recording for a recording.

    Args:
        root: Dataset root.
        cfg: Configuration (noise subject and time window).
        adapter: Raw-source adapter used to read the target's acquisition
            time.
        candidates: Either a sequence of recordings or a callable returning
            one.  A callable lets the caller keep the list current while it
            rewrites scan indexes.  When omitted, the tree is enumerated
            once.
        messages: Message log for warnings.
    """

    def __init__(
        self,
        root: Path,
        cfg: ConfigSchema,
        adapter: RawSourceAdapter,
        *,
        candidates: Sequence[Recording] | Callable[[], Sequence[Recording]] | None = None,
        messages: Optional[MessageLog] = None,
    ) -> None:
        self.root = Path(root)
        self.cfg = cfg
        self.adapter = adapter
        self.messages = messages if messages is not None else MessageLog()
        if candidates is None:
            candidates = list_recordings(self.root, cfg, messages=self.messages)
        self._candidates = candidates

    # ------------------------------------------------------------------ #
    def _noise_recordings(self) -> List[Recording]:
        pool = self._candidates() if callable(self._candidates) else self._candidates
        return [r for r in pool if r.is_noise]

    def _resolvable(self, relative: str) -> bool:
        if not relative:
            return False
        if (self.root / relative).exists():
            return True
        return any(c.relative == relative for c in self._noise_recordings())

    def search(self, rec: Recording, when: Optional[datetime] = None) -> NoiseMatch:
        """Return the closest noise recording within the window.

        Args:
            rec: Target recording.
            when: Acquisition time of the target; read from the raw source
                when omitted.

        Returns:
            A ``SEARCH`` match or ``NOT_FOUND``.
        """
        if when is None:
            when = self.adapter.read_timestamp(rec.path)
        if when is None:
            return NoiseMatch(None, NoiseFound.NOT_FOUND)

        central = self.root / f"sub-{self.cfg.noise.subject}"
        best: Optional[tuple] = None
        for cand in self._noise_recordings():
            same_folder = cand.folder == rec.folder
            if not same_folder and central not in cand.path.parents:
                continue
            if cand.acq_time is None:
                continue
            delta = abs(cand.acq_time - when)
            # Sort key: smaller gap first, then co-located before central.
            key = (delta, not same_folder, cand.relative)
            if best is None or key < best[0]:
                best = (key, cand)

        if best is None:
            return NoiseMatch(None, NoiseFound.NOT_FOUND)
        delta, cand = best[0][0], best[1]
        if delta >= self.cfg.noise.max_gap:
            log.debug(
                "[noise] closest candidate %s is %s away from %s",
                cand.relative,
                delta,
                rec.name,
            )
            return NoiseMatch(None, NoiseFound.NOT_FOUND, delta)
        return NoiseMatch(cand.relative, NoiseFound.SEARCH, delta)

    def associate(
        self,
        rec: Recording,
        *,
        provided: Optional[str] = None,
        existing: Optional[str] = None,
        force: bool = False,
        when: Optional[datetime] = None,
    ) -> NoiseMatch:
        """Return the noise association for *rec*.

        Args:
            rec: Target recording.
            provided: Association supplied by a curator override; used as is.
            existing: Association currently stored in the recording
                document; defaults to the stored ``AssociatedEmptyRoom``.
            force: Ignore *existing* and search again.
            when: Acquisition time of *rec* when already known.

        Returns:
            The :class:`NoiseMatch`; noise recordings never get one.
        """
        if existing is None:
            existing = (rec.documents.get("meg") or {}).get(ASSOCIATION_FIELD)

        if rec.is_noise:
            if existing:
                self.messages.warn(
                    f"Noise recording {rec.name} has an empty-room association; ignored.",
                    recording=str(rec.name),
                )
            return NoiseMatch(None, NoiseFound.NOT_FOUND)

        if provided:
            return NoiseMatch(provided, NoiseFound.PROVIDED)
        if existing and not force:
            if self._resolvable(existing):
                return NoiseMatch(existing, NoiseFound.EXISTING)
            self.messages.warn(
                f"Stored empty-room {existing} for {rec.name} no longer exists; searching again.",
                recording=str(rec.name),
            )
        match = self.search(rec, when)
        if not match:
            self.messages.warn(
                f"No empty-room recording within {self.cfg.noise.max_gap} of {rec.name}.",
                recording=str(rec.name),
            )
        return match
