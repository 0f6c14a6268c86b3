"""Structured message stream returned by every pipeline.

Missing-data problems (absent sidecars, unmatched noise recordings, orphan
scan rows) never abort a run.  They are appended to a :class:`MessageLog`
that the caller can inspect, and mirrored to structlog so they also end up
in the console and the JSON log.  Dry runs and real runs produce the same
stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List

import structlog

log = structlog.get_logger()

__all__ = ["Message", "MessageLog"]

INFO = "info"
WARNING = "warning"
CHANGE = "change"


@dataclass(frozen=True)
class Message:
    """One entry of the stream."""

    level: str
    text: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.text


class MessageLog:
    """Ordered list of :class:`Message` objects with logging side effects."""

    def __init__(self) -> None:
        self._items: List[Message] = []

    def __iter__(self) -> Iterator[Message]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------ #
    def info(self, text: str, **context: Any) -> None:
        self._items.append(Message(INFO, text, context))
        log.info(text, **context)

    def warn(self, text: str, **context: Any) -> None:
        self._items.append(Message(WARNING, text, context))
        log.warning(text, **context)

    def change(self, header: str, lines: List[str], **context: Any) -> None:
        """Record a planned or applied modification.

        Args:
            header: What is modified (usually a path relative to the root).
            lines: Diff lines produced by :func:`bidscurate.utils.compare.compare`.
            **context: Extra key/values attached to the log event.
        """
        text = "\n".join([header, *lines]) if lines else header
        self._items.append(Message(CHANGE, text, context))
        log.info(text, **context)

    # ------------------------------------------------------------------ #
    @property
    def warnings(self) -> List[str]:
        return [m.text for m in self._items if m.level == WARNING]

    @property
    def changes(self) -> List[str]:
        return [m.text for m in self._items if m.level == CHANGE]

    def texts(self) -> List[str]:
        return [m.text for m in self._items]
