"""Exception taxonomy shared by every curation pipeline.

* :class:`UsageError` – the request itself is malformed (missing identifiers,
  ambiguous override matching, path separators in names).  Raised before any
  mutation of the unit at hand.
* :class:`ConsistencyError` – the dataset on disk contradicts the request
  (duplicate same-day sessions, target label already present, several
  sessions matching a rename pattern).  Fatal for the current unit only.

Storage failures are left as the built-in :class:`OSError` family.
"""

from __future__ import annotations


class CurateError(RuntimeError):
    """Base class for unrecoverable curation problems."""

    pass


class UsageError(CurateError, ValueError):
    """Raised when arguments or overrides cannot be applied as given."""

    pass


class RecordingNameError(UsageError):
    """Raised when a file name does not follow the canonical recording grammar."""

    pass


class ConsistencyError(CurateError):
    """Raised when the tree on disk conflicts with the requested operation."""

    pass


__all__ = ["CurateError", "UsageError", "RecordingNameError", "ConsistencyError"]
