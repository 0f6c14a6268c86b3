"""Human-readable diffs between two versions of a sidecar value.

The same lines are used for verbose output and for dry runs, so a dry run
lists exactly what a real run would write.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List

import pandas as pd

__all__ = ["compare", "MISSING"]

MISSING = "(none)"
_MAX_WIDTH = 80


def _show(value: Any) -> str:
    """Return a short single-line rendering of *value*."""
    if isinstance(value, datetime):
        text = value.isoformat()
    elif isinstance(value, pd.DataFrame):
        text = f"<table {value.shape[0]}x{value.shape[1]}>"
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, default=str, ensure_ascii=False)
    else:
        text = str(value)
    if len(text) > _MAX_WIDTH:
        text = text[: _MAX_WIDTH - 3] + "..."
    return text


def _line(name: str, old: Any, new: Any) -> str:
    return "    %s: %s -> %s" % (name or "(value)", _show(old), _show(new))


def _frames_equal(old: pd.DataFrame, new: pd.DataFrame) -> bool:
    if list(old.columns) != list(new.columns) or old.shape != new.shape:
        return False
    return old.astype(str).reset_index(drop=True).equals(
        new.astype(str).reset_index(drop=True)
    )


def compare(old: Any, new: Any, name: str = "") -> List[str]:
    """Return diff lines describing how *old* becomes *new*.

    Nested mappings are walked recursively and reported with dotted field
    names; tables are summarised by their shape.

    Args:
        old: Previous value (``None`` when absent).
        new: Replacement value (``None`` when removed).
        name: Field name prefix used in the output.

    Returns:
        One ``"    field: old -> new"`` line per differing leaf; empty when
        both values are equal.
    """
    if isinstance(old, dict) and isinstance(new, dict):
        lines: List[str] = []
        keys = list(old) + [k for k in new if k not in old]
        for key in keys:
            sub = f"{name}.{key}" if name else str(key)
            if key not in old:
                lines.append(_line(sub, MISSING, new[key]))
            elif key not in new:
                lines.append(_line(sub, old[key], MISSING))
            else:
                lines.extend(compare(old[key], new[key], sub))
        return lines

    if isinstance(old, pd.DataFrame) or isinstance(new, pd.DataFrame):
        if isinstance(old, pd.DataFrame) and isinstance(new, pd.DataFrame):
            if _frames_equal(old, new):
                return []
        return [_line(name, MISSING if old is None else old, MISSING if new is None else new)]

    if old != new:
        return [_line(name, MISSING if old is None else old, MISSING if new is None else new)]
    return []
