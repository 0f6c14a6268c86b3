"""Click callbacks that normalise list-valued options."""

from __future__ import annotations

__all__ = ["split_commas", "split_subjects"]


def split_commas(_ctx, _param, values: tuple[str, ...]) -> tuple[str, ...]:
    """Flatten a repeatable, comma-separated option.

    ``--keep Manufacturer,PowerLineFrequency --keep channels`` yields three
    tokens.  Blank tokens are dropped and repeats keep their first position.
    """
    tokens: dict[str, None] = {}
    for value in values:
        for token in value.split(","):
            token = token.strip()
            if token:
                tokens.setdefault(token, None)
    return tuple(tokens)


def split_subjects(ctx, param, values: tuple[str, ...]) -> tuple[str, ...]:
    """Same as :func:`split_commas` for subject labels, ``sub-`` prefix removed."""
    labels = (
        v[len("sub-"):] if v.startswith("sub-") else v
        for v in split_commas(ctx, param, values)
    )
    return tuple(dict.fromkeys(labels))
