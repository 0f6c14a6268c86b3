"""
YAML configuration loader.

Search precedence for *curate.yaml* (first match wins)
1. An explicit path argument (``--config`` on the CLI).
2. ``<dataset>/code/config/curate.yaml`` – project-local override.
3. The packaged default shipped inside the wheel.

The dataset-local or explicit file is layered over the packaged default, so
it only needs to contain the keys that differ.
"""

from __future__ import annotations

from importlib.resources import as_file, files
from pathlib import Path
from typing import Optional

import structlog
import yaml

from .schema import ConfigSchema

log = structlog.get_logger()

_FNAME = "curate.yaml"

try:
    _DEFAULT = files("bidscurate.resources") / "default_curate.yaml"
except ModuleNotFoundError:
    _DEFAULT = Path(__file__).resolve().parent.parent / "resources" / "default_curate.yaml"


def _dataset_local(root: Optional[Path]) -> Optional[Path]:
    """Return ``<root>/code/config/curate.yaml`` or *None* without a root."""
    if root is None:
        return None
    return root / "code" / "config" / _FNAME


def _load_yaml(path: Path) -> dict:
    """Read a YAML mapping; an empty file yields ``{}``."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise RuntimeError(f"Invalid configuration – {path} is not a mapping")
    return data


def _deep_update(base: dict, extra: dict) -> dict:
    """Recursively overlay *extra* onto *base* (lists are replaced, not merged)."""
    out = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_update(out[key], value)
        else:
            out[key] = value
    return out


def load_config(
    *,
    config_path: Optional[str | Path] = None,
    dataset_root: Optional[str | Path] = None,
) -> ConfigSchema:
    """Return a validated :class:`ConfigSchema`.

    Args:
        config_path: Explicit YAML path; takes precedence over every other
            candidate.
        dataset_root: Dataset root used to look for a project-local override.

    Returns:
        The merged configuration.

    Raises:
        FileNotFoundError: When *config_path* is given but missing.
        RuntimeError: When the merged YAML fails validation.
    """
    root = Path(dataset_root).expanduser().resolve() if dataset_root else None
    explicit = Path(config_path).expanduser().resolve() if config_path else None
    if explicit is not None and not explicit.exists():
        raise FileNotFoundError(explicit)

    with as_file(_DEFAULT) as p:
        merged = _load_yaml(p)

    override = explicit
    if override is None:
        local = _dataset_local(root)
        override = local if local is not None and local.exists() else None
    if override is not None:
        log.debug("[config] using %s", override)
        merged = _deep_update(merged, _load_yaml(override))

    try:
        return ConfigSchema(**merged)
    except Exception as exc:  # pydantic.ValidationError
        raise RuntimeError(f"Invalid configuration – {exc}") from exc
