"""File-format access: sidecar documents/tables and raw recording adapters."""

from .raw import DsFolderAdapter, RawMetadata, RawSourceAdapter  # noqa: F401
from .sidecars import SidecarStore  # noqa: F401

__all__ = ["DsFolderAdapter", "RawMetadata", "RawSourceAdapter", "SidecarStore"]
