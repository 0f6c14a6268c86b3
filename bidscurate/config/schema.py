"""
Pydantic models that mirror the YAML configuration consumed by *bidscurate*.

Every section carries defaults, so ``ConfigSchema()`` is a complete
configuration and a dataset-local YAML only needs the keys it changes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "LayoutConfig",
    "NoiseConfig",
    "NamingConfig",
    "ScansConfig",
    "ShiftConfig",
    "MergeConfig",
    "ConfigSchema",
]


# --------------------------------------------------------------------------- #
# 1.  Sections                                                                #
# --------------------------------------------------------------------------- #
class LayoutConfig(BaseModel):
    """Where recordings live and how they are named."""

    modality: str = Field("meg", description="Data-type folder under ses-*/")
    suffix: str = Field("meg", description="Modality suffix of recording names")
    extension: str = Field(".ds", description="Recording extension, with dot")
    exclude: List[str] = Field(default_factory=lambda: ["*hz.ds"])

    @field_validator("extension")
    @classmethod
    def _dotted(cls, v: str) -> str:
        return v if v.startswith(".") else f".{v}"


class NoiseConfig(BaseModel):
    """Empty-room recordings and their association window."""

    subject: str = "emptyroom"
    task: str = "noise"
    max_gap_hours: float = Field(24, gt=0)

    @property
    def max_gap(self) -> timedelta:
        return timedelta(hours=self.max_gap_hours)


class NamingConfig(BaseModel):
    rest_prefix: str = "rest"
    rest_synonyms: List[str] = Field(
        default_factory=lambda: [
            "spontaneous",
            "restingstate",
            "baselineresting",
            "baselinerest",
            "restbaseline",
            "resting",
            "rest",
        ]
    )
    allowed_acq: List[str] = Field(default_factory=lambda: ["AUX"])

    @property
    def ordered_synonyms(self) -> List[str]:
        """Synonyms longest first so that no synonym is replaced inside a longer one."""
        return sorted(self.rest_synonyms, key=len, reverse=True)


class ScansConfig(BaseModel):
    tolerance_hours: float = Field(1, ge=0)

    @property
    def tolerance(self) -> timedelta:
        return timedelta(hours=self.tolerance_hours)


class ShiftConfig(BaseModel):
    """Anonymisation target and ledger location."""

    target_epoch: datetime = datetime(2000, 1, 1, 12, 0, 0)
    backup_folder: str = "sourcedata"
    ledger: str = "date_shifting.tsv"


class MergeConfig(BaseModel):
    zero_pad: int = Field(2, ge=1)
    temp_suffix: str = Field("temp", pattern=r"^[A-Za-z0-9]+$")


# --------------------------------------------------------------------------- #
# 2.  Root model                                                              #
# --------------------------------------------------------------------------- #
class ConfigSchema(BaseModel):
    """Fully validated curation settings."""

    version: str = "1.0"
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    noise: NoiseConfig = Field(default_factory=NoiseConfig)
    naming: NamingConfig = Field(default_factory=NamingConfig)
    sub_datasets: List[str] = Field(
        default_factory=lambda: ["sourcedata", "derivatives", "extras"]
    )
    scans: ScansConfig = Field(default_factory=ScansConfig)
    shift: ShiftConfig = Field(default_factory=ShiftConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    cross_references: List[str] = Field(
        default_factory=lambda: ["AssociatedEmptyRoom", "DigitizedHeadPoints", "IntendedFor"]
    )
    audit_folder: str = "derivatives/curation_audit"
    bids_version: str = "1.7.0"

    @field_validator("sub_datasets")
    @classmethod
    def _plain_names(cls, v: List[str]) -> List[str]:
        """Sub-dataset entries are single folder names below the root."""
        bad = [name for name in v if not name or "/" in name or "\\" in name]
        if bad:
            raise ValueError("sub_datasets must be plain folder names: " + ", ".join(bad))
        return v
