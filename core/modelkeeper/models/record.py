"""
Model descriptors shared by the catalog, the local store and the downloaders.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


class ModelCompatibility(str, Enum):
    """How well a model is expected to run on this machine."""

    FULLY_COMPATIBLE = "fully_compatible"
    PARTIALLY_COMPATIBLE = "partially_compatible"
    INCOMPATIBLE = "incompatible"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        """Ordering used for sorting and for combining checks (higher is better)."""
        return _COMPATIBILITY_RANK[self]

    @property
    def display_name(self) -> str:
        return _COMPATIBILITY_LABELS[self][0]

    @property
    def description(self) -> str:
        return _COMPATIBILITY_LABELS[self][1]


_COMPATIBILITY_RANK = {
    ModelCompatibility.INCOMPATIBLE: 0,
    ModelCompatibility.UNKNOWN: 1,
    ModelCompatibility.PARTIALLY_COMPATIBLE: 2,
    ModelCompatibility.FULLY_COMPATIBLE: 3,
}

_COMPATIBILITY_LABELS = {
    ModelCompatibility.FULLY_COMPATIBLE: (
        "Fully Compatible",
        "This model is fully compatible with your system and will run optimally.",
    ),
    ModelCompatibility.PARTIALLY_COMPATIBLE: (
        "Partially Compatible",
        "This model may have limited functionality or reduced performance on your system.",
    ),
    ModelCompatibility.INCOMPATIBLE: (
        "Incompatible",
        "This model is not compatible with your current system configuration.",
    ),
    ModelCompatibility.UNKNOWN: (
        "Unknown",
        "Compatibility with your system has not been determined.",
    ),
}


def parse_parameter_count(label: str) -> float:
    """
    Parse a parameter label into billions.

    "7B" -> 7.0, "350M" -> 0.35, "125K" -> 0.000125. Unknown labels -> 0.
    """
    clean = (label or "").strip().upper()
    scale = {"B": 1.0, "M": 1e-3, "K": 1e-6}.get(clean[-1:]) if clean else None
    if scale is None:
        return 0.0
    try:
        return float(clean[:-1]) * scale
    except ValueError:
        return 0.0


def format_size(bytes_size: float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_size < 1024:
            return f"{bytes_size:.1f} {unit}"
        bytes_size /= 1024
    return f"{bytes_size:.1f} TB"


class ModelRecord(BaseModel):
    """
    A model descriptor, remote and/or local.

    Records are immutable; merges and download completion produce new values
    via ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    id: str  # Provider-qualified: "hf:Qwen/Qwen2.5-1.5B-Instruct-GGUF/qwen2.5-1.5b-instruct-q4_k_m.gguf"
    name: str
    author: str = ""
    description: str = ""
    size: int = Field(default=0, ge=0)  # declared bytes
    parameters: str = ""  # "7B", "350M"
    compatibility: ModelCompatibility = ModelCompatibility.UNKNOWN
    tags: tuple[str, ...] = ()
    license: Optional[str] = None
    version: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    download_url: Optional[str] = None
    local_path: Optional[str] = None
    checksum: Optional[str] = None  # lower-case hex SHA-256
    is_local: bool = False
    is_loaded: bool = False  # owned by the inference engine, mirrored as a hint

    @field_validator("checksum")
    @classmethod
    def _normalise_checksum(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        value = value.strip().lower()
        if not _HEX_DIGEST.match(value):
            raise ValueError("checksum must be a hex-encoded SHA-256 digest")
        return value

    @property
    def display_name(self) -> str:
        if self.parameters:
            return f"{self.name} ({self.parameters})"
        return self.name

    @property
    def size_string(self) -> str:
        return format_size(self.size)

    @property
    def parameter_count(self) -> float:
        """Parameter count in billions, 0 when the label is not parseable."""
        return parse_parameter_count(self.parameters)

    @property
    def can_load(self) -> bool:
        return (
            self.is_local
            and not self.is_loaded
            and self.compatibility != ModelCompatibility.INCOMPATIBLE
        )

    @property
    def can_download(self) -> bool:
        return not self.is_local and self.download_url is not None

    @property
    def is_catalogable(self) -> bool:
        """A record needs a download URL or a local path to be listed."""
        return bool(self.download_url) or bool(self.local_path)


class ModelSortOption(str, Enum):
    NAME = "name"
    AUTHOR = "author"
    SIZE = "size"
    PARAMETERS = "parameters"
    DATE_CREATED = "date_created"
    DATE_UPDATED = "date_updated"
    COMPATIBILITY = "compatibility"


class ModelCategory(str, Enum):
    ALL = "all"
    LOCAL = "local"
    REMOTE = "remote"
    DOWNLOADING = "downloading"
    COMPATIBLE = "compatible"
    FEATURED = "featured"


class ModelSearchFilters(BaseModel):
    """Filters and ordering for catalog searches."""

    compatibility: Optional[ModelCompatibility] = None
    min_parameters: Optional[float] = None  # billions
    max_parameters: Optional[float] = None
    min_size: Optional[int] = None  # bytes
    max_size: Optional[int] = None
    author: Optional[str] = None
    tags: list[str] = []
    license: Optional[str] = None
    sort_by: ModelSortOption = ModelSortOption.NAME
    ascending: bool = True

    @classmethod
    def compatible_only(cls) -> "ModelSearchFilters":
        return cls(compatibility=ModelCompatibility.FULLY_COMPATIBLE)

    @classmethod
    def small_models(cls) -> "ModelSearchFilters":
        """Models under 10B parameters."""
        return cls(max_parameters=10.0)

    @classmethod
    def large_models(cls) -> "ModelSearchFilters":
        """Models over 30B parameters."""
        return cls(min_parameters=30.0)

    @classmethod
    def by_author(cls, author: str) -> "ModelSearchFilters":
        return cls(author=author)

    @classmethod
    def with_tags(cls, tags: list[str]) -> "ModelSearchFilters":
        return cls(tags=list(tags))
