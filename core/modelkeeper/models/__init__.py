"""Models module - catalog, local store, downloads and integrity checks."""

from modelkeeper.models.catalog import CatalogSnapshot, ModelCatalog, merge_records
from modelkeeper.models.compatibility import (
    CompatibilityChecker,
    CompatibilityReport,
    ResourceEstimate,
)
from modelkeeper.models.coordinator import DownloadCoordinator, DownloadOutcome
from modelkeeper.models.integrity import FormatKind, IntegrityVerifier, VerificationResult
from modelkeeper.models.manager import (
    DownloadManager,
    DownloadRecord,
    DownloadState,
    DownloadStatistics,
    DownloadStatus,
)
from modelkeeper.models.record import (
    ModelCategory,
    ModelCompatibility,
    ModelRecord,
    ModelSearchFilters,
    ModelSortOption,
)
from modelkeeper.models.sources import (
    CatalogProvider,
    CatalogSource,
    HuggingFaceProvider,
    StaticProvider,
)
from modelkeeper.models.store import LocalModelStore, StorageStatistics

__all__ = [
    "CatalogSnapshot",
    "ModelCatalog",
    "merge_records",
    "CompatibilityChecker",
    "CompatibilityReport",
    "ResourceEstimate",
    "DownloadCoordinator",
    "DownloadOutcome",
    "FormatKind",
    "IntegrityVerifier",
    "VerificationResult",
    "DownloadManager",
    "DownloadRecord",
    "DownloadState",
    "DownloadStatistics",
    "DownloadStatus",
    "ModelCategory",
    "ModelCompatibility",
    "ModelRecord",
    "ModelSearchFilters",
    "ModelSortOption",
    "CatalogProvider",
    "CatalogSource",
    "HuggingFaceProvider",
    "StaticProvider",
    "LocalModelStore",
    "StorageStatistics",
]
