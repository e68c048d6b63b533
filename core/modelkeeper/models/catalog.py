"""
Model catalog facade.
Merges the remote catalog with the local store into one searchable view and
fronts every download operation. The only entry point the API and the
inference side talk to.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from modelkeeper import config
from modelkeeper.errors import NetworkError, NoDownloadURLError, NotFoundError, StorageError
from modelkeeper.models.compatibility import (
    CompatibilityChecker,
    CompatibilityReport,
    ResourceEstimate,
)
from modelkeeper.models.coordinator import DownloadCoordinator, ProgressCallback
from modelkeeper.models.integrity import IntegrityVerifier, VerificationResult
from modelkeeper.models.manager import (
    DownloadManager,
    DownloadRecord,
    DownloadState,
    DownloadStatistics,

    DownloadStatus,)
from modelkeeper.models.record import (
    ModelCategory,
    ModelCompatibility,
    ModelRecord,
    ModelSearchFilters,
)
from modelkeeper.models.search import filter_records
from modelkeeper.models.sources import CatalogProvider, CatalogSource, HuggingFaceProvider
from modelkeeper.models.store import LocalModelStore
from modelkeeper.utils.logging import logger

FEATURED_TAGS = ("featured", "popular")


def merge_records(
    remote: Iterable[ModelRecord], local: Iterable[ModelRecord]
) -> list[ModelRecord]:
    """
    Merge remote and local records by id.

    Remote-only and local-only records pass through. When both sides know an
    id, the remote record supplies the descriptive fields and the local one
    supplies local_path, is_local, is_loaded and updated_at. Records with
    neither a download URL nor a local path are dropped.
    """
    merged: dict[str, ModelRecord] = {}
    for record in remote:
        merged.setdefault(record.id, record)

    for record in local:
        known = merged.get(record.id)
        if known is None:
            merged[record.id] = record
            continue
        merged[record.id] = known.model_copy(
            update={
                "local_path": record.local_path,
                "is_local": record.is_local,
                "is_loaded": record.is_loaded,
                "updated_at": record.updated_at or known.updated_at,
            }
        )

    return sorted(
        (r for r in merged.values() if r.is_catalogable),
        key=lambda r: (r.name.lower(), r.id),
    )


@dataclass(frozen=True)
class CatalogSnapshot:
    """Merged view at a point in time. Rebuilt, never mutated."""

    records: tuple[ModelRecord, ...]
    remote_fetched_at: Optional[datetime]
    merged_at: datetime
    built_at: float  # clock value, for the TTL

    def get(self, model_id: str) -> Optional[ModelRecord]:
        return next((r for r in self.records if r.id == model_id), None)


class ModelCatalog:
    """
    Unified view over remote and local models.

    The remote list is only re-fetched on refresh(remote=True). The local
    side is re-read when the snapshot is older than the TTL or after any
    change that goes through this facade (download finished, delete,
    loaded flag).
    """

    def __init__(
        self,
        source: CatalogSource,
        store: LocalModelStore,
        manager: DownloadManager | None = None,
        checker: CompatibilityChecker | None = None,
        ttl: float = config.CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.store = store
        self.manager = manager or DownloadManager(store)
        self.checker = checker or CompatibilityChecker()
        self.ttl = ttl
        self._clock = clock

        self._remote: list[ModelRecord] | None = None
        self._snapshot: CatalogSnapshot | None = None
        self._dirty = False
        self._refresh_lock = asyncio.Lock()

        self.manager.subscribe(self._on_download_finished)

    @classmethod
    def create(
        cls,
        data_dir: Path | None = None,
        providers: Iterable[CatalogProvider] | None = None,
        max_concurrent: int = config.MAX_CONCURRENT_DOWNLOADS,
    ) -> "ModelCatalog":
        """Build the default stack rooted at data_dir."""
        data_dir = Path(data_dir) if data_dir else config.DATA_DIR
        verifier = IntegrityVerifier()
        store = LocalModelStore(root=data_dir / "Models", verifier=verifier)
        coordinator = DownloadCoordinator(store, verifier, downloads_dir=data_dir / "Downloads")
        manager = DownloadManager(store, coordinator, max_concurrent=max_concurrent)
        if providers is None:
            providers = [HuggingFaceProvider()]
        return cls(CatalogSource(providers), store, manager)

    # ─────────────────────────────────────────────────────────
    # Snapshot
    # ─────────────────────────────────────────────────────────

    @property
    def is_stale(self) -> bool:
        if self._snapshot is None or self._dirty:
            return True
        return self._clock() - self._snapshot.built_at > self.ttl

    async def refresh(self, remote: bool = True) -> CatalogSnapshot:
        """
        Rebuild the snapshot.

        Args:
            remote: Re-fetch from the catalog providers as well; otherwise
                only the local store is re-read
        """
        async with self._refresh_lock:
            if remote or self._remote is None:
                self._remote = await self.source.fetch()

            # A download finishing during the read sets _dirty again
            self._dirty = False
            loop = asyncio.get_running_loop()
            local = await loop.run_in_executor(None, self._read_local)

            records = merge_records(self._remote, local)
            self._snapshot = CatalogSnapshot(
                records=tuple(records),
                remote_fetched_at=self.source.fetched_at,
                merged_at=datetime.now().astimezone(),
                built_at=self._clock(),
            )
            logger.info(
                f"Catalog refreshed: {len(records)} models "
                f"({sum(1 for r in records if r.is_local)} local)"
            )
            return self._snapshot

    async def snapshot(self) -> CatalogSnapshot:
        """Current snapshot; re-reads the local store when stale."""
        if self._snapshot is None:
            return await self.refresh(remote=True)
        if self.is_stale:
            return await self.refresh(remote=False)
        return self._snapshot

    def invalidate(self) -> None:
        self._dirty = True

    def _read_local(self) -> list[ModelRecord]:
        if self.store.is_stale:
            self.store.discover()
        return self.store.list()

    def _on_download_finished(self, entry: DownloadRecord) -> None:
        logger.debug(f"Download of {entry.model_id} finished ({entry.status.value}), invalidating catalog")
        self._dirty = True

    # ─────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────

    async def models(self) -> list[ModelRecord]:
        return list((await self.snapshot()).records)

    async def get(self, model_id: str) -> Optional[ModelRecord]:
        return (await self.snapshot()).get(model_id)

    async def search(
        self, query: str = "", filters: ModelSearchFilters | None = None
    ) -> list[ModelRecord]:
        records = await self.models()
        return filter_records(records, query, filters, self.checker.compatibility_of)

    async def by_category(self, category: ModelCategory) -> list[ModelRecord]:
        records = await self.models()

        if category == ModelCategory.ALL:
            return records
        if category == ModelCategory.LOCAL:
            return [r for r in records if r.is_local]
        if category == ModelCategory.REMOTE:
            return [r for r in records if not r.is_local]
        if category == ModelCategory.DOWNLOADING:
            downloading = self.manager.active_ids()
            return [r for r in records if r.id in downloading]
        if category == ModelCategory.COMPATIBLE:
            return [r for r in records if self.checker.compatibility_of(r) == ModelCompatibility.FULLY_COMPATIBLE]
        if category == ModelCategory.FEATURED:
            return [r for r in records if any(tag in r.tags for tag in FEATURED_TAGS)]
        raise ValueError(f"Unknown category: {category}")

    async def compatibility(self, model_id: str) -> CompatibilityReport:
        return self.checker.check(await self._require(model_id))

    async def resource_estimate(self, model_id: str) -> ResourceEstimate:
        """Memory and storage hint for the inference side."""
        return ResourceEstimate.for_record(await self._require(model_id))

    def local_path(self, model_id: str) -> Optional[Path]:
        return self.store.model_path(model_id)

    async def _require(self, model_id: str) -> ModelRecord:
        record = await self.get(model_id)
        if record is None:
            raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)
        return record

    # ─────────────────────────────────────────────────────────
    # Downloads
    # ─────────────────────────────────────────────────────────

    async def download(
        self,
        model_id: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DownloadState:
        """Admit a download for a catalog model; see DownloadManager.start."""
        record = await self._require(model_id)
        return await self.manager.start(record, progress_callback)

    def cancel_download(self, model_id: str) -> DownloadRecord:
        return self.manager.cancel(model_id)

    async def retry_download(
        self,
        model_id: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DownloadState:
        return await self.manager.retry(model_id, progress_callback)

    def download_progress(self, model_id: str) -> Optional[DownloadState]:
        return self.manager.progress(model_id)

    def active_downloads(self) -> list[DownloadState]:
        return self.manager.active()

    def download_history(self) -> list[DownloadRecord]:
        return self.manager.history()

    def download_statistics(self) -> DownloadStatistics:
        return self.manager.statistics()

    # ─────────────────────────────────────────────────────────
    # Local models
    # ─────────────────────────────────────────────────────────

    async def add_local(self, record: ModelRecord, path: Path | str) -> ModelRecord:
        """Import a model file that is already on disk."""
        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(None, lambda: self.store.add(record, path))
        self.invalidate()
        return stored

    async def delete_model(self, model_id: str) -> None:
        """
        Delete a downloaded model. The remote record stays in the catalog.

        Raises:
            NotFoundError: If the model is not stored locally
        """
        record = self.store.get(model_id)
        if record is None or not record.is_local:
            raise NotFoundError(f"Model is not stored locally: {model_id}", model_id=model_id)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self.store.delete(record))
        self.invalidate()

    async def verify_model(self, model_id: str) -> VerificationResult:
        """Full integrity check (size, format, checksum when known)."""
        record = self.store.get(model_id)
        if record is None or not record.is_local:
            raise NotFoundError(f"Model is not stored locally: {model_id}", model_id=model_id)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: self.store.verifier.verify(record))
        logger.info(f"Verification of {record.name}: {result.summary}")
        return result

    async def repair_model(
        self,
        model_id: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> VerificationResult:
        """
        Replace a damaged local copy: delete it, download it again and verify.

        Unlike download(), this waits for the transfer to finish.

        Raises:
            NotFoundError: If the model is not stored locally
            NoDownloadURLError: If the model cannot be downloaded again
            NetworkError: If the new download does not complete
            StorageError: If the new copy still fails verification
        """
        local = self.store.get(model_id)
        if local is None or not local.is_local:
            raise NotFoundError(f"Model is not stored locally: {model_id}", model_id=model_id)

        known = await self.get(model_id)
        source = known if known is not None and known.download_url else local
        if not source.download_url:
            raise NoDownloadURLError(
                f"No download URL available to repair model '{local.name}'", model_id=model_id
            )

        logger.info(f"Repairing model: {local.name}")
        await self.delete_model(model_id)

        fresh = source.model_copy(update={"local_path": None, "is_local": False, "is_loaded": False})
        await self.manager.start(fresh, progress_callback)
        await self.manager.wait(model_id)

        entry = next((h for h in reversed(self.manager.history()) if h.model_id == model_id), None)
        if entry is None or entry.status != DownloadStatus.COMPLETED:
            reason = entry.error if entry is not None and entry.error else "download did not complete"
            raise NetworkError(f"Repair download of {local.name} failed: {reason}", model_id=model_id)

        result = await self.verify_model(model_id)
        if not result.is_valid:
            raise StorageError(
                f"Model {local.name} is still invalid after repair: {result.summary}",
                model_id=model_id,
            )
        logger.info(f"Repaired model: {local.name}")
        return result

    def set_loaded(self, model_id: str, loaded: bool) -> Optional[ModelRecord]:
        """Mirror the inference engine's loaded flag into the store."""
        updated = self.store.set_loaded(model_id, loaded)
        if updated is not None:
            self.invalidate()
        return updated
