"""
Local model store.
Owns the on-disk model directory and a TTL cache of model metadata.

Layout:
    <root>/models_cache.json          all records, keyed by id
    <root>/<model-dir>/metadata.json  one record per model (authoritative)
    <root>/<model-dir>/<model-file>
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from modelkeeper import config
from modelkeeper.errors import NotFoundError, StorageError
from modelkeeper.models.integrity import IntegrityVerifier
from modelkeeper.models.record import ModelRecord
from modelkeeper.utils.logging import logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def model_dir_name(model_id: str) -> str:
    """Directory name for a model id ("hf:org/repo" -> "hf_org_repo")."""
    name = _UNSAFE_CHARS.sub("_", model_id).strip(".")
    return name or "_"


def write_json_atomic(path: Path, data) -> None:
    """Write JSON next to the target, fsync, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


@dataclass(frozen=True)
class StorageStatistics:
    total_size: int
    model_count: int


class LocalModelStore:
    """
    Durable storage of model files and their metadata.

    Per-model metadata.json is the source of truth for is_local/local_path;
    the cache file only saves a directory walk on startup. Readers may see a
    cache up to ``ttl`` seconds old but never a partially written one.
    """

    def __init__(
        self,
        root: Path | None = None,
        ttl: float = config.CACHE_TTL_SECONDS,
        verifier: IntegrityVerifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = Path(root) if root else config.MODELS_DIR
        self.cache_file = self.root / config.CACHE_FILE
        self.ttl = ttl
        self.verifier = verifier or IntegrityVerifier()
        self._clock = clock
        self._lock = threading.RLock()
        self._cache: dict[str, ModelRecord] = {}
        self._refreshed_at: float | None = None

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create models directory {self.root}: {e}") from e
        logger.info(f"Model store at {self.root}")
        self._load_cache()

    # ─────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────

    @property
    def is_stale(self) -> bool:
        with self._lock:
            if self._refreshed_at is None:
                return True
            return self._clock() - self._refreshed_at > self.ttl

    def get(self, model_id: str) -> Optional[ModelRecord]:
        """Get a model by id, refreshing from disk first if the cache is stale."""
        with self._lock:
            self._refresh_if_needed()
            return self._cache.get(model_id)

    def list(self) -> list[ModelRecord]:
        """All known models sorted by name."""
        with self._lock:
            self._refresh_if_needed()
            return sorted(self._cache.values(), key=lambda m: (m.name.lower(), m.id))

    def model_path(self, model_id: str) -> Optional[Path]:
        """Path to a local model file, or None if not downloaded."""
        record = self.get(model_id)
        if record and record.is_local and record.local_path:
            return Path(record.local_path)
        return None

    def model_dir(self, model_id: str) -> Path:
        return self.root / model_dir_name(model_id)

    def statistics(self) -> StorageStatistics:
        local = [m for m in self.list() if m.is_local]
        return StorageStatistics(
            total_size=sum(m.size for m in local),
            model_count=len(local),
        )

    # ─────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────

    def add(self, record: ModelRecord, source: Path | str, move: bool = False) -> ModelRecord:
        """
        Put a model file into the store.

        Args:
            record: Descriptor of the model
            source: File to copy (or move) into the model directory
            move: Rename instead of copying (used for finished downloads)

        Returns:
            The stored record with local_path and is_local set

        Raises:
            NotFoundError: If source does not exist
            StorageError: If the copy or the metadata write fails
        """
        source = Path(source)
        if not source.is_file():
            raise NotFoundError(f"Model file not found at path: {source}", model_id=record.id)

        logger.info(f"Adding model to store: {record.name}")
        model_dir = self.model_dir(record.id)
        destination = model_dir / source.name

        with self._lock:
            previous = self._cache.get(record.id)
            try:
                model_dir.mkdir(parents=True, exist_ok=True)
                in_place = destination.exists() and destination.resolve() == source.resolve()
                if not in_place:
                    destination.unlink(missing_ok=True)
                    if move:
                        shutil.move(str(source), destination)
                    else:
                        shutil.copy2(source, destination)

                # A re-add with a different file name replaces the old artifact
                if previous and previous.local_path:
                    old_path = Path(previous.local_path)
                    if old_path != destination and old_path.parent == model_dir:
                        old_path.unlink(missing_ok=True)

                stored = record.model_copy(
                    update={
                        "local_path": str(destination),
                        "is_local": True,
                        "is_loaded": previous.is_loaded if previous else record.is_loaded,
                        "updated_at": datetime.now(timezone.utc),
                    }
                )
                write_json_atomic(model_dir / config.METADATA_FILE, stored.model_dump(mode="json"))
            except OSError as e:
                raise StorageError(f"Failed to add model {record.id}: {e}", model_id=record.id) from e

            self._cache[stored.id] = stored
            self._save_cache()

        logger.info(f"Successfully added model: {record.name}")
        return stored

    def delete(self, record: ModelRecord) -> None:
        """
        Remove a model directory. Idempotent when it is already gone.

        Raises:
            NotFoundError: If the record is not stored locally
            StorageError: If the directory cannot be removed
        """
        if not record.local_path:
            raise NotFoundError("Model is not stored locally", model_id=record.id)

        model_dir = self.model_dir(record.id)
        logger.info(f"Deleting model: {record.name} at {model_dir}")

        with self._lock:
            try:
                if model_dir.exists():
                    shutil.rmtree(model_dir)
            except OSError as e:
                raise StorageError(f"Failed to delete model {record.id}: {e}", model_id=record.id) from e

            self._cache.pop(record.id, None)
            self._save_cache()

        logger.info(f"Deleted {model_dir}")

    def set_loaded(self, model_id: str, loaded: bool) -> Optional[ModelRecord]:
        """Mirror the inference engine's loaded flag. Returns None for unknown ids."""
        with self._lock:
            record = self._cache.get(model_id)
            if record is None:
                return None
            updated = record.model_copy(update={"is_loaded": loaded})
            self._cache[model_id] = updated
            self._save_cache()
            return updated

    def discover(self) -> list[ModelRecord]:
        """
        Rebuild the cache from every metadata.json under the root.

        Records whose file disappeared lose local_path/is_local.
        """
        logger.info(f"Discovering local models in directory: {self.root}")

        with self._lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                directories = [p for p in self.root.iterdir() if p.is_dir() and not p.name.startswith(".")]
            except OSError as e:
                raise StorageError(f"Cannot scan models directory {self.root}: {e}") from e

            discovered: dict[str, ModelRecord] = {}
            for directory in sorted(directories):
                try:
                    record = self._load_from_directory(directory)
                except (OSError, ValueError, PydanticValidationError) as e:
                    logger.error(f"Failed to load model from directory {directory}: {e}")
                    continue
                if record is None:
                    continue

                previous = self._cache.get(record.id)
                if previous is not None and previous.is_loaded and record.is_local:
                    record = record.model_copy(update={"is_loaded": True})

                if not record.is_catalogable:
                    logger.warning(f"Skipping {record.id}: file missing and no download URL")
                    continue
                discovered[record.id] = record
                logger.debug(f"Discovered model: {record.name}")

            self._cache = discovered
            self._refreshed_at = self._clock()
            self._save_cache()

            logger.info(f"Discovered {len(discovered)} local models")
            return list(discovered.values())

    def cleanup_orphans(self) -> int:
        """Remove model directories that have no metadata file (interrupted adds)."""
        logger.info("Cleaning up orphaned model directories")
        cleaned = 0
        with self._lock:
            for directory in self.root.iterdir():
                if not directory.is_dir() or directory.name.startswith("."):
                    continue
                if (directory / config.METADATA_FILE).exists():
                    continue
                logger.info(f"Removing orphaned directory: {directory}")
                try:
                    shutil.rmtree(directory)
                except OSError as e:
                    raise StorageError(f"Failed to remove {directory}: {e}") from e
                cleaned += 1

        logger.info(f"Cleaned up {cleaned} orphaned directories")
        return cleaned

    def verify_integrity(self, record: ModelRecord) -> bool:
        """Size (and checksum, when known) check through the verifier."""
        return self.verifier.verify(record).is_valid

    # ─────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────

    def _refresh_if_needed(self) -> None:
        if self.is_stale:
            self.discover()

    def _load_from_directory(self, directory: Path) -> Optional[ModelRecord]:
        metadata_path = directory / config.METADATA_FILE
        if not metadata_path.exists():
            return None

        data = json.loads(metadata_path.read_text(encoding="utf-8"))
        record = ModelRecord.model_validate(data)

        if not record.local_path:
            return record
        if not Path(record.local_path).is_file():
            logger.warning(f"Model file missing for {record.id}: {record.local_path}")
            return record.model_copy(update={"local_path": None, "is_local": False, "is_loaded": False})
        if not record.is_local:
            record = record.model_copy(update={"is_local": True})
        return record

    def _load_cache(self) -> None:
        """Load the cache file, falling back to a directory walk."""
        if not self.cache_file.exists():
            self.discover()
            return

        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
            self._cache = {
                model_id: ModelRecord.model_validate(entry)
                for model_id, entry in data.items()
            }
            self._refreshed_at = self._clock()
            logger.info(f"Loaded {len(self._cache)} models from cache")
        except (OSError, ValueError, AttributeError, PydanticValidationError) as e:
            logger.error(f"Failed to load model cache, discovering models: {e}")
            self.discover()

    def _save_cache(self) -> None:
        data = {model_id: m.model_dump(mode="json") for model_id, m in self._cache.items()}
        try:
            write_json_atomic(self.cache_file, data)
        except OSError as e:
            raise StorageError(f"Failed to write model cache: {e}") from e
        logger.debug(f"Saved model cache with {len(data)} models")
