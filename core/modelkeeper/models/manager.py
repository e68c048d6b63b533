"""
Download manager.
Supervises concurrent DownloadCoordinator runs: admission control,
single-flight per model, bounded history, retry and statistics.
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from modelkeeper import config
from modelkeeper.errors import (
    AlreadyInProgressError,
    AlreadyLocalError,
    ConcurrencyLimitReachedError,
    DownloadCancelledError,
    ModelKeeperError,
    NoDownloadURLError,
    NotFailedError,
    NotFoundError,
)
from modelkeeper.models.coordinator import DownloadCoordinator, DownloadOutcome, ProgressCallback
from modelkeeper.models.record import ModelRecord, format_size
from modelkeeper.models.store import LocalModelStore
from modelkeeper.utils.logging import logger


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (DownloadStatus.PENDING, DownloadStatus.DOWNLOADING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DownloadState:
    """Live progress of one download. Callers only ever see copies."""

    model_id: str
    model_name: str
    expected_size: int
    status: DownloadStatus = DownloadStatus.PENDING
    bytes_written: int = 0
    resumed_from: int = 0
    speed: float = 0.0  # bytes per second over this attempt
    eta: Optional[float] = None  # seconds
    started_at: datetime = field(default_factory=_now)
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    _started_mono: float = field(default_factory=time.monotonic, repr=False)

    @property
    def progress(self) -> float:
        if self.expected_size <= 0:
            return 0.0
        return min(self.bytes_written / self.expected_size, 1.0)

    def update_progress(self, written: int, total: int) -> None:
        if self.status == DownloadStatus.PENDING:
            self.status = DownloadStatus.DOWNLOADING
            self.resumed_from = written
        if total > 0:
            self.expected_size = total
        self.bytes_written = max(self.bytes_written, written)

        elapsed = time.monotonic() - self._started_mono
        transferred = self.bytes_written - self.resumed_from
        if elapsed > 0 and transferred > 0:
            self.speed = transferred / elapsed
            remaining = self.expected_size - self.bytes_written
            self.eta = remaining / self.speed if remaining > 0 else 0.0

    def copy(self) -> "DownloadState":
        return replace(self, warnings=list(self.warnings))

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "status": self.status.value,
            "expected_size": self.expected_size,
            "bytes_written": self.bytes_written,
            "resumed_from": self.resumed_from,
            "progress_percent": round(self.progress * 100, 1),
            "speed": round(self.speed, 1),
            "speed_formatted": f"{format_size(self.speed)}/s",
            "eta": round(self.eta, 1) if self.eta is not None else None,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class DownloadRecord:
    """A finished (completed, failed or cancelled) download."""

    model_id: str
    model_name: str
    status: DownloadStatus
    expected_size: int
    bytes_written: int
    started_at: datetime
    ended_at: datetime
    record: ModelRecord  # original descriptor, reused by retry
    error: Optional[str] = None
    warnings: tuple[str, ...] = ()
    resumed_from: int = 0

    @classmethod
    def from_state(cls, state: DownloadState, record: ModelRecord) -> "DownloadRecord":
        return cls(
            model_id=state.model_id,
            model_name=state.model_name,
            status=state.status,
            expected_size=state.expected_size,
            bytes_written=state.bytes_written,
            started_at=state.started_at,
            ended_at=state.ended_at or _now(),
            record=record,
            error=state.error,
            warnings=tuple(state.warnings),
            resumed_from=state.resumed_from,
        )

    @property
    def bytes_transferred(self) -> int:
        """Bytes fetched by this attempt (excludes a resumed prefix)."""
        return max(self.bytes_written - self.resumed_from, 0)

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "model_name": self.model_name,
            "status": self.status.value,
            "expected_size": self.expected_size,
            "bytes_written": self.bytes_written,
            "resumed_from": self.resumed_from,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration": round(self.duration, 2),
            "error": self.error,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class DownloadStatistics:
    total: int
    succeeded: int
    failed: int
    cancelled: int
    active: int
    bytes_transferred: int

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.succeeded / self.total

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "active": self.active,
            "bytes_transferred": self.bytes_transferred,
            "success_rate": round(self.success_rate, 4),
        }


DownloadListener = Callable[[DownloadRecord], None]


@dataclass
class _LiveDownload:
    state: DownloadState
    record: ModelRecord
    cancel_event: threading.Event
    task: Optional[asyncio.Task] = None
    entry: Optional[DownloadRecord] = None


class DownloadManager:
    """
    Runs model downloads with a concurrency ceiling.

    The live map and the history are only mutated under ``self._lock``;
    coordinator threads report progress through the same lock.
    """

    def __init__(
        self,
        store: LocalModelStore,
        coordinator: DownloadCoordinator | None = None,
        max_concurrent: int = config.MAX_CONCURRENT_DOWNLOADS,
        history_limit: int = config.HISTORY_LIMIT,
    ):
        self.store = store
        self.coordinator = coordinator or DownloadCoordinator(store)
        self.max_concurrent = max_concurrent

        self._lock = threading.Lock()
        self._live: dict[str, _LiveDownload] = {}
        self._history: deque[DownloadRecord] = deque(maxlen=history_limit)
        self._tasks: dict[str, asyncio.Task] = {}
        self._listeners: list[DownloadListener] = []

        logger.info(f"DownloadManager initialized (max {max_concurrent} concurrent)")

    # ─────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────

    async def start(
        self,
        record: ModelRecord,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DownloadState:
        """
        Admit a download and run it in the background.

        Returns as soon as the download is admitted; network failures show up
        later in progress() and history().

        Raises:
            AlreadyLocalError: The model is already downloaded
            NoDownloadURLError: The record has no download URL
            AlreadyInProgressError: A download for this id is live
            ConcurrencyLimitReachedError: The ceiling is reached
        """
        stored = self.store.get(record.id)
        if record.is_local or (stored is not None and stored.is_local):
            raise AlreadyLocalError(f"Model '{record.name}' is already downloaded", model_id=record.id)
        if not record.download_url:
            raise NoDownloadURLError(
                f"No download URL available for model '{record.name}'", model_id=record.id
            )

        with self._lock:
            if record.id in self._live:
                raise AlreadyInProgressError(
                    f"Download already in progress for model '{record.name}'", model_id=record.id
                )
            if len(self._live) >= self.max_concurrent:
                raise ConcurrencyLimitReachedError(
                    f"Maximum concurrent downloads ({self.max_concurrent}) reached",
                    model_id=record.id,
                )
            live = _LiveDownload(
                state=DownloadState(
                    model_id=record.id,
                    model_name=record.name,
                    expected_size=record.size,
                ),
                record=record,
                cancel_event=threading.Event(),
            )
            self._live[record.id] = live
            snapshot = live.state.copy()

        logger.info(f"Starting download for model: {record.name}")
        task = asyncio.create_task(self._run(live, progress_callback))
        with self._lock:
            live.task = task
            self._tasks[record.id] = task
        task.add_done_callback(lambda t, model_id=record.id: self._forget_task(model_id, t))
        return snapshot

    def cancel(self, model_id: str) -> DownloadRecord:
        """
        Cancel a live download. The partial file stays for a later resume.

        Raises:
            NotFoundError: If nothing is downloading for this id
        """
        with self._lock:
            live = self._live.get(model_id)
            if live is None:
                raise NotFoundError(f"No active download found for model ID: {model_id}", model_id=model_id)
            live.cancel_event.set()
            entry = self._finish_locked(live, DownloadStatus.CANCELLED, error="Download cancelled by user")

        logger.info(f"Cancelled download for model: {live.state.model_name}")
        self._notify(entry)
        return entry

    async def retry(
        self,
        model_id: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> DownloadState:
        """
        Restart a failed download with its original record.

        Raises:
            NotFailedError: If the newest history entry for the id is not a failure
        """
        with self._lock:
            latest = next((h for h in reversed(self._history) if h.model_id == model_id), None)
        if latest is None or latest.status != DownloadStatus.FAILED:
            raise NotFailedError(f"No failed download found for model ID: {model_id}", model_id=model_id)

        logger.info(f"Retrying download for model: {latest.model_name}")
        return await self.start(latest.record, progress_callback)

    async def wait(self, model_id: str) -> None:
        """Wait until the background task for a model (if any) has finished."""
        task = self._tasks.get(model_id)
        if task is not None:
            await asyncio.shield(task)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
        logger.info("Cleared download history")

    def subscribe(self, listener: DownloadListener) -> None:
        """Get a DownloadRecord for every download that reaches a terminal state."""
        self._listeners.append(listener)

    # ─────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────

    def progress(self, model_id: str) -> Optional[DownloadState]:
        with self._lock:
            live = self._live.get(model_id)
            return live.state.copy() if live else None

    def active(self) -> list[DownloadState]:
        with self._lock:
            states = [live.state.copy() for live in self._live.values()]
        return sorted(states, key=lambda s: s.started_at)

    def active_ids(self) -> set[str]:
        with self._lock:
            return set(self._live)

    def history(self) -> list[DownloadRecord]:
        """Finished downloads, newest last."""
        with self._lock:
            return list(self._history)

    def statistics(self) -> DownloadStatistics:
        with self._lock:
            history = list(self._history)
            live = [d.state.bytes_written - d.state.resumed_from for d in self._live.values()]

        return DownloadStatistics(
            total=len(history) + len(live),
            succeeded=sum(1 for h in history if h.status == DownloadStatus.COMPLETED),
            failed=sum(1 for h in history if h.status == DownloadStatus.FAILED),
            cancelled=sum(1 for h in history if h.status == DownloadStatus.CANCELLED),
            active=len(live),
            bytes_transferred=sum(h.bytes_transferred for h in history) + sum(live),
        )

    # ─────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────

    async def _run(self, live: _LiveDownload, progress_callback: Optional[ProgressCallback]) -> None:
        model_id = live.record.id

        def on_progress(written: int, total: int) -> None:
            with self._lock:
                if self._live.get(model_id) is not live:
                    return
                live.state.update_progress(written, total)
            if progress_callback:
                progress_callback(written, total)

        try:
            outcome: DownloadOutcome = await self.coordinator.run(
                live.record, on_progress, live.cancel_event
            )
        except DownloadCancelledError:
            # Cancel already moved the state to history
            logger.info(f"Download stopped: {live.record.name}")
            return
        except ModelKeeperError as e:
            self._complete(live, DownloadStatus.FAILED, error=str(e))
            logger.error(f"Download failed for model {live.record.name}: {e}")
            return
        except Exception as e:
            self._complete(live, DownloadStatus.FAILED, error=f"Unexpected error: {e}")
            logger.exception(f"Download crashed for model {live.record.name}")
            return

        self._complete(
            live,
            DownloadStatus.COMPLETED,
            warnings=outcome.warnings,
            bytes_written=outcome.bytes_written,
        )
        logger.info(f"Download completed successfully for model: {live.record.name}")

    def _complete(
        self,
        live: _LiveDownload,
        status: DownloadStatus,
        error: Optional[str] = None,
        warnings: Optional[list[str]] = None,
        bytes_written: Optional[int] = None,
    ) -> None:
        with self._lock:
            if self._live.get(live.record.id) is not live and not self._stored_after_cancel(live, status):
                return
            if bytes_written is not None:
                live.state.bytes_written = bytes_written
            if warnings:
                live.state.warnings.extend(warnings)
            entry = self._finish_locked(live, status, error=error)
        self._notify(entry)

    def _stored_after_cancel(self, live: _LiveDownload, status: DownloadStatus) -> bool:
        """A cancel that raced the store handoff: the model is on disk after all."""
        return (
            status == DownloadStatus.COMPLETED
            and live.entry is not None
            and live.entry.status == DownloadStatus.CANCELLED
        )

    def _finish_locked(
        self, live: _LiveDownload, status: DownloadStatus, error: Optional[str] = None
    ) -> DownloadRecord:
        """Move a live download to history. Caller holds the lock."""
        live.state.status = status
        live.state.ended_at = _now()
        live.state.error = error
        live.state.eta = None
        entry = DownloadRecord.from_state(live.state, live.record)

        if self._live.get(live.record.id) is live:
            self._history.append(entry)
            del self._live[live.record.id]
        else:
            # Replace the cancelled entry for the same attempt
            index = next((i for i, h in enumerate(self._history) if h is live.entry), None)
            if index is None:
                self._history.append(entry)
            else:
                self._history[index] = entry
            logger.warning(f"Download of {live.record.name} finished after cancel; recorded as completed")

        live.entry = entry
        return entry

    def _forget_task(self, model_id: str, task: asyncio.Task) -> None:
        with self._lock:
            if self._tasks.get(model_id) is task:
                del self._tasks[model_id]

    def _notify(self, entry: DownloadRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.error(f"Download listener failed: {e}")
