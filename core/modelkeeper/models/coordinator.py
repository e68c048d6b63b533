"""
Single-model download coordinator.
Resumable HTTP(S) transfer into a staging directory, then handoff to the
local store and the integrity verifier.
"""

import asyncio
import re
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import httpx

from modelkeeper import config
from modelkeeper.errors import (
    DownloadCancelledError,
    ModelKeeperError,
    NetworkError,
    NoDownloadURLError,
    StorageError,
)
from modelkeeper.models.integrity import IntegrityVerifier, VerificationResult, sizes_match
from modelkeeper.models.record import ModelRecord
from modelkeeper.models.store import LocalModelStore, model_dir_name
from modelkeeper.utils.logging import logger

ProgressCallback = Callable[[int, int], None]

PARTIAL_SUFFIX = ".partial"
DEFAULT_ARTIFACT = "model.bin"

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(?:(\d+)-(\d+)|\*)/(\d+|\*)$")


def parse_content_range(value: str) -> tuple[Optional[int], Optional[int]]:
    """
    Parse a Content-Range header.

    Returns:
        (start, total), either may be None ("bytes */1000" has no start).
    """
    match = _CONTENT_RANGE_RE.match(value.strip())
    if match is None:
        return None, None
    start = int(match.group(1)) if match.group(1) is not None else None
    total = int(match.group(3)) if match.group(3) != "*" else None
    return start, total


def artifact_name(url: str) -> str:
    """File name for the downloaded artifact, from the URL's last path segment."""
    name = unquote(Path(urlparse(url).path).name)
    return name or DEFAULT_ARTIFACT


@dataclass
class DownloadOutcome:
    """Result of a successful download."""

    record: ModelRecord
    verification: Optional[VerificationResult] = None
    warnings: list[str] = field(default_factory=list)
    resumed_from: int = 0
    bytes_written: int = 0


class _ProgressThrottle:
    """Forward progress at most every ``interval`` seconds, plus the final value."""

    def __init__(self, callback: Optional[ProgressCallback], interval: float):
        self.callback = callback
        self.interval = interval
        self._last_sent = float("-inf")
        self._last_value = -1

    def report(self, written: int, total: int, force: bool = False) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if not force and now - self._last_sent < self.interval:
            return
        if written < self._last_value:
            return
        self._last_sent = now
        self._last_value = written
        self.callback(written, total)


class DownloadCoordinator:
    """
    Executes exactly one model's download end-to-end.

    A cancelled or failed transfer leaves its .partial file in place so the
    next attempt resumes with a Range request.
    """

    def __init__(
        self,
        store: LocalModelStore,
        verifier: IntegrityVerifier | None = None,
        downloads_dir: Path | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = config.DOWNLOAD_TIMEOUT,
        connect_timeout: float = config.CONNECT_TIMEOUT,
        chunk_size: int = config.CHUNK_SIZE,
        progress_interval: float = config.PROGRESS_INTERVAL,
        user_agent: str = config.USER_AGENT,
    ):
        self.store = store
        self.verifier = verifier or store.verifier
        self.downloads_dir = Path(downloads_dir) if downloads_dir else config.DOWNLOADS_DIR
        self.transport = transport
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.chunk_size = chunk_size
        self.progress_interval = progress_interval
        self.user_agent = user_agent

        self._locks_guard = threading.Lock()
        self._partial_locks: dict[str, threading.Lock] = {}

    # ─────────────────────────────────────────────────────────
    # Paths
    # ─────────────────────────────────────────────────────────

    def staging_dir(self, record: ModelRecord) -> Path:
        return self.downloads_dir / model_dir_name(record.id)

    def partial_path(self, record: ModelRecord) -> Path:
        if not record.download_url:
            raise NoDownloadURLError(
                f"No download URL available for model '{record.name}'", model_id=record.id
            )
        return self.staging_dir(record) / (artifact_name(record.download_url) + PARTIAL_SUFFIX)

    def _partial_lock(self, model_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._partial_locks.setdefault(model_id, threading.Lock())

    # ─────────────────────────────────────────────────────────
    # Download
    # ─────────────────────────────────────────────────────────

    async def run(
        self,
        record: ModelRecord,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadOutcome:
        """Async wrapper: the blocking transfer runs in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.download(record, progress_callback, cancel_event)
        )

    def download(
        self,
        record: ModelRecord,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadOutcome:
        """
        Download a model, resuming from a partial file when one exists.

        Args:
            record: Model to download (must have a download_url)
            progress_callback: Called with (bytes_written, total_expected)
            cancel_event: Set it to stop at the next chunk boundary

        Returns:
            DownloadOutcome with the stored record and verification result

        Raises:
            DownloadCancelledError: If cancel_event was set
            NetworkError: On transport errors, timeouts or bad status codes
            StorageError: On disk errors
        """
        cancel_event = cancel_event or threading.Event()
        partial = self.partial_path(record)
        warnings: list[str] = []

        with self._partial_lock(record.id):
            if cancel_event.is_set():
                raise DownloadCancelledError("Download cancelled", model_id=record.id)

            try:
                partial.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create staging directory: {e}", model_id=record.id) from e

            offset = partial.stat().st_size if partial.exists() else 0
            resumed_from, written, total = self._transfer(
                record, partial, offset, progress_callback, cancel_event, warnings
            )

            stored = self._finalize(record, partial, cancel_event)

        verification = None
        try:
            verification = self.verifier.verify(stored)
            if not verification.is_valid:
                logger.warning(f"Downloaded model failed integrity verification: {verification.summary}")
                warnings.extend(verification.errors)
        except Exception as e:
            logger.error(f"Failed to verify downloaded model integrity: {e}")
            warnings.append(f"Integrity verification could not run: {e}")

        logger.info(f"Successfully downloaded and stored model: {record.name}")
        return DownloadOutcome(
            record=stored,
            verification=verification,
            warnings=warnings,
            resumed_from=resumed_from,
            bytes_written=written,
        )

    def _transfer(
        self,
        record: ModelRecord,
        partial: Path,
        offset: int,
        progress_callback: Optional[ProgressCallback],
        cancel_event: threading.Event,
        warnings: list[str],
    ) -> tuple[int, int, int]:
        """Stream the response body into the partial file. Returns (resumed_from, written, total)."""
        headers = {"User-Agent": self.user_agent}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
            logger.info(f"Resuming download of {record.name} from byte {offset}")
        else:
            logger.info(f"Downloading {record.name} from {record.download_url}")

        throttle = _ProgressThrottle(progress_callback, self.progress_interval)

        try:
            with httpx.Client(
                transport=self.transport,
                follow_redirects=True,
                timeout=self.timeout,
            ) as client:
                with client.stream("GET", record.download_url, headers=headers) as response:
                    if response.status_code == 416 and offset > 0:
                        return self._handle_unsatisfiable(record, partial, offset, response, throttle)

                    if response.status_code >= 400:
                        raise NetworkError(
                            f"Server returned HTTP {response.status_code} for {record.download_url}",
                            model_id=record.id,
                        )

                    if response.status_code == 206 and offset > 0:
                        start, total = parse_content_range(response.headers.get("content-range", ""))
                        if start is not None and start != offset:
                            raise NetworkError(
                                f"Server resumed at byte {start}, expected {offset}",
                                model_id=record.id,
                            )
                        mode = "ab"
                    else:
                        if offset > 0:
                            logger.info(f"Server ignored range request for {record.name}, restarting")
                        offset = 0
                        total = None
                        mode = "wb"

                    length = response.headers.get("content-length")
                    if total is None:
                        total = offset + int(length) if length and length.isdigit() else record.size

                    if record.size and total and not sizes_match(total, record.size):
                        message = (
                            f"Server reports {total} bytes but catalog declares {record.size}"
                        )
                        logger.warning(f"{record.name}: {message}")
                        warnings.append(message)

                    written = offset
                    throttle.report(written, total, force=True)

                    with open(partial, mode) as f:
                        for chunk in response.iter_bytes(chunk_size=self.chunk_size):
                            if cancel_event.is_set():
                                logger.info(f"Download cancelled: {record.name} at byte {written}")
                                raise DownloadCancelledError("Download cancelled", model_id=record.id)
                            if chunk:
                                f.write(chunk)
                                written += len(chunk)
                                throttle.report(written, total)

                    throttle.report(written, max(total, written), force=True)
                    return offset, written, max(total, written)

        except httpx.TimeoutException as e:
            raise NetworkError(f"Download of {record.name} timed out: {e}", model_id=record.id) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Download of {record.name} failed: {e}", model_id=record.id) from e
        except OSError as e:
            raise StorageError(f"Failed writing {partial}: {e}", model_id=record.id) from e

    def _handle_unsatisfiable(
        self,
        record: ModelRecord,
        partial: Path,
        offset: int,
        response: httpx.Response,
        throttle: _ProgressThrottle,
    ) -> tuple[int, int, int]:
        """416 on a resume: the partial is either already complete or unusable."""
        _, total = parse_content_range(response.headers.get("content-range", ""))
        if total is not None and total == offset:
            logger.info(f"Partial file for {record.name} is already complete")
            throttle.report(offset, total, force=True)
            return offset, offset, total

        partial.unlink(missing_ok=True)
        raise NetworkError(
            f"Server rejected resume at byte {offset}; partial file discarded",
            model_id=record.id,
        )

    def _finalize(
        self, record: ModelRecord, partial: Path, cancel_event: threading.Event
    ) -> ModelRecord:
        """
        Rename the partial to its real name and move it into the store.

        If the store rejects the file it is renamed back to the partial so the
        next attempt resumes instead of starting over.
        """
        if cancel_event.is_set():
            raise DownloadCancelledError("Download cancelled", model_id=record.id)

        final_path = partial.with_name(partial.name[: -len(PARTIAL_SUFFIX)])
        try:
            partial.replace(final_path)
        except OSError as e:
            raise StorageError(f"Failed to finalize download: {e}", model_id=record.id) from e

        try:
            stored = self.store.add(record, final_path, move=True)
        except ModelKeeperError:
            if final_path.exists():
                final_path.replace(partial)
                logger.warning(f"Kept {partial.name} for a later retry")
            raise

        shutil.rmtree(partial.parent, ignore_errors=True)
        return stored
