"""Shared fixtures: temporary store, records and a range-aware HTTP server."""

import threading
from pathlib import Path
from typing import Iterator, Optional

import httpx
import pytest

from modelkeeper.models.coordinator import DownloadCoordinator
from modelkeeper.models.integrity import IntegrityVerifier
from modelkeeper.models.record import ModelCompatibility, ModelRecord
from modelkeeper.models.store import LocalModelStore


def make_payload(size: int) -> bytes:
    """Deterministic, never-zero content of the given size."""
    block = bytes(range(1, 256))
    return (block * (size // len(block) + 1))[:size]


def make_record(model_id: str = "m1", size: int = 0, **kwargs) -> ModelRecord:
    defaults = {
        "name": model_id,
        "author": "tester",
        "description": f"Test model {model_id}",
        "size": size,
        "compatibility": ModelCompatibility.FULLY_COMPATIBLE,
        "download_url": f"https://models.example.com/{model_id}.bin",
    }
    defaults.update(kwargs)
    return ModelRecord(id=model_id, **defaults)


class RangeServer:
    """
    httpx.MockTransport handler serving payloads by URL, honouring Range.

    With ``stall_after`` set, plain GETs stall after that many bytes until
    the test sets ``release``. With ``timeout_after`` set, the next plain GET
    raises ``httpx.ReadTimeout`` after that many bytes.
    """

    def __init__(self, supports_range: bool = True):
        self.payloads: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.supports_range = supports_range
        self.stall_after: Optional[int] = None
        self.stall_chunk = 100_000
        self.reached = threading.Event()
        self.release = threading.Event()
        self.status_override: dict[str, int] = {}
        self.timeout_after: Optional[int] = None

    def serve(self, url: str, payload: bytes) -> None:
        self.payloads[url] = payload

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.status_override:
            return httpx.Response(self.status_override[url])
        payload = self.payloads.get(url)
        if payload is None:
            return httpx.Response(404)

        range_header = request.headers.get("range")
        if range_header and self.supports_range:
            start = int(range_header.split("=", 1)[1].rstrip("-"))
            if start >= len(payload):
                return httpx.Response(416, headers={"Content-Range": f"bytes */{len(payload)}"})
            return httpx.Response(
                206,
                headers={"Content-Range": f"bytes {start}-{len(payload) - 1}/{len(payload)}"},
                content=payload[start:],
            )

        if self.timeout_after is not None:
            limit, self.timeout_after = self.timeout_after, None
            return httpx.Response(
                200,
                headers={"Content-Length": str(len(payload))},
                content=self._timing_out_body(payload, limit),
            )

        if self.stall_after is not None and not self.release.is_set():
            return httpx.Response(
                200,
                headers={"Content-Length": str(len(payload))},
                content=self._stalling_body(payload),
            )
        return httpx.Response(200, content=payload)

    def _timing_out_body(self, payload: bytes, limit: int) -> Iterator[bytes]:
        for offset in range(0, limit, self.stall_chunk):
            yield payload[offset : min(offset + self.stall_chunk, limit)]
        raise httpx.ReadTimeout("The read operation timed out")

    def _stalling_body(self, payload: bytes) -> Iterator[bytes]:
        for offset in range(0, self.stall_after, self.stall_chunk):
            yield payload[offset : min(offset + self.stall_chunk, self.stall_after)]
        self.reached.set()
        self.release.wait(timeout=10)
        for offset in range(self.stall_after, len(payload), self.stall_chunk):
            yield payload[offset : offset + self.stall_chunk]


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    return tmp_path / "Models"


@pytest.fixture
def store(models_dir: Path) -> LocalModelStore:
    return LocalModelStore(root=models_dir)


@pytest.fixture
def server() -> RangeServer:
    server = RangeServer()
    yield server
    server.release.set()


@pytest.fixture
def coordinator(store: LocalModelStore, server: RangeServer, tmp_path: Path) -> DownloadCoordinator:
    return DownloadCoordinator(
        store,
        IntegrityVerifier(),
        downloads_dir=tmp_path / "Downloads",
        transport=server.transport,
        chunk_size=100_000,
        progress_interval=0.0,
    )
