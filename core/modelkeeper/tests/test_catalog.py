"""
Tests for the model catalog facade.

Tests cover:
- Merge of remote and local records
- Snapshot lifecycle (TTL, explicit refresh, invalidation)
- Search and categories
- Download delegation end to end
- Repair of damaged local copies
"""

import hashlib
from pathlib import Path

import pytest

from modelkeeper.errors import (
    NetworkError,
    NoDownloadURLError,
    NotFailedError,
    NotFoundError,
    StorageError,
)
from modelkeeper.models.catalog import ModelCatalog, merge_records
from modelkeeper.models.compatibility import CompatibilityChecker
from modelkeeper.models.manager import DownloadManager, DownloadStatus
from modelkeeper.models.record import (
    ModelCategory,
    ModelCompatibility,
    ModelSearchFilters,
    ModelSortOption,
)
from modelkeeper.models.sources import CatalogProvider, CatalogSource, StaticProvider

from .conftest import make_payload, make_record

GIB = 1024 * 1024 * 1024


class CountingProvider(CatalogProvider):
    name = "counting"

    def __init__(self, records):
        self.records = list(records)
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        return list(self.records)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def checker():
    return CompatibilityChecker(total_memory=64 * GIB, machine="x86_64")


@pytest.fixture
def provider(server):
    records = [
        make_record("m1", name="llama-7b", size=1_000_000, parameters="7B", tags=("chat", "featured")),
        make_record("m2", name="mistral-7b", size=2000, parameters="7B"),
        make_record("m3", name="giant-70b", size=3000, parameters="70B", tags=("popular",)),
        make_record("m4", name="broken", size=100, compatibility=ModelCompatibility.INCOMPATIBLE),
    ]
    for record in records:
        server.serve(record.download_url, make_payload(record.size))
    return CountingProvider(records)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog(provider, store, coordinator, checker, clock):
    manager = DownloadManager(store, coordinator)
    return ModelCatalog(CatalogSource([provider]), store, manager, checker=checker, clock=clock)


def add_local(store, tmp_path, record, size=100):
    source = tmp_path / f"{record.id}.bin"
    source.write_bytes(make_payload(size))
    return store.add(record, source)


class TestMerge:
    """Tests for merging remote and local records."""

    def test_both_sides_take_local_state(self):
        remote = make_record(
            "x", description="remote desc", author="remote-author", tags=("r",)
        )
        local = make_record(
            "x",
            description="local desc",
            author="local-author",
            tags=("l",),
            local_path="/models/x/x.bin",
            is_local=True,
            is_loaded=True,
        )

        (merged,) = merge_records([remote], [local])

        assert merged.description == "remote desc"
        assert merged.author == "remote-author"
        assert merged.tags == ("r",)
        assert merged.local_path == "/models/x/x.bin"
        assert merged.is_local
        assert merged.is_loaded
        assert not remote.is_local  # inputs are untouched

    def test_one_sided_records_pass_through(self):
        merged = merge_records([make_record("a")], [make_record("b", local_path="/b", is_local=True)])
        assert [r.id for r in merged] == ["a", "b"]

    def test_uncatalogable_records_are_dropped(self):
        merged = merge_records([make_record("a", download_url=None)], [])
        assert merged == []

    def test_sorted_by_name(self):
        merged = merge_records([make_record("1", name="zeta"), make_record("2", name="Alpha")], [])
        assert [r.name for r in merged] == ["Alpha", "zeta"]


class TestSnapshot:
    """Tests for snapshot caching."""

    @pytest.mark.asyncio
    async def test_first_access_fetches_remote(self, catalog, provider):
        models = await catalog.models()
        assert len(models) == 4
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_remote_is_not_refetched_on_expiry(self, catalog, provider, clock):
        await catalog.models()
        clock.now += 301

        await catalog.models()

        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_local_changes_show_after_ttl(self, catalog, store, tmp_path, clock):
        await catalog.models()
        add_local(store, tmp_path, make_record("local-only", name="mine"))

        clock.now += 10
        assert await catalog.get("local-only") is None

        clock.now += 300
        assert (await catalog.get("local-only")).is_local

    @pytest.mark.asyncio
    async def test_explicit_refresh(self, catalog, provider):
        await catalog.models()
        provider.records.append(make_record("m5", name="new"))

        snapshot = await catalog.refresh()

        assert provider.calls == 2
        assert snapshot.get("m5") is not None
        assert snapshot.remote_fetched_at is not None

    @pytest.mark.asyncio
    async def test_local_refresh_keeps_remote(self, catalog, provider):
        await catalog.models()
        await catalog.refresh(remote=False)
        assert provider.calls == 1


class TestQueries:
    """Tests for search and categories."""

    @pytest.mark.asyncio
    async def test_search(self, catalog):
        results = await catalog.search(
            "7b", ModelSearchFilters(sort_by=ModelSortOption.SIZE)
        )
        assert [r.id for r in results] == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_search_by_compatibility(self, catalog):
        results = await catalog.search("", ModelSearchFilters(compatibility=ModelCompatibility.INCOMPATIBLE))
        assert [r.id for r in results] == ["m4"]

    @pytest.mark.asyncio
    async def test_categories(self, catalog, store, tmp_path):
        add_local(store, tmp_path, make_record("m2", name="mistral-7b", size=100), size=100)
        catalog.invalidate()

        local = await catalog.by_category(ModelCategory.LOCAL)
        remote = await catalog.by_category(ModelCategory.REMOTE)
        featured = await catalog.by_category(ModelCategory.FEATURED)
        compatible = await catalog.by_category(ModelCategory.COMPATIBLE)

        assert [r.id for r in local] == ["m2"]
        assert "m2" not in {r.id for r in remote}
        assert {r.id for r in featured} == {"m1", "m3"}
        assert {r.id for r in compatible} == {"m1", "m2", "m3"}
        assert len(await catalog.by_category(ModelCategory.ALL)) == 4

    @pytest.mark.asyncio
    async def test_large_model_is_only_partial_on_small_machine(self, provider, store, coordinator):
        small = CompatibilityChecker(total_memory=16 * GIB, machine="x86_64")
        catalog = ModelCatalog(CatalogSource([provider]), store, DownloadManager(store, coordinator), checker=small)

        compatible = await catalog.by_category(ModelCategory.COMPATIBLE)

        assert "m3" not in {r.id for r in compatible}

    @pytest.mark.asyncio
    async def test_resource_estimate(self, catalog):
        estimate = await catalog.resource_estimate("m2")
        assert estimate.minimum_memory == 4000
        assert estimate.minimum_storage == 2000

    @pytest.mark.asyncio
    async def test_unknown_model(self, catalog):
        assert await catalog.get("nope") is None
        with pytest.raises(NotFoundError):
            await catalog.download("nope")


class TestDownloads:
    """Download delegation through the facade."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, catalog, store, server):
        server.stall_after = 300_000

        await catalog.download("m1")
        downloading = await catalog.by_category(ModelCategory.DOWNLOADING)
        assert [r.id for r in downloading] == ["m1"]
        assert catalog.download_progress("m1") is not None

        server.release.set()
        await catalog.manager.wait("m1")

        record = await catalog.get("m1")
        assert record.is_local
        assert record.description == "Test model m1"
        assert catalog.local_path("m1").stat().st_size == 1_000_000
        history = catalog.download_history()
        assert [h.status for h in history] == [DownloadStatus.COMPLETED]
        assert catalog.download_statistics().succeeded == 1

    @pytest.mark.asyncio
    async def test_cancel_and_retry_delegate(self, catalog, server):
        server.stall_after = 300_000

        await catalog.download("m1")
        entry = catalog.cancel_download("m1")
        assert entry.status == DownloadStatus.CANCELLED
        server.release.set()
        await catalog.manager.wait("m1")

        with pytest.raises(NotFailedError):
            await catalog.retry_download("m1")

    @pytest.mark.asyncio
    async def test_delete_and_verify(self, catalog, store, tmp_path):
        add_local(store, tmp_path, make_record("m2", name="mistral-7b", size=100), size=100)
        catalog.invalidate()

        result = await catalog.verify_model("m2")
        assert result.is_valid

        await catalog.delete_model("m2")

        record = await catalog.get("m2")
        assert record is not None  # still offered remotely
        assert not record.is_local
        with pytest.raises(NotFoundError):
            await catalog.delete_model("m2")

    @pytest.mark.asyncio
    async def test_set_loaded(self, catalog, store, tmp_path):
        add_local(store, tmp_path, make_record("m2", name="mistral-7b", size=100), size=100)

        catalog.set_loaded("m2", True)

        assert (await catalog.get("m2")).is_loaded
        assert catalog.set_loaded("nope", True) is None

    @pytest.mark.asyncio
    async def test_create_builds_default_stack(self, tmp_path):
        catalog = ModelCatalog.create(tmp_path, providers=[StaticProvider([make_record("a")])])

        assert catalog.store.root == tmp_path / "Models"
        assert catalog.manager.coordinator.downloads_dir == tmp_path / "Downloads"
        assert [r.id for r in await catalog.models()] == ["a"]


class TestRepair:
    """Delete, download again and verify."""

    def add_damaged(self, store, tmp_path, server, checksum=None):
        payload = make_payload(2000)
        record = make_record(
            "fix",
            size=2000,
            checksum=checksum or hashlib.sha256(payload).hexdigest(),
        )
        server.serve(record.download_url, payload)
        source = tmp_path / "fix.bin"
        source.write_bytes(b"\x01" * 2000)
        store.add(record, source)
        return record, payload

    @pytest.mark.asyncio
    async def test_repair_replaces_damaged_copy(self, catalog, store, tmp_path, server):
        self.add_damaged(store, tmp_path, server)
        assert not (await catalog.verify_model("fix")).is_valid

        result = await catalog.repair_model("fix")

        assert result.is_valid
        assert catalog.local_path("fix").read_bytes() == make_payload(2000)
        assert catalog.download_history()[-1].status == DownloadStatus.COMPLETED
        assert (await catalog.get("fix")).is_local

    @pytest.mark.asyncio
    async def test_repair_uses_remote_url(self, catalog, store, tmp_path, server):
        add_local(store, tmp_path, make_record("m2", name="mistral-7b", size=2000, download_url=None), size=10)
        catalog.invalidate()

        result = await catalog.repair_model("m2")

        assert result.is_valid
        assert catalog.local_path("m2").read_bytes() == make_payload(2000)
        assert str(server.requests[-1].url).endswith("/m2.bin")

    @pytest.mark.asyncio
    async def test_still_invalid_after_repair(self, catalog, store, tmp_path, server):
        self.add_damaged(store, tmp_path, server, checksum="ab" * 32)

        with pytest.raises(StorageError):
            await catalog.repair_model("fix")
        assert store.get("fix").is_local

    @pytest.mark.asyncio
    async def test_failed_download(self, catalog, store, tmp_path, server):
        record, _ = self.add_damaged(store, tmp_path, server)
        server.status_override[record.download_url] = 500

        with pytest.raises(NetworkError, match="HTTP 500"):
            await catalog.repair_model("fix")
        assert store.get("fix") is None
        assert catalog.download_history()[-1].status == DownloadStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_url_keeps_the_file(self, catalog, store, tmp_path):
        stored = add_local(store, tmp_path, make_record("offline", download_url=None))

        with pytest.raises(NoDownloadURLError):
            await catalog.repair_model("offline")
        assert store.get("offline").is_local
        assert Path(stored.local_path).exists()

    @pytest.mark.asyncio
    async def test_not_local(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.repair_model("m2")
