"""Tests for engine selection and the model manager."""

import pytest

from modelkeeper.engine import (
    ENGINE_PRIORITY,
    EngineKind,
    MockEngine,
    ModelManager,
    select_engine,
)
from modelkeeper.errors import NotFoundError, ValidationError
from modelkeeper.models.catalog import ModelCatalog
from modelkeeper.models.compatibility import CompatibilityChecker
from modelkeeper.models.integrity import FormatKind
from modelkeeper.models.sources import CatalogSource, StaticProvider

from .conftest import make_payload, make_record


class TestSelectEngine:
    def test_every_format_has_an_entry(self):
        assert set(ENGINE_PRIORITY) == set(FormatKind)

    def test_gguf_prefers_llama_cpp(self):
        available = [EngineKind.MOCK, EngineKind.MLX, EngineKind.LLAMA_CPP]
        assert select_engine("m.gguf", available) == EngineKind.LLAMA_CPP

    def test_order_of_available_engines_does_not_matter(self):
        engines = [EngineKind.MLX, EngineKind.LLAMA_CPP, EngineKind.MOCK]
        for path in ("m.gguf", "m.safetensors", "m.bin"):
            assert select_engine(path, engines) == select_engine(path, list(reversed(engines)))

    def test_safetensors_uses_mlx(self):
        assert select_engine("m.safetensors", {EngineKind.MLX, EngineKind.LLAMA_CPP}) == EngineKind.MLX

    def test_falls_back_to_mock(self):
        assert select_engine("m.gguf", {EngineKind.MLX}) == EngineKind.MOCK
        assert select_engine("m.bin", {EngineKind.LLAMA_CPP}) == EngineKind.MOCK


@pytest.fixture
def catalog(store):
    provider = StaticProvider([make_record("m1"), make_record("m2")])
    checker = CompatibilityChecker(total_memory=0, machine="x86_64")
    return ModelCatalog(CatalogSource([provider]), store, checker=checker)


class TestModelManager:
    @pytest.mark.asyncio
    async def test_load_and_unload(self, catalog, store, tmp_path):
        source = tmp_path / "m1.bin"
        source.write_bytes(make_payload(100))
        store.add(make_record("m1", size=100), source)
        engine = MockEngine()
        manager = ModelManager(catalog, {EngineKind.MOCK: engine})

        kind = await manager.load_model("m1")

        assert kind == EngineKind.MOCK
        assert engine.is_loaded()
        assert engine.resources.minimum_memory == 200
        assert manager.is_loaded("m1")
        assert store.get("m1").is_loaded
        assert (await catalog.get("m1")).is_loaded

        assert await manager.unload_model("m1")
        assert not engine.is_loaded()
        assert not store.get("m1").is_loaded
        assert not await manager.unload_model("m1")

    @pytest.mark.asyncio
    async def test_loading_a_second_model_unloads_the_first(self, catalog, store, tmp_path):
        for model_id in ("m1", "m2"):
            source = tmp_path / f"{model_id}.bin"
            source.write_bytes(make_payload(100))
            store.add(make_record(model_id, size=100), source)
        manager = ModelManager(catalog)

        await manager.load_model("m1")
        await manager.load_model("m2")

        assert manager.loaded_models == ["m2"]
        assert not store.get("m1").is_loaded

    @pytest.mark.asyncio
    async def test_remote_only_model_cannot_load(self, catalog):
        manager = ModelManager(catalog)
        with pytest.raises(ValidationError):
            await manager.load_model("m1")

    @pytest.mark.asyncio
    async def test_unknown_model(self, catalog):
        manager = ModelManager(catalog)
        with pytest.raises(NotFoundError):
            await manager.load_model("nope")
