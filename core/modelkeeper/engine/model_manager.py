"""Model manager for loading downloaded models into an inference engine."""

from typing import Optional

from modelkeeper.engine.base import EngineKind, InferenceEngine, MockEngine, select_engine
from modelkeeper.errors import NotFoundError, ValidationError
from modelkeeper.models.catalog import ModelCatalog
from modelkeeper.utils.logging import logger


class ModelManager:
    """Loads catalog models into engines and mirrors is_loaded into the store."""

    def __init__(
        self,
        catalog: ModelCatalog,
        engines: Optional[dict[EngineKind, InferenceEngine]] = None,
    ) -> None:
        self.catalog = catalog
        self.engines = engines or {EngineKind.MOCK: MockEngine()}
        self._loaded: dict[str, InferenceEngine] = {}
        logger.info(f"ModelManager initialized with engines: {[e.value for e in self.engines]}")

    async def load_model(self, model_id: str) -> EngineKind:
        """Load a downloaded model.

        Args:
            model_id: The catalog id of the model to load

        Returns:
            The engine the model was loaded into

        Raises:
            NotFoundError: Unknown model
            ValidationError: The model has not been downloaded
        """
        record = await self.catalog.get(model_id)
        if record is None:
            raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)

        path = self.catalog.local_path(model_id)
        if not record.is_local or path is None:
            raise ValidationError(f"Model '{record.name}' is not downloaded", model_id=model_id)

        kind = select_engine(path, self.engines)
        engine = self.engines.get(kind)
        if engine is None:
            engine = self.engines.setdefault(EngineKind.MOCK, MockEngine())

        # One model per engine
        for loaded_id, loaded_engine in list(self._loaded.items()):
            if loaded_engine is engine and loaded_id != model_id:
                await self.unload_model(loaded_id)

        logger.info(f"Loading model {record.name} with {engine.kind.value}")
        await engine.load(path, await self.catalog.resource_estimate(model_id))
        self._loaded[model_id] = engine
        self.catalog.set_loaded(model_id, True)
        return engine.kind

    async def unload_model(self, model_id: str) -> bool:
        """Unload a model from memory.

        Returns:
            True if the model was loaded, False otherwise
        """
        engine = self._loaded.pop(model_id, None)
        if engine is None:
            return False
        await engine.unload()
        self.catalog.set_loaded(model_id, False)
        logger.info(f"Unloaded model: {model_id}")
        return True

    def is_loaded(self, model_id: str) -> bool:
        """Check if a model is currently loaded."""
        return model_id in self._loaded

    @property
    def loaded_models(self) -> list[str]:
        """Get list of currently loaded model IDs."""
        return list(self._loaded.keys())
