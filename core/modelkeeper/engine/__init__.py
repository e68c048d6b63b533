"""Engine selection and model loading, reached from the load and unload routes."""

from modelkeeper.engine.base import (
    ENGINE_PRIORITY,
    EngineCapabilities,
    EngineKind,
    InferenceEngine,
    MockEngine,
    select_engine,
)
from modelkeeper.engine.model_manager import ModelManager

__all__ = [
    "ENGINE_PRIORITY",
    "EngineCapabilities",
    "EngineKind",
    "InferenceEngine",
    "MockEngine",
    "ModelManager",
    "select_engine",
]
