"""
Inference engine interface and engine selection.
Engines only ever see a local path and a resource hint; the catalog does
not know about concrete engine types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from modelkeeper.models.compatibility import ResourceEstimate
from modelkeeper.models.integrity import FormatKind
from modelkeeper.utils.logging import logger


class EngineKind(str, Enum):
    LLAMA_CPP = "llama_cpp"
    MLX = "mlx"
    MOCK = "mock"


@dataclass(frozen=True)
class EngineCapabilities:
    supports_streaming: bool = False
    supports_gpu: bool = False
    formats: tuple[FormatKind, ...] = ()


# Preferred engines per file format, best first.
ENGINE_PRIORITY: dict[FormatKind, tuple[EngineKind, ...]] = {
    FormatKind.GGUF: (EngineKind.LLAMA_CPP,),
    FormatKind.GGML: (EngineKind.LLAMA_CPP,),
    FormatKind.SAFETENSORS: (EngineKind.MLX,),
    FormatKind.PYTORCH: (),
    FormatKind.UNKNOWN: (),
}


def select_engine(path: Path | str, available: Iterable[EngineKind]) -> EngineKind:
    """
    Pick the engine for a model file.

    The result depends only on the file's format and the set of available
    engines, never on the order they are listed in. Falls back to the mock
    engine when no preferred engine is available.
    """
    kind = FormatKind.from_path(path)
    available = set(available)
    for engine in ENGINE_PRIORITY.get(kind, ()):
        if engine in available:
            return engine
    logger.debug(f"No preferred engine for {kind.value} among {sorted(e.value for e in available)}")
    return EngineKind.MOCK


class InferenceEngine(ABC):
    """An engine that can hold one model in memory."""

    kind: EngineKind

    @property
    @abstractmethod
    def capabilities(self) -> EngineCapabilities:
        pass

    @abstractmethod
    async def load(self, path: Path, resources: Optional[ResourceEstimate] = None) -> None:
        """Load the model file at path, replacing any loaded model."""
        pass

    @abstractmethod
    async def unload(self) -> None:
        pass

    @abstractmethod
    def is_loaded(self) -> bool:
        pass


class MockEngine(InferenceEngine):
    """Engine that only records what it was asked to load."""

    kind = EngineKind.MOCK

    def __init__(self):
        self.loaded_path: Optional[Path] = None
        self.resources: Optional[ResourceEstimate] = None

    @property
    def capabilities(self) -> EngineCapabilities:
        return EngineCapabilities(supports_streaming=True, formats=tuple(FormatKind))

    async def load(self, path: Path, resources: Optional[ResourceEstimate] = None) -> None:
        logger.info(f"Mock engine loading {path}")
        self.loaded_path = Path(path)
        self.resources = resources

    async def unload(self) -> None:
        self.loaded_path = None
        self.resources = None

    def is_loaded(self) -> bool:
        return self.loaded_path is not None
