"""
Compatibility checks for models on the current machine.
Combines the declared compatibility tag with memory, architecture and
parameter-count heuristics.
"""

import os
import platform
from dataclasses import dataclass, field
from typing import Optional

from modelkeeper.models.record import ModelCompatibility, ModelRecord, format_size
from modelkeeper.utils.logging import logger

GIB = 1024 * 1024 * 1024

# Loading a model needs roughly twice its file size in memory
LOAD_OVERHEAD = 2


def physical_memory() -> int:
    """Total physical memory in bytes, 0 when the platform does not tell us."""
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return 0


@dataclass(frozen=True)
class ResourceEstimate:
    """Hint handed to the inference engine before loading a model."""

    minimum_memory: int
    recommended_memory: int
    minimum_storage: int
    recommended_storage: int

    @classmethod
    def for_record(cls, record: ModelRecord) -> "ResourceEstimate":
        memory = record.size * LOAD_OVERHEAD
        return cls(
            minimum_memory=memory,
            recommended_memory=memory + 4 * GIB,
            minimum_storage=record.size,
            recommended_storage=record.size * 2,
        )

    def to_dict(self) -> dict:
        return {
            "minimum_memory": self.minimum_memory,
            "recommended_memory": self.recommended_memory,
            "minimum_storage": self.minimum_storage,
            "recommended_storage": self.recommended_storage,
        }


@dataclass
class CompatibilityReport:
    compatibility: ModelCompatibility
    warnings: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    resources: Optional[ResourceEstimate] = None

    @property
    def is_compatible(self) -> bool:
        return self.compatibility != ModelCompatibility.INCOMPATIBLE


def _worst(a: ModelCompatibility, b: ModelCompatibility) -> ModelCompatibility:
    return a if a.rank <= b.rank else b


class CompatibilityChecker:
    """
    Estimates how well a model will run here.

    Every check yields a level; the report keeps the worst one.
    """

    def __init__(self, total_memory: int | None = None, machine: str | None = None):
        self.total_memory = physical_memory() if total_memory is None else total_memory
        self.machine = (machine or platform.machine() or "unknown").lower()

    @property
    def has_apple_silicon(self) -> bool:
        return self.machine in ("arm64", "aarch64") and platform.system() == "Darwin"

    def check(self, record: ModelRecord) -> CompatibilityReport:
        warnings: list[str] = []
        level = ModelCompatibility.FULLY_COMPATIBLE

        for check in (self._check_declared, self._check_memory, self._check_architecture, self._check_parameters):
            result, messages = check(record)
            level = _worst(level, result)
            warnings.extend(messages)

        report = CompatibilityReport(
            compatibility=level,
            warnings=warnings,
            recommendations=self._recommendations(record, level),
            resources=ResourceEstimate.for_record(record),
        )
        logger.debug(f"Compatibility for {record.name}: {level.value} ({len(warnings)} warnings)")
        return report

    def compatibility_of(self, record: ModelRecord) -> ModelCompatibility:
        return self.check(record).compatibility

    def _check_declared(self, record: ModelRecord) -> tuple[ModelCompatibility, list[str]]:
        if record.compatibility == ModelCompatibility.FULLY_COMPATIBLE:
            return ModelCompatibility.FULLY_COMPATIBLE, []
        if record.compatibility == ModelCompatibility.PARTIALLY_COMPATIBLE:
            return record.compatibility, ["This model may have limited functionality on your system"]
        if record.compatibility == ModelCompatibility.INCOMPATIBLE:
            return record.compatibility, ["This model format is not supported on your system"]
        return ModelCompatibility.PARTIALLY_COMPATIBLE, [
            "Model compatibility has not been verified for your system"
        ]

    def _check_memory(self, record: ModelRecord) -> tuple[ModelCompatibility, list[str]]:
        if self.total_memory <= 0 or record.size <= 0:
            return ModelCompatibility.FULLY_COMPATIBLE, []

        needed = record.size * LOAD_OVERHEAD
        if needed > self.total_memory:
            return ModelCompatibility.INCOMPATIBLE, [
                f"Model requires approximately {format_size(needed)} "
                f"but only {format_size(self.total_memory)} is available"
            ]
        if needed > self.total_memory / 2:
            return ModelCompatibility.PARTIALLY_COMPATIBLE, [
                f"Model will use significant system memory ({format_size(needed)})"
            ]
        return ModelCompatibility.FULLY_COMPATIBLE, []

    def _check_architecture(self, record: ModelRecord) -> tuple[ModelCompatibility, list[str]]:
        tags = {t.lower() for t in record.tags}
        apple_optimised = bool(tags & {"mlx", "apple-silicon"})

        if self.has_apple_silicon:
            if not apple_optimised and "cpu-only" in tags:
                return ModelCompatibility.PARTIALLY_COMPATIBLE, [
                    "This model is optimized for CPU and may not use GPU acceleration"
                ]
        elif apple_optimised:
            return ModelCompatibility.PARTIALLY_COMPATIBLE, [
                "This model is optimized for Apple Silicon and may run slower here"
            ]
        return ModelCompatibility.FULLY_COMPATIBLE, []

    def _check_parameters(self, record: ModelRecord) -> tuple[ModelCompatibility, list[str]]:
        params = record.parameter_count
        if params >= 70 and self.total_memory < 64 * GIB:
            return ModelCompatibility.PARTIALLY_COMPATIBLE, [
                "Large models (70B+) require significant memory and may run slowly"
            ]
        if 30 <= params < 70 and self.total_memory < 32 * GIB:
            return ModelCompatibility.PARTIALLY_COMPATIBLE, [
                "Medium-large models (30B+) may require substantial memory"
            ]
        return ModelCompatibility.FULLY_COMPATIBLE, []

    def _recommendations(self, record: ModelRecord, level: ModelCompatibility) -> list[str]:
        if level == ModelCompatibility.FULLY_COMPATIBLE:
            return ["This model should run optimally on your system"]
        if level == ModelCompatibility.PARTIALLY_COMPATIBLE:
            recs = ["Consider closing other applications to free up memory"]
            if not self.has_apple_silicon and "mlx" in {t.lower() for t in record.tags}:
                recs.append("Consider using a CPU-optimized version for better performance")
            return recs
        if level == ModelCompatibility.INCOMPATIBLE:
            return [
                "This model is not compatible with your current system",
                "Consider a smaller model or a more aggressive quantization",
            ]
        return ["Test the model with a small prompt first to verify functionality"]
