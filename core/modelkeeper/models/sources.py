"""
Remote catalog sources.
Providers describe what can be downloaded; they never touch local storage.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from huggingface_hub import HfApi, hf_hub_url

from modelkeeper import config
from modelkeeper.models.record import (
    ModelCompatibility,
    ModelRecord,
    ModelSearchFilters,
)
from modelkeeper.models.search import filter_records
from modelkeeper.utils.logging import logger


class CatalogProvider(ABC):
    """A single remote catalog."""

    name: str = "provider"

    @abstractmethod
    async def fetch(self) -> list[ModelRecord]:
        """Return every model this provider offers."""
        pass


class StaticProvider(CatalogProvider):
    """
    Fixed list of records, e.g. a curated "featured" list or a JSON file
    shipped alongside the application.
    """

    def __init__(self, records: Iterable[ModelRecord] = (), name: str = "static"):
        self.name = name
        self._records = list(records)

    @classmethod
    def from_file(cls, path: Path, name: str | None = None) -> "StaticProvider":
        """Load a JSON list of record documents."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        records = [ModelRecord.model_validate(entry) for entry in data]
        return cls(records, name=name or Path(path).stem)

    async def fetch(self) -> list[ModelRecord]:
        return list(self._records)


class HuggingFaceProvider(CatalogProvider):
    """
    GGUF models from the HuggingFace Hub.

    One record per repository, using the file with the best available
    quantization.
    """

    name = "huggingface"

    # Preference order when a repo ships several quantizations
    PREFERRED_QUANTIZATIONS = [
        "Q4_K_M",
        "Q4_K_S",
        "Q5_K_M",
        "Q5_K_S",
        "Q4_0",
        "Q5_0",
        "Q6_K",
        "Q8_0",
        "Q3_K_M",
        "Q3_K_L",
        "Q3_K_S",
        "Q2_K",
        "F16",
        "F32",
    ]

    # Architectures llama.cpp cannot run
    INCOMPATIBLE_PATTERNS = [
        "falcon-h1",
        "mamba",
        "rwkv",
        "jamba",
        "griffin",
        "recurrentgemma",
        "-ssm",
        "llava",
        "cogvlm",
        "internvl",
    ]

    _PARAMS_RE = re.compile(r"(?<![A-Za-z0-9.])(\d+(?:\.\d+)?)\s*([BbMm])(?![A-Za-z])")

    def __init__(
        self,
        query: str | None = None,
        limit: int = config.HF_SEARCH_LIMIT,
        api: HfApi | None = None,
    ):
        self.query = query
        self.limit = limit
        self.api = api or HfApi()

    async def fetch(self) -> list[ModelRecord]:
        loop = asyncio.get_running_loop()

        # HfApi is sync, run it in the thread pool
        models = await loop.run_in_executor(
            None,
            lambda: list(
                self.api.list_models(
                    search=self.query,
                    filter="gguf",
                    sort="downloads",
                    direction=-1,
                    limit=self.limit,
                )
            ),
        )

        results = []
        for model in models:
            try:
                info = await loop.run_in_executor(
                    None, lambda m=model: self.api.model_info(m.id, files_metadata=True)
                )
                record = self._to_record(info)
            except Exception as e:
                logger.warning(f"Failed to get files for {model.id}: {e}")
                continue
            if record is not None:
                results.append(record)

        logger.info(f"HuggingFace returned {len(results)} GGUF models")
        return results

    def _to_record(self, info) -> Optional[ModelRecord]:
        sibling = self._pick_file(info.siblings or [])
        if sibling is None:
            return None

        repo_id = info.id
        tags = tuple(info.tags or ())
        card = info.card_data
        lfs = getattr(sibling, "lfs", None)

        return ModelRecord(
            id=f"hf:{repo_id}/{sibling.rfilename}",
            name=repo_id.split("/")[-1],
            author=repo_id.split("/")[0] if "/" in repo_id else "",
            description=(getattr(card, "description", None) or "") if card else "",
            size=sibling.size or 0,
            parameters=self.extract_parameters(repo_id),
            compatibility=self.compatibility_for(repo_id, tags),
            tags=tags,
            license=getattr(card, "license", None) if card else None,
            created_at=_as_datetime(getattr(info, "created_at", None)),
            updated_at=_as_datetime(getattr(info, "last_modified", None)),
            download_url=hf_hub_url(repo_id, sibling.rfilename),
            checksum=getattr(lfs, "sha256", None) if lfs else None,
        )

    def _pick_file(self, siblings: list):
        gguf = [s for s in siblings if s.rfilename.lower().endswith(".gguf")]
        if not gguf:
            return None

        def rank(sibling) -> int:
            quant = self.extract_quantization(sibling.rfilename)
            if quant in self.PREFERRED_QUANTIZATIONS:
                return self.PREFERRED_QUANTIZATIONS.index(quant)
            return len(self.PREFERRED_QUANTIZATIONS)

        return min(gguf, key=lambda s: (rank(s), s.rfilename))

    @classmethod
    def extract_quantization(cls, filename: str) -> str:
        """Extract quantization level from filename."""
        name_upper = filename.upper()
        # Longest first so "Q4_K_M" wins over "Q4_K"
        for q in sorted(cls.PREFERRED_QUANTIZATIONS, key=len, reverse=True):
            if q in name_upper:
                return q
        return "unknown"

    @classmethod
    def extract_parameters(cls, repo_id: str) -> str:
        """"Qwen/Qwen2.5-1.5B-Instruct-GGUF" -> "1.5B"."""
        match = cls._PARAMS_RE.search(repo_id.split("/")[-1])
        if not match:
            return ""
        return f"{match.group(1)}{match.group(2).upper()}"

    @classmethod
    def compatibility_for(cls, repo_id: str, tags: Iterable[str] = ()) -> ModelCompatibility:
        repo_lower = repo_id.lower()
        if any(pattern in repo_lower for pattern in cls.INCOMPATIBLE_PATTERNS):
            return ModelCompatibility.INCOMPATIBLE
        tags_lower = {t.lower() for t in tags}
        if tags_lower & {"mamba", "rwkv"}:
            return ModelCompatibility.INCOMPATIBLE
        if tags_lower & {"image-text-to-text", "image-to-text"}:
            return ModelCompatibility.PARTIALLY_COMPATIBLE
        return ModelCompatibility.FULLY_COMPATIBLE


def _as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class CatalogSource:
    """
    Aggregates several providers.

    A failing or slow provider is logged and skipped; the others still
    contribute (never all-or-nothing).
    """

    def __init__(
        self,
        providers: Iterable[CatalogProvider] = (),
        timeout: float = config.PROVIDER_TIMEOUT,
    ):
        self.providers = list(providers)
        self.timeout = timeout
        self.last_fetched: list[ModelRecord] | None = None
        self.fetched_at: datetime | None = None

    async def fetch(self) -> list[ModelRecord]:
        """Query every provider concurrently and deduplicate by id."""
        logger.info(f"Fetching available models from {len(self.providers)} sources")

        results = await asyncio.gather(
            *(asyncio.wait_for(p.fetch(), timeout=self.timeout) for p in self.providers),
            return_exceptions=True,
        )

        merged: dict[str, ModelRecord] = {}
        for provider, result in zip(self.providers, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.error(f"Timed out fetching models from {provider.name}")
                continue
            if isinstance(result, BaseException):
                logger.error(f"Failed to fetch models from {provider.name}: {result}")
                continue
            for record in result:
                if not record.is_catalogable:
                    logger.debug(f"Ignoring {record.id} from {provider.name}: no download URL")
                    continue
                merged.setdefault(record.id, record)
            logger.debug(f"Fetched {len(result)} models from {provider.name}")

        self.last_fetched = list(merged.values())
        self.fetched_at = datetime.now().astimezone()
        logger.info(f"Fetched {len(self.last_fetched)} remote models")
        return list(self.last_fetched)

    async def search(
        self, query: str = "", filters: ModelSearchFilters | None = None
    ) -> list[ModelRecord]:
        """Filter/sort the fetched set; fetches once if nothing has been fetched yet."""
        if self.last_fetched is None:
            await self.fetch()
        return filter_records(self.last_fetched or [], query, filters)
