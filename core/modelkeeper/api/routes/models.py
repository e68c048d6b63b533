"""Models API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from modelkeeper.api.catalog_store import get_catalog, get_model_manager
from modelkeeper.api.schemas import ModelResponse, SuccessResponse
from modelkeeper.engine import ModelManager
from modelkeeper.errors import NotFoundError
from modelkeeper.models.catalog import ModelCatalog
from modelkeeper.models.record import (
    ModelCategory,
    ModelCompatibility,
    ModelSearchFilters,
    ModelSortOption,
)
from modelkeeper.models.search import filter_records
from modelkeeper.utils.logging import logger

router = APIRouter(prefix="/models", tags=["models"])


# ─────────────────────────────────────────────────────────
# ENDPOINTS
# ─────────────────────────────────────────────────────────


@router.get("")
async def list_models(
    category: ModelCategory = ModelCategory.ALL,
    q: str = "",
    compatibility: Optional[ModelCompatibility] = None,
    author: Optional[str] = None,
    tag: list[str] = Query(default=[]),
    license: Optional[str] = None,
    min_parameters: Optional[float] = None,
    max_parameters: Optional[float] = None,
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    sort_by: ModelSortOption = ModelSortOption.NAME,
    ascending: bool = True,
    catalog: ModelCatalog = Depends(get_catalog),
):
    """List catalog models, optionally narrowed by category, query and filters."""
    filters = ModelSearchFilters(
        compatibility=compatibility,
        author=author,
        tags=tag,
        license=license,
        min_parameters=min_parameters,
        max_parameters=max_parameters,
        min_size=min_size,
        max_size=max_size,
        sort_by=sort_by,
        ascending=ascending,
    )
    records = await catalog.by_category(category)
    results = filter_records(records, q, filters, catalog.checker.compatibility_of)
    logger.debug(f"Listing models: category={category.value} q={q!r} -> {len(results)}")
    return {"models": [ModelResponse.from_record(r).model_dump(mode="json") for r in results]}


@router.post("/refresh")
async def refresh_models(remote: bool = True, catalog: ModelCatalog = Depends(get_catalog)):
    """Re-fetch the remote catalog (or only re-read local models)."""
    snapshot = await catalog.refresh(remote=remote)
    return {
        "models": len(snapshot.records),
        "local": sum(1 for r in snapshot.records if r.is_local),
        "remote_fetched_at": snapshot.remote_fetched_at.isoformat() if snapshot.remote_fetched_at else None,
        "merged_at": snapshot.merged_at.isoformat(),
    }


@router.get("/loaded")
async def loaded_models(manager: ModelManager = Depends(get_model_manager)):
    """Ids of the models currently loaded into an engine."""
    return {"models": manager.loaded_models}


@router.get("/storage")
async def storage_statistics(catalog: ModelCatalog = Depends(get_catalog)):
    """Disk usage of downloaded models."""
    stats = catalog.store.statistics()
    return {"total_size": stats.total_size, "model_count": stats.model_count}


@router.get("/{model_id:path}/compatibility")
async def model_compatibility(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Compatibility report and resource estimate for this machine."""
    report = await catalog.compatibility(model_id)
    return {
        "model_id": model_id,
        "compatibility": report.compatibility.value,
        "display_name": report.compatibility.display_name,
        "warnings": report.warnings,
        "recommendations": report.recommendations,
        "resources": report.resources.to_dict() if report.resources else None,
    }


@router.post("/{model_id:path}/download")
async def download_model(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Start downloading a model. Returns once the download is admitted."""
    state = await catalog.download(model_id)
    return {"status": "started", "download": state.to_dict()}


@router.post("/{model_id:path}/verify")
async def verify_model(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Run a full integrity check on a downloaded model."""
    result = await catalog.verify_model(model_id)
    return {"model_id": model_id, "verification": result.to_dict()}


@router.post("/{model_id:path}/load")
async def load_model(model_id: str, manager: ModelManager = Depends(get_model_manager)):
    """Load a downloaded model into the preferred available engine."""
    engine = await manager.load_model(model_id)
    return {"model_id": model_id, "engine": engine.value, "loaded": True}


@router.post("/{model_id:path}/unload")
async def unload_model(model_id: str, manager: ModelManager = Depends(get_model_manager)):
    """Unload a model. Unloading a model that is not loaded is not an error."""
    was_loaded = await manager.unload_model(model_id)
    return {"model_id": model_id, "loaded": False, "was_loaded": was_loaded}

@router.post("/{model_id:path}/repair")
async def repair_model(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Delete a damaged model, download it again and verify the new copy. Waits for the download."""
    result = await catalog.repair_model(model_id)
    record = await catalog.get(model_id)
    return {
        "model": ModelResponse.from_record(record).model_dump(mode="json") if record else None,
        "verification": result.to_dict(),
    }


@router.delete("/{model_id:path}")
async def delete_model(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Delete a downloaded model's files."""
    await catalog.delete_model(model_id)
    return SuccessResponse(success=True, message=f"Deleted {model_id}")


@router.get("/{model_id:path}")
async def get_model(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Get a specific model."""
    record = await catalog.get(model_id)
    if record is None:
        raise NotFoundError(f"Model not found: {model_id}", model_id=model_id)
    return {"model": ModelResponse.from_record(record).model_dump(mode="json")}
