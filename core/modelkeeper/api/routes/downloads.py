"""Download API routes."""

from fastapi import APIRouter, Depends

from modelkeeper.api.catalog_store import get_catalog
from modelkeeper.api.schemas import SuccessResponse
from modelkeeper.errors import NotFoundError
from modelkeeper.models.catalog import ModelCatalog

router = APIRouter(prefix="/downloads", tags=["downloads"])


@router.get("")
async def list_active(catalog: ModelCatalog = Depends(get_catalog)):
    """Downloads that are pending or in progress."""
    return {"downloads": [s.to_dict() for s in catalog.active_downloads()]}


@router.get("/history")
async def download_history(catalog: ModelCatalog = Depends(get_catalog)):
    """Finished downloads, newest last."""
    return {"history": [h.to_dict() for h in catalog.download_history()]}


@router.delete("/history")
async def clear_history(catalog: ModelCatalog = Depends(get_catalog)):
    catalog.manager.clear_history()
    return SuccessResponse(success=True)


@router.get("/stats")
async def download_statistics(catalog: ModelCatalog = Depends(get_catalog)):
    return catalog.download_statistics().to_dict()


@router.post("/{model_id:path}/cancel")
async def cancel_download(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Cancel an active download. Its partial file is kept for a later resume."""
    entry = catalog.cancel_download(model_id)
    return {"status": "cancelled", "download": entry.to_dict()}


@router.post("/{model_id:path}/retry")
async def retry_download(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Restart a failed download."""
    state = await catalog.retry_download(model_id)
    return {"status": "started", "download": state.to_dict()}


@router.get("/{model_id:path}")
async def download_status(model_id: str, catalog: ModelCatalog = Depends(get_catalog)):
    """Check download status with progress info."""
    state = catalog.download_progress(model_id)
    if state is None:
        raise NotFoundError(f"No active download found for model ID: {model_id}", model_id=model_id)
    return state.to_dict()
