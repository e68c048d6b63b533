"""Access to the catalog and model manager owned by the application."""

from fastapi import Request

from modelkeeper.engine import ModelManager
from modelkeeper.models.catalog import ModelCatalog


def get_catalog(request: Request) -> ModelCatalog:
    """FastAPI dependency returning the catalog stored on app.state."""
    return request.app.state.catalog


def get_model_manager(request: Request) -> ModelManager:
    return request.app.state.model_manager
