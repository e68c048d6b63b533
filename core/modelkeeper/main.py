"""modelkeeper - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from modelkeeper import __version__
from modelkeeper.api.routes import downloads, models
from modelkeeper.api.schemas import HealthResponse
from modelkeeper.config import API_PREFIX, HOST, PORT
from modelkeeper.engine import ModelManager
from modelkeeper.errors import ModelKeeperError
from modelkeeper.models.catalog import ModelCatalog
from modelkeeper.utils.logging import logger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(f"modelkeeper v{__version__} starting...")
    if app.state.catalog is None:
        app.state.catalog = ModelCatalog.create()
    if app.state.model_manager is None:
        app.state.model_manager = ModelManager(app.state.catalog)
    yield
    manager: ModelManager = app.state.model_manager
    for model_id in manager.loaded_models:
        await manager.unload_model(model_id)
    # Stop running downloads; their partial files stay for the next start
    catalog: ModelCatalog = app.state.catalog
    for state in catalog.active_downloads():
        try:
            catalog.cancel_download(state.model_id)
        except ModelKeeperError as e:
            logger.warning(f"Could not cancel {state.model_id} on shutdown: {e}")
    logger.info("modelkeeper stopped")


async def handle_modelkeeper_error(request: Request, exc: ModelKeeperError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    catalog: Optional[ModelCatalog] = None,
    model_manager: Optional[ModelManager] = None,
) -> FastAPI:
    """
    Build the application.

    Without a catalog, the default one is created on startup. Without a model
    manager, one backed by the mock engine is created for the catalog.
    """
    app = FastAPI(
        title="modelkeeper",
        description="Model catalog, downloads and local storage for local inference",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.catalog = catalog
    app.state.model_manager = model_manager

    # Configure CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ModelKeeperError, handle_modelkeeper_error)

    # Register routes
    app.include_router(models.router, prefix=API_PREFIX)
    app.include_router(downloads.router, prefix=API_PREFIX)

    @app.get(f"{API_PREFIX}/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Health check endpoint."""
        current: ModelCatalog = request.app.state.catalog
        return HealthResponse(
            status="ok",
            version=__version__,
            local_models=current.store.statistics().model_count,
            active_downloads=len(current.active_downloads()),
            loaded_models=len(request.app.state.model_manager.loaded_models),
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)
