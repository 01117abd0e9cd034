from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.layers import layer_service_error_handler, router as layers_router
from catalog.registry import get_catalog
from engine.config import cors_origins
from engine.errors import LayerServiceError
from engine.service import LayerService
from telemetry.logs import configure_logging
from telemetry.singleton import close_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    catalog = get_catalog()
    logger.info(
        "Catalog %s: %d layers, %d regions", catalog.id, len(catalog.layers), len(catalog.regions)
    )
    # Requests are accepted only after every region boundary resolved or timed out.
    service = await LayerService.start()
    app.state.layer_service = service
    try:
        yield
    finally:
        service.close()
        close_store()


def create_app() -> FastAPI:
    app = FastAPI(title="Geoportal layer service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Layer-Source", "X-Region"],
    )
    app.add_exception_handler(LayerServiceError, layer_service_error_handler)
    app.include_router(layers_router)
    return app


app = create_app()
