from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from catalog.registry import get_catalog, list_layers, list_regions, resolve_region, whole_country
from catalog.types import CatalogLayer
from engine.errors import LayerServiceError
from engine.service import LayerService
from layers.loaders import collection_to_geojson
from telemetry.singleton import get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["layers"])


def _service(request: Request) -> LayerService:
    return request.app.state.layer_service


def _layer_summary(layer: CatalogLayer) -> dict[str, Any]:
    # Listing is metadata only; styles travel with the layer itself.
    return layer.model_dump(exclude={"style"}, exclude_none=True)


async def layer_service_error_handler(_request: Request, exc: LayerServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("layer request failed (%s): %s", exc.category, exc)
    else:
        logger.info("layer request rejected (%s): %s", exc.category, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    service: LayerService | None = getattr(request.app.state, "layer_service", None)
    return {
        "status": "ok",
        "catalog": get_catalog().id,
        "regionsLoaded": service.boundaries.loaded_keys() if service else [],
    }


@router.get("/layers")
async def get_layers(region: str | None = Query(default=None)) -> list[dict[str, Any]]:
    scope = resolve_region(region) if region else None
    return [_layer_summary(layer) for layer in list_layers(scope)]


@router.get("/layers/{layer_id}")
async def get_layer_features(
    layer_id: str,
    request: Request,
    region: str | None = Query(default=None),
) -> JSONResponse:
    """
    GeoJSON FeatureCollection of `layer_id` restricted to `region`.

    Unknown or missing region names serve the unfiltered layer.
    """
    t0 = time.perf_counter()
    q = await _service(request).aquery(layer_id, region)
    body = collection_to_geojson(q.result.collection)
    total_ms = (time.perf_counter() - t0) * 1000.0

    store = get_store()
    if store is not None:
        store.record(
            endpoint="/api/layers/{layer_id}",
            layer_id=q.result.layer_id,
            region_key=q.result.region_key,
            source=q.result.source,
            feature_count=len(q.result),
            stats={
                "totalMs": round(total_ms, 2),
                "buildMs": q.result.build_ms,
                "cacheHit": q.cache_hit,
                "requestedRegion": region,
                "clip": q.result.stats,
            },
        )

    return JSONResponse(
        content=body,
        headers={
            "X-Layer-Source": q.result.source,
            "X-Region": q.result.region_key or whole_country().key,
        },
    )


@router.get("/regions")
async def get_regions(request: Request) -> list[dict[str, Any]]:
    boundaries = _service(request).boundaries
    out = []
    for r in [whole_country(), *list_regions()]:
        out.append(
            {
                "key": r.key,
                "name": r.name,
                "wholeCountry": r.whole_country,
                "boundaryLoaded": boundaries.get(r.key) is not None,
            }
        )
    return out


@router.get("/bounds")
async def get_bounds(request: Request, region: str | None = Query(default=None)) -> dict[str, Any]:
    bbox = _service(request).bounds(region)
    lat, lon = bbox.center()
    return {"bounds": bbox.as_bounds_dict(), "center": [lat, lon]}


@router.get("/telemetry/summary")
def telemetry_summary(
    layer_id: str | None = Query(default=None, alias="layerId"),
    limit: int = Query(default=10, ge=1, le=200),
) -> dict[str, Any]:
    store = get_store()
    if store is None:
        return {"enabled": False, "summary": [], "slowest": []}
    store.flush(timeout_s=2.0)
    return {
        "enabled": True,
        "summary": store.summary(layer_id=layer_id),
        "slowest": store.slowest(layer_id=layer_id, limit=limit),
    }
