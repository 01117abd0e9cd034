from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from catalog.registry import (
    Region,
    get_catalog,
    get_layer,
    list_regions,
    resolve_region,
    whole_country,
)
from engine.cache import LayerCache
from engine.config import boundary_timeout_s, clip_workers, precomputed_dir, use_precomputed
from engine.errors import LayerNotFoundError
from engine.types import ClipResult
from geo.aoi import BBox
from geo.boundary import BoundaryStore, load_boundary_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    result: ClipResult
    # The region the request resolved to; None when the name was unknown.
    region: Region | None
    cache_hit: bool


@dataclass
class LayerService:
    """
    Request-facing entry point: region name -> canonical key -> LayerCache.

    Clipping is CPU-bound, so async callers are served from a thread pool; one slow
    region does not block the event loop or unrelated requests.
    """

    boundaries: BoundaryStore
    cache: LayerCache
    executor: ThreadPoolExecutor = field(
        default_factory=lambda: ThreadPoolExecutor(
            max_workers=clip_workers(), thread_name_prefix="clip"
        )
    )

    @classmethod
    async def start(
        cls,
        *,
        timeout_s: float | None = None,
        precomputed: Path | None = None,
    ) -> "LayerService":
        regions = [whole_country(), *list_regions()]
        boundaries = await load_boundary_store(
            regions, timeout_s=timeout_s if timeout_s is not None else boundary_timeout_s()
        )
        missing = [k for k in boundaries.keys() if boundaries.get(k) is None]
        logger.info(
            "Boundary store ready: %d/%d regions%s",
            len(boundaries.loaded_keys()),
            len(regions),
            f" (unfiltered: {', '.join(missing)})" if missing else "",
        )
        if precomputed is None and use_precomputed():
            precomputed = precomputed_dir()
        return cls(
            boundaries=boundaries,
            cache=LayerCache(boundaries, precomputed_dir=precomputed),
        )

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def clip_key(region: Region | None) -> str | None:
        # Whole country and unknown regions share the unfiltered entry.
        if region is None or region.whole_country:
            return None
        return region.key

    def query(self, layer_id: str, region_name: str | None = None) -> QueryResult:
        if get_layer(layer_id) is None:
            raise LayerNotFoundError(f"Layer {layer_id} not found", layer_id=layer_id)
        region = resolve_region(region_name)
        if region is None:
            logger.info("Unknown region %r; serving %s unfiltered", region_name, layer_id)
        result, hit = self.cache.lookup(layer_id, self.clip_key(region))
        return QueryResult(result=result, region=region, cache_hit=hit)

    async def aquery(self, layer_id: str, region_name: str | None = None) -> QueryResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self.query, layer_id, region_name)

    def bounds(self, region_name: str | None = None) -> BBox:
        """
        Extent of a region's boundary; the country's configured default otherwise.
        """
        region = resolve_region(region_name)
        if region is not None:
            boundary = self.boundaries.get(region.key)
            if boundary is not None:
                return boundary.bbox
        country = whole_country()
        boundary = self.boundaries.get(country.key)
        if boundary is not None:
            return boundary.bbox
        d = get_catalog().country.defaultBounds
        return BBox(min_lon=d.minLng, min_lat=d.minLat, max_lon=d.maxLng, max_lat=d.maxLat)
