from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

import shapely
from shapely.errors import ShapelyError
from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from catalog.registry import Region, get_layer, resolve_repo_path
from geo.aoi import BBox
from layers.loaders import load_feature_collection
from layers.types import FeatureCollection

logger = logging.getLogger(__name__)

PolygonalGeometry = Polygon | MultiPolygon


@dataclass(frozen=True)
class RegionBoundary:
    """
    The unioned outline of one region plus its bbox.

    `geometry` is prepared (shapely.prepare) so repeated covers/intersects calls
    during clipping reuse the same spatial index.
    """

    key: str
    geometry: PolygonalGeometry
    bbox: BBox
    # Number of polygon parts whose union raised and were left out.
    skipped_parts: int = 0


@dataclass(frozen=True)
class BoundaryStore:
    """
    Immutable region key -> boundary map, built once at startup.

    A key mapped to None is a known region whose boundary failed or timed out; it is
    served unfiltered, like an unknown region.
    """

    _boundaries: Mapping[str, RegionBoundary | None] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def of(cls, boundaries: Mapping[str, RegionBoundary | None]) -> "BoundaryStore":
        return cls(_boundaries=MappingProxyType(dict(boundaries)))

    def get(self, region_key: str | None) -> RegionBoundary | None:
        if region_key is None:
            return None
        return self._boundaries.get(region_key)

    def __contains__(self, region_key: object) -> bool:
        return region_key in self._boundaries

    def keys(self) -> list[str]:
        return list(self._boundaries.keys())

    def loaded_keys(self) -> list[str]:
        return [k for k, v in self._boundaries.items() if v is not None]


def polygon_parts(geometry: BaseGeometry | None) -> list[Polygon]:
    if geometry is None or geometry.is_empty:
        return []
    if isinstance(geometry, Polygon):
        return [geometry]
    if isinstance(geometry, (MultiPolygon, GeometryCollection)):
        out: list[Polygon] = []
        for g in geometry.geoms:
            out.extend(polygon_parts(g))
        return out
    return []


def as_polygonal(geometry: BaseGeometry | None) -> PolygonalGeometry | None:
    """
    Reduce a union/intersection result to Polygon/MultiPolygon, or None if nothing
    areal is left (e.g. a GeometryCollection of touching edges).
    """
    if geometry is None or geometry.is_empty:
        return None
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry
    parts = polygon_parts(geometry)
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return MultiPolygon(parts)


def union_boundary_features(
    fc: FeatureCollection, *, label: str = "boundary"
) -> tuple[PolygonalGeometry | None, int]:
    """
    Fold every polygon part of `fc` into one outline by pairwise union.

    A single polygonal feature is adopted as-is. A part whose union raises is logged
    and skipped; the remaining parts still form the outline.

    Returns (geometry or None, number of skipped parts).
    """
    polygonal = [
        f for f in fc.features if f.geom_type in {"Polygon", "MultiPolygon"}
    ]
    if len(fc.features) == 1 and polygonal:
        return as_polygonal(polygonal[0].geometry), 0

    acc: PolygonalGeometry | None = None
    skipped = 0
    for i, feature in enumerate(polygonal):
        for part in polygon_parts(feature.geometry):
            if acc is None:
                acc = part
                continue
            try:
                merged = as_polygonal(acc.union(part))
            except (ShapelyError, ValueError) as e:
                skipped += 1
                logger.warning("%s: union failed on feature %d, skipping part: %s", label, i, e)
                continue
            if merged is not None:
                acc = merged
    return acc, skipped


def make_region_boundary(
    key: str, geometry: PolygonalGeometry | None, *, skipped_parts: int = 0
) -> RegionBoundary | None:
    if geometry is None or geometry.is_empty:
        return None
    shapely.prepare(geometry)
    return RegionBoundary(
        key=key,
        geometry=geometry,
        bbox=BBox.from_bounds(geometry.bounds),
        skipped_parts=skipped_parts,
    )


def load_region_boundary(region: Region) -> RegionBoundary | None:
    """
    Read the region's boundary layer from disk and union it (blocking).
    """
    if not region.boundary_layer_id:
        return None
    layer = get_layer(region.boundary_layer_id)
    if layer is None or not layer.source.path:
        logger.warning("Region %s: boundary layer %s has no source", region.key, region.boundary_layer_id)
        return None

    t0 = time.perf_counter()
    fc = load_feature_collection(resolve_repo_path(layer.source.path))
    geometry, skipped = union_boundary_features(fc, label=region.key)
    boundary = make_region_boundary(region.key, geometry, skipped_parts=skipped)
    if boundary is None:
        logger.warning("Region %s: boundary layer %s has no polygons", region.key, layer.id)
    else:
        logger.info(
            "Region %s boundary ready in %.0f ms (%d features, %d parts skipped)",
            region.key,
            (time.perf_counter() - t0) * 1000.0,
            len(fc),
            skipped,
        )
    return boundary


async def load_boundary_store(
    regions: Iterable[Region],
    *,
    timeout_s: float,
    loader: Callable[[Region], RegionBoundary | None] = load_region_boundary,
) -> BoundaryStore:
    """
    Build every region's boundary concurrently, each bounded by `timeout_s`.

    A failure or timeout marks only that region boundary-less. The store is returned
    once every task has resolved, so startup waits at most about one timeout.
    """
    regions = list(regions)
    loop = asyncio.get_running_loop()
    # Own pool: asyncio.run() joins the default executor on exit, which would wait
    # out every loader that already timed out.
    pool = ThreadPoolExecutor(
        max_workers=max(1, len(regions)), thread_name_prefix="boundary-load"
    )

    async def _one(region: Region) -> RegionBoundary | None:
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(pool, loader, region), timeout=timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Region %s: boundary load exceeded %.1fs; serving unfiltered",
                region.key,
                timeout_s,
            )
        except Exception:
            logger.exception("Region %s: boundary load failed; serving unfiltered", region.key)
        return None

    try:
        results = await asyncio.gather(*(_one(r) for r in regions))
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return BoundaryStore.of({r.key: b for r, b in zip(regions, results)})


def build_boundary_store(
    regions: Iterable[Region],
    *,
    timeout_s: float,
    loader: Callable[[Region], RegionBoundary | None] = load_region_boundary,
) -> BoundaryStore:
    """
    Blocking variant for scripts (the precompute CLI).
    """
    return asyncio.run(load_boundary_store(regions, timeout_s=timeout_s, loader=loader))
