from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Literal

from pyproj import Geod
from shapely.geometry.polygon import orient

from catalog.registry import Region, get_catalog
from catalog.types import CatalogLayer
from engine.cache import LayerCache, precomputed_path
from engine.errors import LayerNotFoundError, LayerServiceError
from geo.boundary import BoundaryStore, polygon_parts
from layers.loaders import dumps_feature_collection, write_bytes_atomic
from layers.types import FeatureCollection

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"

LayerStatus = Literal["written", "unchanged", "skipped", "failed"]

_GEOD = Geod(ellps="WGS84")


@dataclass
class LayerReport:
    layer_id: str
    region_key: str
    status: LayerStatus
    before: int = 0
    after: int = 0
    file: str | None = None
    area_km2: float | None = None
    # Clip outcome counts (kept/trimmed/fallback/...).
    clip: dict[str, Any] = field(default_factory=dict)
    warning: str | None = None
    error: str | None = None


@dataclass
class PrecomputeReport:
    out_dir: Path
    layers: list[LayerReport] = field(default_factory=list)
    # Regions skipped because their boundary did not load.
    missing_boundaries: list[str] = field(default_factory=list)

    @property
    def failed(self) -> list[LayerReport]:
        return [r for r in self.layers if r.status == "failed"]

    @property
    def warnings(self) -> list[LayerReport]:
        return [r for r in self.layers if r.warning]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.missing_boundaries


def polygonal_area_km2(fc: FeatureCollection) -> float | None:
    """
    Geodesic area of the collection's polygons on the WGS84 ellipsoid, or None if it
    has no polygons.
    """
    total = 0.0
    seen = False
    for f in fc.features:
        if f.geom_type not in {"Polygon", "MultiPolygon"}:
            continue
        seen = True
        # Geod signs each ring by its winding; mixed-orientation parts would cancel.
        for part in polygon_parts(f.geometry):
            area_m2, _perimeter = _GEOD.geometry_area_perimeter(orient(part, sign=1.0))
            total += abs(area_m2)
    if not seen:
        return None
    return round(total / 1_000_000.0, 3)


def clippable_layers(layers: Iterable[CatalogLayer], region: Region) -> list[CatalogLayer]:
    return [layer for layer in layers if layer.clippable and layer.offered_in(region.key)]


def precompute_layer(
    cache: LayerCache, layer: CatalogLayer, region: Region, out_dir: Path
) -> LayerReport:
    try:
        before = len(cache.source(layer))
        result = cache.get(layer.id, region.key)
    except LayerNotFoundError as e:
        logger.warning("Skipping %s: %s", layer.id, e)
        return LayerReport(layer.id, region.key, "skipped", error=str(e))
    except LayerServiceError as e:
        logger.error("Failed %s for %s: %s", layer.id, region.key, e)
        return LayerReport(layer.id, region.key, "failed", error=str(e))

    path = precomputed_path(out_dir, layer.id, region.key)
    payload = dumps_feature_collection(result.collection).encode("utf-8")
    if path.exists() and path.read_bytes() == payload:
        status: LayerStatus = "unchanged"
    else:
        write_bytes_atomic(path, payload)
        status = "written"

    after = len(result)
    report = LayerReport(
        layer_id=layer.id,
        region_key=region.key,
        status=status,
        before=before,
        after=after,
        file=path.name,
        area_km2=polygonal_area_km2(result.collection),
        clip=result.stats,
    )
    logger.info("%s: %d -> %d features (%s)", layer.id, before, after, status)
    if before > 0 and after == 0:
        report.warning = f"no features of {layer.id} fall inside {region.name}"
        logger.warning("%s: %d -> 0 features for %s; check the boundary", layer.id, before, region.key)
    return report


def run_precompute(
    regions: Iterable[Region],
    layers: Iterable[CatalogLayer],
    boundaries: BoundaryStore,
    out_dir: Path,
) -> PrecomputeReport:
    """
    Clip each layer to each region and write `<out_dir>/<layer>-<region>.geojson`.

    Reruns on unchanged inputs leave every file (and the manifest) byte-identical.
    """
    layers = list(layers)
    report = PrecomputeReport(out_dir=out_dir)
    # Sources are read once and shared by all regions.
    cache = LayerCache(boundaries, precomputed_dir=None)

    for region in regions:
        if region.whole_country:
            logger.info("Skipping %s: the whole country is served unfiltered", region.key)
            continue
        if boundaries.get(region.key) is None:
            logger.error("Region %s has no boundary; nothing written", region.key)
            report.missing_boundaries.append(region.key)
            continue

        t0 = time.perf_counter()
        logger.info("Clipping layers for %s", region.name)
        for layer in clippable_layers(layers, region):
            report.layers.append(precompute_layer(cache, layer, region, out_dir))
        logger.info("%s done in %.1fs", region.name, time.perf_counter() - t0)

    write_manifest(out_dir, report)
    return report


def write_manifest(out_dir: Path, report: PrecomputeReport) -> Path:
    """
    Merge this run's files into `manifest.json`, sorted by file name. Earlier entries
    whose file is gone from `out_dir` are dropped.
    """
    path = out_dir / MANIFEST_NAME
    entries: dict[str, dict[str, Any]] = {}
    if path.exists():
        try:
            previous = json.loads(path.read_text(encoding="utf-8"))
            entries = {
                e["file"]: e
                for e in previous.get("files", [])
                if (out_dir / str(e["file"])).is_file()
            }
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("Ignoring unreadable manifest %s", path)

    for r in report.layers:
        if r.file is None:
            continue
        entries[r.file] = {
            "file": r.file,
            "layerId": r.layer_id,
            "region": r.region_key,
            "before": r.before,
            "after": r.after,
            "areaKm2": r.area_km2,
        }

    manifest = {
        "catalog": get_catalog().id,
        "files": [entries[k] for k in sorted(entries)],
    }
    payload = (json.dumps(manifest, ensure_ascii=False, indent=2) + "\n").encode("utf-8")
    if not path.exists() or path.read_bytes() != payload:
        write_bytes_atomic(path, payload)
    return path


def report_rows(report: PrecomputeReport) -> list[dict[str, Any]]:
    return [asdict(r) for r in report.layers]
