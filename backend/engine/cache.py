from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Hashable, TypeVar

from catalog.registry import get_layer, resolve_repo_path
from catalog.types import CatalogLayer
from engine.errors import InternalLayerError, LayerNotFoundError, LayerParseError
from engine.types import ClipResult, LayerEngine
from geo.boundary import BoundaryStore
from geo.clip import ClipReport, clip_collection
from layers.loaders import load_feature_collection
from layers.types import FeatureCollection

logger = logging.getLogger(__name__)

T = TypeVar("T")


def precomputed_path(base_dir: Path, layer_id: str, region_key: str) -> Path:
    # Shared with the precompute pipeline: one file per (layer, region).
    return base_dir / f"{layer_id}-{region_key}.geojson"


def read_layer_file(path: Path, *, layer_id: str) -> FeatureCollection:
    try:
        return load_feature_collection(path)
    except FileNotFoundError as e:
        raise LayerNotFoundError(f"No data file for layer {layer_id}: {path}", layer_id=layer_id) from e
    except ValueError as e:
        raise LayerParseError(str(e), layer_id=layer_id) from e
    except OSError as e:
        raise InternalLayerError(f"Cannot read {path}: {e}", layer_id=layer_id) from e


class LayerCache(LayerEngine):
    """
    Process-lifetime memo of (layer, region) -> ClipResult.

    Lookup order: memory, then `<precomputed_dir>/<layer>-<region>.geojson`, then clip the
    source layer against the region's boundary. The first build per key runs once; racing
    callers block on the same in-flight future. Failures are not memoized.
    """

    def __init__(
        self,
        boundaries: BoundaryStore,
        *,
        precomputed_dir: Path | None = None,
        layer_lookup: Callable[[str], CatalogLayer | None] = get_layer,
    ) -> None:
        self.boundaries = boundaries
        self.precomputed_dir = precomputed_dir
        self._layer_lookup = layer_lookup
        self._lock = threading.Lock()
        self._results: dict[Hashable, ClipResult] = {}
        self._sources: dict[Hashable, FeatureCollection] = {}
        self._inflight: dict[Hashable, Future] = {}
        self.hits = 0
        self.misses = 0

    def get(self, layer_id: str, region_key: str | None) -> ClipResult:
        result, _hit = self.lookup(layer_id, region_key)
        return result

    def lookup(self, layer_id: str, region_key: str | None) -> tuple[ClipResult, bool]:
        """
        Like `get`, also reporting whether the result was already in memory.
        """
        layer = self._layer_lookup(layer_id)
        if layer is None:
            raise LayerNotFoundError(f"Layer {layer_id} not found", layer_id=layer_id)
        return self._once(
            self._results,
            ("result", layer.id, region_key),
            lambda: self._build(layer, region_key),
        )

    def source(self, layer: CatalogLayer) -> FeatureCollection:
        fc, _hit = self._once(
            self._sources, ("source", layer.id), lambda: self._read_source(layer)
        )
        return fc

    def cached_keys(self) -> list[tuple[str, str | None]]:
        with self._lock:
            return [(k[1], k[2]) for k in self._results.keys()]  # type: ignore[index]

    def _once(
        self, store: dict[Hashable, T], key: Hashable, build: Callable[[], T]
    ) -> tuple[T, bool]:
        with self._lock:
            if key in store:
                self.hits += 1
                return store[key], True
            fut = self._inflight.get(key)
            owner = fut is None
            if fut is None:
                fut = self._inflight[key] = Future()
                self.misses += 1

        if not owner:
            # Another thread is building this key; share its outcome.
            return fut.result(), False

        try:
            value = build()
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            fut.set_exception(e)
            raise
        with self._lock:
            store[key] = value
            self._inflight.pop(key, None)
        fut.set_result(value)
        return value, False

    def _read_source(self, layer: CatalogLayer) -> FeatureCollection:
        path = resolve_repo_path(layer.source.path or "")
        t0 = time.perf_counter()
        fc = read_layer_file(path, layer_id=layer.id)
        logger.info(
            "Loaded layer %s: %d features in %.0f ms",
            layer.id,
            len(fc),
            (time.perf_counter() - t0) * 1000.0,
        )
        if len(fc) == 0:
            logger.warning("Layer %s (%s) has no features", layer.id, layer.name)
        return fc

    def _build(self, layer: CatalogLayer, region_key: str | None) -> ClipResult:
        t0 = time.perf_counter()

        def _done(fc: FeatureCollection, source, stats=None) -> ClipResult:
            return ClipResult(
                layer_id=layer.id,
                region_key=region_key,
                collection=fc,
                source=source,
                build_ms=round((time.perf_counter() - t0) * 1000.0, 2),
                stats=stats or {},
            )

        if layer.type == "raster":
            # Rasters are never clipped; the client draws the tiles itself.
            return _done(
                FeatureCollection(features=[], members={"tiles": layer.source.tiles}),
                "raster",
            )

        if region_key is None or not layer.clippable:
            return _done(self.source(layer), "passthrough")

        if self.precomputed_dir is not None:
            path = precomputed_path(self.precomputed_dir, layer.id, region_key)
            if path.exists():
                fc = read_layer_file(path, layer_id=layer.id)
                logger.info("Serving %s/%s from %s", layer.id, region_key, path.name)
                return _done(fc, "precomputed")

        boundary = self.boundaries.get(region_key)
        source = self.source(layer)
        if boundary is None:
            logger.info("No boundary for %s; serving %s unfiltered", region_key, layer.id)
            return _done(source, "passthrough")

        report = ClipReport()
        clipped = clip_collection(source, boundary, report=report)
        logger.info(
            "Clipped %s to %s: %d -> %d features (%d trimmed, %d fallback, %d errors)",
            layer.id,
            region_key,
            report.input,
            report.output,
            report.trimmed,
            report.fallback,
            report.errors,
        )
        return _done(clipped, "computed", report.as_dict())
