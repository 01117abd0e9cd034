from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal

from shapely.errors import ShapelyError
from shapely.geometry import MultiPoint, MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox
from geo.boundary import PolygonalGeometry, RegionBoundary, as_polygonal, polygon_parts
from layers.types import Feature, FeatureCollection

logger = logging.getLogger(__name__)

# What happened to one feature.
Outcome = Literal["kept", "trimmed", "fallback", "dropped"]

# A polygon strategy returns the geometry to serve, or None to let the next one try.
PolygonStrategy = Callable[[PolygonalGeometry, RegionBoundary], BaseGeometry | None]

_GEOMETRY_ERRORS = (ShapelyError, ValueError)


@dataclass
class ClipReport:
    """
    Per-run tallies; the precompute pipeline logs these per layer.
    """

    input: int = 0
    kept: int = 0
    trimmed: int = 0
    fallback: int = 0
    outside_bbox: int = 0
    dropped: int = 0
    no_geometry: int = 0
    errors: int = 0
    by_type: dict[str, int] = field(default_factory=dict)

    @property
    def output(self) -> int:
        return self.kept + self.trimmed + self.fallback

    def as_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "kept": self.kept,
            "trimmed": self.trimmed,
            "fallback": self.fallback,
            "outsideBbox": self.outside_bbox,
            "dropped": self.dropped,
            "noGeometry": self.no_geometry,
            "errors": self.errors,
        }


#
# Polygon strategies (tried in order, first non-None wins)
#


def keep_if_contained(
    geom: PolygonalGeometry, boundary: RegionBoundary
) -> BaseGeometry | None:
    # Cheap and exact: a polygon fully inside needs no trimming.
    try:
        return geom if boundary.geometry.contains(geom) else None
    except _GEOMETRY_ERRORS as e:
        logger.debug("contains() failed: %s", e)
        return None


def trim_to_boundary(
    geom: PolygonalGeometry, boundary: RegionBoundary
) -> BaseGeometry | None:
    try:
        if not boundary.geometry.intersects(geom):
            return None
        return as_polygonal(geom.intersection(boundary.geometry))
    except _GEOMETRY_ERRORS as e:
        # Typical for self-crossing rings: GEOS raises a TopologyException.
        logger.debug("intersection() failed: %s", e)
        return None


def keep_if_centroid_inside(
    geom: PolygonalGeometry, boundary: RegionBoundary
) -> BaseGeometry | None:
    """
    Last resort for geometries GEOS cannot overlay: keep the whole polygon when its
    centroid lies in the region.
    """
    try:
        c = geom.centroid
        if c.is_empty:
            return None
        return geom if boundary.geometry.covers(c) else None
    except _GEOMETRY_ERRORS as e:
        logger.debug("centroid check failed: %s", e)
        return None


POLYGON_STRATEGIES: tuple[PolygonStrategy, ...] = (
    keep_if_contained,
    trim_to_boundary,
    keep_if_centroid_inside,
)

# Whole-MultiPolygon attempt before falling back to part-by-part processing.
MULTIPOLYGON_STRATEGIES: tuple[PolygonStrategy, ...] = (
    keep_if_contained,
    trim_to_boundary,
)

_STRATEGY_OUTCOME: dict[PolygonStrategy, Outcome] = {
    keep_if_contained: "kept",
    trim_to_boundary: "trimmed",
    keep_if_centroid_inside: "fallback",
}


def run_strategies(
    strategies: Iterable[PolygonStrategy],
    geom: PolygonalGeometry,
    boundary: RegionBoundary,
) -> tuple[Outcome, BaseGeometry] | None:
    for strategy in strategies:
        result = strategy(geom, boundary)
        if result is not None:
            return _STRATEGY_OUTCOME.get(strategy, "trimmed"), result
    return None


#
# Per-geometry-type handlers
#


def _clip_point(geom: Point, boundary: RegionBoundary) -> tuple[Outcome, BaseGeometry | None]:
    # covers(): a point exactly on the boundary line counts as inside.
    if boundary.geometry.covers(geom):
        return "kept", geom
    return "dropped", None


def _clip_multipoint(
    geom: MultiPoint, boundary: RegionBoundary
) -> tuple[Outcome, BaseGeometry | None]:
    points = list(geom.geoms)
    inside = [p for p in points if boundary.geometry.covers(p)]
    if not inside:
        return "dropped", None
    if len(inside) == len(points):
        return "kept", geom
    if len(inside) == 1:
        return "trimmed", inside[0]
    return "trimmed", MultiPoint(inside)


def _clip_polygon(
    geom: Polygon, boundary: RegionBoundary
) -> tuple[Outcome, BaseGeometry | None]:
    hit = run_strategies(POLYGON_STRATEGIES, geom, boundary)
    if hit is None:
        return "dropped", None
    return hit


def _clip_multipolygon(
    geom: MultiPolygon, boundary: RegionBoundary
) -> tuple[Outcome, BaseGeometry | None]:
    hit = run_strategies(MULTIPOLYGON_STRATEGIES, geom, boundary)
    if hit is not None:
        return hit

    survivors: list[Polygon] = []
    used_fallback = False
    for part in geom.geoms:
        if part.is_empty or not boundary.bbox.intersects(BBox.from_bounds(part.bounds)):
            continue
        part_hit = run_strategies(POLYGON_STRATEGIES, part, boundary)
        if part_hit is None:
            continue
        outcome, result = part_hit
        used_fallback = used_fallback or outcome == "fallback"
        survivors.extend(polygon_parts(result))

    if not survivors:
        return "dropped", None
    out: BaseGeometry = survivors[0] if len(survivors) == 1 else MultiPolygon(survivors)
    return ("fallback" if used_fallback else "trimmed"), out


def _clip_linear(
    geom: BaseGeometry, boundary: RegionBoundary
) -> tuple[Outcome, BaseGeometry | None]:
    # Lines are never cut: a split route renders as disconnected pieces.
    if boundary.geometry.intersects(geom):
        return "kept", geom
    return "dropped", None


_HANDLERS: dict[str, Callable[..., tuple[Outcome, BaseGeometry | None]]] = {
    "Point": _clip_point,
    "MultiPoint": _clip_multipoint,
    "Polygon": _clip_polygon,
    "MultiPolygon": _clip_multipolygon,
    "LineString": _clip_linear,
    "LinearRing": _clip_linear,
    "MultiLineString": _clip_linear,
    "GeometryCollection": _clip_linear,
}


def clip_feature(
    feature: Feature, boundary: RegionBoundary
) -> tuple[Outcome, Feature | None]:
    """
    Clip one feature. Untouched features are returned as the same (immutable) object;
    trimmed ones are new features carrying a copy of the attributes.
    """
    geom = feature.geometry
    if geom is None or geom.is_empty:
        return "dropped", None
    handler = _HANDLERS.get(geom.geom_type)
    if handler is None:
        return "dropped", None
    outcome, result = handler(geom, boundary)
    if result is None:
        return "dropped", None
    if result is geom:
        return outcome, feature
    return outcome, feature.with_geometry(result)


def clip_features(
    features: Iterable[Feature],
    boundary: RegionBoundary | None,
    *,
    report: ClipReport | None = None,
) -> list[Feature]:
    """
    Restrict `features` to `boundary`, preserving input order.

    - No boundary: everything passes through unchanged.
    - Bbox guard first: features whose bbox misses the region never reach GEOS.
    - A geometry error on one feature drops that feature only.
    """
    r = report if report is not None else ClipReport()
    if boundary is None:
        out = list(features)
        r.input += len(out)
        r.kept += len(out)
        return out

    out = []
    for feature in features:
        r.input += 1
        gtype = feature.geom_type or "null"
        r.by_type[gtype] = r.by_type.get(gtype, 0) + 1

        if feature.geometry is None or feature.bbox is None:
            r.no_geometry += 1
            continue
        if not boundary.bbox.intersects(feature.bbox):
            r.outside_bbox += 1
            continue

        try:
            outcome, clipped = clip_feature(feature, boundary)
        except _GEOMETRY_ERRORS + (TypeError,) as e:
            r.errors += 1
            logger.debug("Dropping feature %r after geometry error: %s", feature.id, e)
            continue

        if clipped is None:
            r.dropped += 1
            continue
        if outcome == "kept":
            r.kept += 1
        elif outcome == "fallback":
            r.fallback += 1
        else:
            r.trimmed += 1
        out.append(clipped)
    return out


def clip_collection(
    fc: FeatureCollection,
    boundary: RegionBoundary | None,
    *,
    report: ClipReport | None = None,
) -> FeatureCollection:
    return fc.with_features(clip_features(fc.features, boundary, report=report))
