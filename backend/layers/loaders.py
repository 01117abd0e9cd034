from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from shapely.errors import ShapelyError
from shapely.geometry import mapping, shape

from geo.aoi import BBox
from layers.types import Feature, FeatureCollection

logger = logging.getLogger(__name__)

WGS84_WORLD = BBox(min_lon=-180.0, min_lat=-90.0, max_lon=180.0, max_lat=90.0)


def load_feature_collection(
    path: Path, *, validate_wgs84: bool = True
) -> FeatureCollection:
    """
    Read a GeoJSON FeatureCollection from disk.

    Raises `ValueError` for unreadable JSON or a root that is not a FeatureCollection.
    Individual malformed features are skipped (and logged) rather than failing the file.
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid GeoJSON in {path}: {e}") from e
    return parse_feature_collection(data, source=str(path), validate_wgs84=validate_wgs84)


def parse_feature_collection(
    data: Any, *, source: str = "<memory>", validate_wgs84: bool = True
) -> FeatureCollection:
    if not isinstance(data, dict) or data.get("type") != "FeatureCollection":
        raise ValueError(f"Not a GeoJSON FeatureCollection: {source}")
    raw_features = data.get("features")
    if raw_features is None:
        raw_features = []
    if not isinstance(raw_features, list):
        raise ValueError(f"`features` must be a list: {source}")

    out: list[Feature] = []
    malformed = 0
    projected = 0
    for i, raw in enumerate(raw_features):
        try:
            feature = feature_from_geojson(raw)
        except (TypeError, ValueError, AttributeError, ShapelyError) as e:
            malformed += 1
            logger.debug("Skipping malformed feature %d in %s: %s", i, source, e)
            continue
        # Coordinates far outside lon/lat range are almost always a projected CRS.
        if validate_wgs84 and feature.bbox is not None and not feature.bbox.intersects(
            WGS84_WORLD
        ):
            projected += 1
            continue
        out.append(feature)

    if malformed:
        logger.warning("%s: skipped %d malformed features", source, malformed)
    if projected:
        logger.warning(
            "%s: dropped %d features with non-WGS84 coordinates", source, projected
        )

    members = {k: v for k, v in data.items() if k not in {"type", "features"}}
    return FeatureCollection(features=out, members=members)


def feature_from_geojson(raw: Any) -> Feature:
    if not isinstance(raw, dict):
        raise TypeError("feature is not an object")
    geom = raw.get("geometry")
    props = raw.get("properties") or {}
    if not isinstance(props, dict):
        raise TypeError("properties is not an object")
    geometry = shape(geom) if geom else None
    return Feature.from_geometry(geometry, props, id=raw.get("id"))


def feature_to_geojson(feature: Feature) -> dict[str, Any]:
    out: dict[str, Any] = {"type": "Feature"}
    if feature.id is not None:
        out["id"] = feature.id
    out["properties"] = feature.props
    out["geometry"] = (
        _listify(mapping(feature.geometry)) if feature.geometry is not None else None
    )
    return out


def collection_to_geojson(fc: FeatureCollection) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        **fc.members,
        "features": [feature_to_geojson(f) for f in fc.features],
    }


def dumps_feature_collection(fc: FeatureCollection) -> str:
    # Stable formatting: identical collections always serialize to identical bytes.
    return json.dumps(collection_to_geojson(fc), ensure_ascii=False, indent=2) + "\n"


def write_feature_collection(fc: FeatureCollection, path: Path) -> int:
    """
    Atomically write `fc` as GeoJSON. Returns the number of bytes written.
    """
    payload = dumps_feature_collection(fc).encode("utf-8")
    write_bytes_atomic(path, payload)
    return len(payload)


def write_bytes_atomic(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _listify(value: Any) -> Any:
    # shapely's mapping() uses tuples; GeoJSON readers expect plain arrays.
    if isinstance(value, (list, tuple)):
        return [_listify(v) for v in value]
    if isinstance(value, dict):
        return {k: _listify(v) for k, v in value.items()}
    return value
