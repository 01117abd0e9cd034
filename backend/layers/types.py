from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox


@dataclass(frozen=True)
class Feature:
    """
    One GeoJSON feature: a shapely geometry plus its attribute record.

    `props` is opaque to the clipping core and is never modified in place.
    `bbox` is computed once at load time so bbox guards never touch GEOS.
    """

    geometry: BaseGeometry | None
    props: dict[str, Any]
    bbox: BBox | None
    # Optional top-level GeoJSON `id` member.
    id: str | int | None = None

    @classmethod
    def from_geometry(
        cls,
        geometry: BaseGeometry | None,
        props: dict[str, Any] | None = None,
        *,
        id: str | int | None = None,
    ) -> "Feature":
        return cls(
            geometry=geometry,
            props=dict(props or {}),
            bbox=geometry_bbox(geometry),
            id=id,
        )

    @property
    def geom_type(self) -> str | None:
        return self.geometry.geom_type if self.geometry is not None else None

    def with_geometry(self, geometry: BaseGeometry) -> "Feature":
        """
        A new feature carrying `geometry` and a copy of this feature's attributes.
        """
        return Feature.from_geometry(geometry, self.props, id=self.id)


@dataclass(frozen=True)
class FeatureCollection:
    features: list[Feature]
    # Top-level GeoJSON members other than `type`/`features` (name, crs, tiles, ...).
    members: dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.features)

    def with_features(self, features: list[Feature]) -> "FeatureCollection":
        return FeatureCollection(features=features, members=dict(self.members))


def geometry_bbox(geometry: BaseGeometry | None) -> BBox | None:
    if geometry is None or geometry.is_empty:
        return None
    return BBox.from_bounds(geometry.bounds)
