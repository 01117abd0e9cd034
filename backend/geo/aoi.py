from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class BBox:
    """
    WGS84 bounding box in lon/lat degrees.

    Convention used throughout this repo:
    - minLon, minLat, maxLon, maxLat (same order as shapely `bounds`)
    """

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_bounds(cls, bounds: Iterable[float]) -> "BBox":
        min_lon, min_lat, max_lon, max_lat = (float(v) for v in bounds)
        return cls(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)

    def intersects(self, other: "BBox") -> bool:
        # Touching edges count as overlap; the exact predicate decides afterwards.
        return not (
            other.max_lon < self.min_lon
            or other.min_lon > self.max_lon
            or other.max_lat < self.min_lat
            or other.min_lat > self.max_lat
        )

    def center(self) -> tuple[float, float]:
        """(lat, lon), the order Leaflet expects."""
        return (
            (self.min_lat + self.max_lat) / 2.0,
            (self.min_lon + self.max_lon) / 2.0,
        )

    def as_bounds_dict(self) -> dict[str, float]:
        return {
            "minLat": self.min_lat,
            "maxLat": self.max_lat,
            "minLng": self.min_lon,
            "maxLng": self.max_lon,
        }

