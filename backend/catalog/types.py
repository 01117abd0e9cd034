from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


GeometryKind = Literal["point", "line", "polygon", "raster"]


class CatalogBounds(BaseModel):
    minLat: float
    maxLat: float
    minLng: float
    maxLng: float


class CatalogLayerSource(BaseModel):
    # Repo-relative or absolute path to a GeoJSON FeatureCollection (vector layers).
    path: str | None = None
    # XYZ/WMS tile template for raster layers; handed to the client untouched.
    tiles: str | None = None


class CatalogLayer(BaseModel):
    """
    One servable dataset.

    `boundary` layers are administrative outlines and `region` marks a layer that is
    already scoped to a single region; both are served without clipping.
    """

    id: str
    name: str
    type: GeometryKind
    source: CatalogLayerSource
    description: str = ""
    color: str | None = None
    default: bool = False
    style: dict[str, Any] = Field(default_factory=dict)
    boundary: bool = False
    region: str | None = None
    # Region keys (or the whole-country key) the layer is offered in; None = everywhere.
    regions: list[str] | None = None

    @model_validator(mode="after")
    def _source_matches_type(self) -> "CatalogLayer":
        if self.type == "raster":
            if not self.source.tiles:
                raise ValueError(f"Raster layer '{self.id}' needs `source.tiles`")
        elif not self.source.path:
            raise ValueError(f"Vector layer '{self.id}' needs `source.path`")
        return self

    @property
    def clippable(self) -> bool:
        return self.type != "raster" and not self.boundary and self.region is None

    def offered_in(self, region_key: str) -> bool:
        return self.regions is None or region_key in self.regions


class CatalogRegion(BaseModel):
    key: str
    name: str
    # Layer id of the region's boundary dataset.
    boundaryLayerId: str
    aliases: list[str] = Field(default_factory=list)


class CatalogCountry(BaseModel):
    name: str
    # Canonical key of the whole-country scope (also used in file names).
    key: str = "national"
    aliases: list[str] = Field(default_factory=lambda: ["national", "all", "whole country"])
    boundaryLayerId: str | None = None
    # Used by /api/bounds until (or unless) the country outline loads.
    defaultBounds: CatalogBounds


class CatalogConfig(BaseModel):
    id: str
    title: str
    country: CatalogCountry
    regions: list[CatalogRegion]
    layers: list[CatalogLayer]

    @model_validator(mode="after")
    def _check_references(self) -> "CatalogConfig":
        layer_ids = [layer.id for layer in self.layers]
        dup_layers = {i for i in layer_ids if layer_ids.count(i) > 1}
        if dup_layers:
            raise ValueError(f"Duplicate layer ids: {sorted(dup_layers)}")

        region_keys = [r.key for r in self.regions]
        dup_regions = {k for k in region_keys if region_keys.count(k) > 1}
        if dup_regions:
            raise ValueError(f"Duplicate region keys: {sorted(dup_regions)}")
        if self.country.key in region_keys:
            raise ValueError(f"Region key collides with country key: {self.country.key}")

        known = set(layer_ids)
        for r in self.regions:
            if r.boundaryLayerId not in known:
                raise ValueError(
                    f"Region '{r.key}' references unknown boundary layer '{r.boundaryLayerId}'"
                )
        if self.country.boundaryLayerId and self.country.boundaryLayerId not in known:
            raise ValueError(
                f"Country boundary layer '{self.country.boundaryLayerId}' is not in the catalog"
            )

        scopes = set(region_keys) | {self.country.key}
        for layer in self.layers:
            if layer.region is not None and layer.region not in region_keys:
                raise ValueError(
                    f"Layer '{layer.id}' is scoped to unknown region '{layer.region}'"
                )
            for k in layer.regions or []:
                if k not in scopes:
                    raise ValueError(f"Layer '{layer.id}' lists unknown region '{k}'")
        return self
