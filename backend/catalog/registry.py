from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import yaml

from catalog.types import CatalogConfig, CatalogLayer


def _repo_root() -> Path:
    # .../backend/catalog/registry.py -> repo root is 2 levels up
    return Path(__file__).resolve().parents[2]


def catalog_path() -> Path:
    return Path(
        os.getenv("GEOPORTAL_CATALOG_PATH")
        or (_repo_root() / "catalog" / "catalog.yaml")
    )


@dataclass(frozen=True)
class Region:
    """
    A clipping scope: one province/territory, or the whole country.

    `key` names cache entries and precomputed files; `name` is for display.
    """

    key: str
    name: str
    boundary_layer_id: str | None
    whole_country: bool = False


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid catalog yaml root: {path}")
    return data


@lru_cache(maxsize=1)
def get_catalog() -> CatalogConfig:
    path = catalog_path()
    if not path.exists():
        raise RuntimeError(f"Catalog file not found: {path}")
    return CatalogConfig.model_validate(_load_yaml(path))


def clear_catalog_cache() -> None:
    """
    Drop the parsed catalog so the next access re-reads YAML (tests, dev reloads).
    """
    get_catalog.cache_clear()
    _region_index.cache_clear()


def get_layer(layer_id: str) -> CatalogLayer | None:
    lid = (layer_id or "").strip()
    for layer in get_catalog().layers:
        if layer.id == lid:
            return layer
    return None


def whole_country() -> Region:
    c = get_catalog().country
    return Region(
        key=c.key, name=c.name, boundary_layer_id=c.boundaryLayerId, whole_country=True
    )


def list_regions() -> list[Region]:
    return [
        Region(key=r.key, name=r.name, boundary_layer_id=r.boundaryLayerId)
        for r in get_catalog().regions
    ]


def list_layers(region: Region | None = None) -> list[CatalogLayer]:
    layers = get_catalog().layers
    if region is None:
        return list(layers)
    return [layer for layer in layers if layer.offered_in(region.key)]


def _norm(name: str | None) -> str:
    return " ".join((name or "").split()).casefold()


@lru_cache(maxsize=1)
def _region_index() -> dict[str, Region]:
    cfg = get_catalog()
    out: dict[str, Region] = {}
    country = whole_country()
    for label in [cfg.country.key, cfg.country.name, *cfg.country.aliases]:
        out[_norm(label)] = country
    for r in cfg.regions:
        region = Region(key=r.key, name=r.name, boundary_layer_id=r.boundaryLayerId)
        for label in [r.key, r.name, *r.aliases]:
            out[_norm(label)] = region
    return out


def resolve_region(name: str | None) -> Region | None:
    """
    Map a request's region parameter to a catalog region.

    Empty input means the whole country. Unknown names return None, which callers
    treat as "no boundary" (serve unfiltered).
    """
    n = _norm(name)
    if not n:
        return whole_country()
    return _region_index().get(n)


def resolve_repo_path(repo_relative: str) -> Path:
    p = Path(repo_relative)
    if p.is_absolute():
        return p
    return _repo_root() / repo_relative
