import json
import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `geo.*`, `engine.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from catalog.registry import clear_catalog_cache  # noqa: E402


def box_coords(min_lon, min_lat, max_lon, max_lat):
    return [
        [
            [min_lon, min_lat],
            [max_lon, min_lat],
            [max_lon, max_lat],
            [min_lon, max_lat],
            [min_lon, min_lat],
        ]
    ]


def feature(geometry_type, coordinates, **props):
    return {
        "type": "Feature",
        "properties": props,
        "geometry": {"type": geometry_type, "coordinates": coordinates},
    }


def write_fc(path: Path, features, **members) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"type": "FeatureCollection", **members, "features": features}),
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # Never write telemetry into the repo while testing.
    monkeypatch.setenv("GEOPORTAL_TELEMETRY", "0")
    clear_catalog_cache()
    yield
    clear_catalog_cache()


@pytest.fixture
def square_world(tmp_path, monkeypatch):
    """
    A 20x10 degree country split into `west` (x<=10) and `east` (x>=10), plus `core`,
    a smaller region inside `east`.

    Returns the data directory; the catalog and precomputed dir are wired via env.
    """
    data = tmp_path / "data"

    write_fc(data / "country.geojson", [feature("Polygon", box_coords(0, 0, 20, 10), name="Squareland")])
    write_fc(data / "west.geojson", [feature("Polygon", box_coords(0, 0, 10, 10), name="West")])
    # Two adjacent halves; the store unions them into one outline.
    write_fc(
        data / "east.geojson",
        [
            feature("Polygon", box_coords(10, 0, 15, 10), name="East A"),
            feature("Polygon", box_coords(15, 0, 20, 10), name="East B"),
        ],
    )
    write_fc(data / "core.geojson", [feature("Polygon", box_coords(12, 2, 18, 8), name="Core")])

    write_fc(
        data / "points.geojson",
        [
            feature("Point", [5, 5], name="west-town"),
            feature("Point", [15, 5], name="core-town"),
            feature("Point", [10, 5], name="border-town"),
            feature("Point", [11, 9], name="east-town"),
            feature("MultiPoint", [[1, 1], [11, 1]], name="pair"),
            feature("Point", [40, 40], name="abroad"),
        ],
        name="Points",
    )
    write_fc(
        data / "lines.geojson",
        [
            feature("LineString", [[5, 5], [15, 5]], name="cross-country"),
            feature("LineString", [[1, 9], [3, 9]], name="west-road"),
        ],
    )
    write_fc(
        data / "polygons.geojson",
        [
            feature("Polygon", box_coords(2, 2, 4, 4), name="west-park"),
            feature("Polygon", box_coords(8, 4, 12, 6), name="straddle"),
            feature(
                "MultiPolygon",
                [box_coords(1, 1, 2, 2), box_coords(15, 1, 16, 2)],
                name="split",
            ),
            feature("Polygon", box_coords(30, 30, 31, 31), name="abroad"),
        ],
    )
    write_fc(data / "east-only.geojson", [feature("Point", [16, 6], name="east-local")])

    catalog = {
        "id": "squareland",
        "title": "Squareland",
        "country": {
            "name": "Squareland",
            "key": "national",
            "boundaryLayerId": "boundary-country",
            "defaultBounds": {"minLat": 0, "maxLat": 10, "minLng": 0, "maxLng": 20},
        },
        "regions": [
            {"key": "west", "name": "West Province", "boundaryLayerId": "boundary-west", "aliases": ["WP"]},
            {"key": "east", "name": "East Province", "boundaryLayerId": "boundary-east"},
            {"key": "core", "name": "Core District", "boundaryLayerId": "boundary-core"},
        ],
        "layers": [
            {"id": "points", "name": "Points", "type": "point", "source": {"path": str(data / "points.geojson")}, "style": {"radius": 4}},
            {"id": "lines", "name": "Lines", "type": "line", "source": {"path": str(data / "lines.geojson")}},
            {"id": "polygons", "name": "Polygons", "type": "polygon", "source": {"path": str(data / "polygons.geojson")}},
            {
                "id": "east-only",
                "name": "East local",
                "type": "point",
                "region": "east",
                "regions": ["national", "east"],
                "source": {"path": str(data / "east-only.geojson")},
            },
            {"id": "tiles", "name": "Tiles", "type": "raster", "source": {"tiles": "https://tiles.example/{z}/{x}/{y}.png"}},
            {"id": "boundary-country", "name": "Country", "type": "polygon", "boundary": True, "source": {"path": str(data / "country.geojson")}},
            {"id": "boundary-west", "name": "West", "type": "polygon", "boundary": True, "source": {"path": str(data / "west.geojson")}},
            {"id": "boundary-east", "name": "East", "type": "polygon", "boundary": True, "source": {"path": str(data / "east.geojson")}},
            {"id": "boundary-core", "name": "Core", "type": "polygon", "boundary": True, "source": {"path": str(data / "core.geojson")}},
        ],
    }
    catalog_path = tmp_path / "catalog.yaml"
    # JSON is valid YAML.
    catalog_path.write_text(json.dumps(catalog, indent=2), encoding="utf-8")

    monkeypatch.setenv("GEOPORTAL_CATALOG_PATH", str(catalog_path))
    monkeypatch.setenv("GEOPORTAL_PRECOMPUTED_DIR", str(tmp_path / "precomputed"))
    monkeypatch.setenv("GEOPORTAL_BOUNDARY_TIMEOUT_S", "10")
    clear_catalog_cache()
    return data
