from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from shapely.geometry import shape

from main import create_app


@pytest.fixture
def client(square_world):
    with TestClient(create_app()) as c:
        yield c


def _names(resp):
    return [f["properties"]["name"] for f in resp.json()["features"]]


def test_health_reports_loaded_regions(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["catalog"] == "squareland"
    assert sorted(body["regionsLoaded"]) == ["core", "east", "national", "west"]


def test_whole_country_returns_every_feature(client):
    for params in ({}, {"region": "national"}, {"region": "Squareland"}):
        resp = client.get("/api/layers/points", params=params)
        assert resp.status_code == 200
        assert resp.headers["x-layer-source"] == "passthrough"
        assert len(resp.json()["features"]) == 6


def test_point_outside_region_is_excluded(client):
    resp = client.get("/api/layers/points", params={"region": "west"})
    assert resp.status_code == 200
    assert resp.headers["x-region"] == "west"
    names = _names(resp)
    assert "core-town" not in names
    assert "west-town" in names
    # On the shared border: served to both sides.
    assert "border-town" in names


def test_straddling_polygon_is_trimmed(client):
    resp = client.get("/api/layers/polygons", params={"region": "West Province"})
    assert resp.status_code == 200
    by_name = {f["properties"]["name"]: f for f in resp.json()["features"]}
    straddle = shape(by_name["straddle"]["geometry"])
    assert 0 < straddle.area < 8.0
    assert "abroad" not in by_name


def test_nested_region_returns_subset(client):
    east = set(_names(client.get("/api/layers/points", params={"region": "east"})))
    core = set(_names(client.get("/api/layers/points", params={"region": "core"})))
    assert core <= east
    assert core == {"core-town"}


def test_unknown_region_is_served_unfiltered(client):
    resp = client.get("/api/layers/points", params={"region": "Atlantis"})
    assert resp.status_code == 200
    assert len(resp.json()["features"]) == 6


def test_unknown_layer_is_404(client):
    resp = client.get("/api/layers/nope", params={"region": "west"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "not-found"
    assert "nope" in resp.json()["detail"]


def test_unreadable_source_is_422(client, square_world):
    (square_world / "lines.geojson").write_text("{]", encoding="utf-8")
    resp = client.get("/api/layers/lines", params={"region": "east"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "parse-error"


def test_raster_layer_returns_tiles_placeholder(client):
    resp = client.get("/api/layers/tiles", params={"region": "west"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "FeatureCollection"
    assert body["features"] == []
    assert body["tiles"].startswith("https://tiles.example/")


def test_repeated_requests_return_identical_payloads(client):
    a = client.get("/api/layers/polygons", params={"region": "east"}).json()
    b = client.get("/api/layers/polygons", params={"region": "East Province"}).json()
    assert a == b


def test_layer_listing_omits_style_and_filters_by_region(client):
    rows = client.get("/api/layers").json()
    by_id = {r["id"]: r for r in rows}
    assert "style" not in by_id["points"]
    assert by_id["points"]["type"] == "point"
    assert "east-only" in by_id

    west_ids = {r["id"] for r in client.get("/api/layers", params={"region": "west"}).json()}
    assert "east-only" not in west_ids


def test_regions_listing(client):
    rows = client.get("/api/regions").json()
    assert [r["key"] for r in rows] == ["national", "west", "east", "core"]
    assert rows[0]["wholeCountry"] is True
    assert all(r["boundaryLoaded"] for r in rows)


def test_bounds_for_region_and_country(client):
    east = client.get("/api/bounds", params={"region": "east"}).json()
    assert east["bounds"] == {"minLat": 0.0, "maxLat": 10.0, "minLng": 10.0, "maxLng": 20.0}
    assert east["center"] == [5.0, 15.0]

    country = client.get("/api/bounds").json()
    assert country["bounds"]["minLng"] == 0.0
    assert country["bounds"]["maxLng"] == 20.0


def test_region_with_broken_boundary_degrades_to_unfiltered(square_world):
    (square_world / "core.geojson").write_text("not geojson", encoding="utf-8")
    with TestClient(create_app()) as c:
        regions = {r["key"]: r for r in c.get("/api/regions").json()}
        assert regions["core"]["boundaryLoaded"] is False
        assert regions["east"]["boundaryLoaded"] is True

        resp = c.get("/api/layers/points", params={"region": "core"})
        assert resp.status_code == 200
        assert len(resp.json()["features"]) == 6
        # Other regions still clip.
        west = c.get("/api/layers/points", params={"region": "west"}).json()
        assert len(west["features"]) == 3


def test_precomputed_files_are_served(square_world, tmp_path):
    pre = tmp_path / "precomputed"
    pre.mkdir(exist_ok=True)
    (pre / "points-west.geojson").write_text(
        '{"type": "FeatureCollection", "features": []}', encoding="utf-8"
    )
    with TestClient(create_app()) as c:
        resp = c.get("/api/layers/points", params={"region": "west"})
        assert resp.headers["x-layer-source"] == "precomputed"
        assert resp.json()["features"] == []


def test_telemetry_summary_when_disabled(client):
    body = client.get("/api/telemetry/summary").json()
    assert body["enabled"] is False


def test_telemetry_records_layer_requests(square_world, tmp_path, monkeypatch):
    monkeypatch.setenv("GEOPORTAL_TELEMETRY", "1")
    monkeypatch.setenv("GEOPORTAL_TELEMETRY_PATH", str(tmp_path / "t.duckdb"))
    with TestClient(create_app()) as c:
        c.get("/api/layers/points", params={"region": "west"})
        c.get("/api/layers/points", params={"region": "west"})
        body = c.get("/api/telemetry/summary").json()

    assert body["enabled"] is True
    rows = [r for r in body["summary"] if r["layerId"] == "points"]
    assert len(rows) == 1
    assert rows[0]["region"] == "west"
    assert rows[0]["n"] == 2
    assert rows[0]["cacheHitRate"] == 0.5
