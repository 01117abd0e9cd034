from __future__ import annotations

import json
import logging

from shapely.geometry import MultiPolygon, Polygon, box

from catalog.registry import get_catalog, get_layer, list_regions, resolve_region
from conftest import feature, write_fc
from geo.boundary import BoundaryStore, build_boundary_store, make_region_boundary
from layers.loaders import load_feature_collection
from layers.types import Feature, FeatureCollection
from precompute.cli import EXIT_CONFIG, EXIT_LAYER_FAILED, EXIT_OK, main
from precompute.pipeline import MANIFEST_NAME, polygonal_area_km2, run_precompute


def _snapshot(out_dir):
    return {p.name: p.read_bytes() for p in sorted(out_dir.iterdir()) if p.is_file()}


def _run(out_dir):
    regions = list_regions()
    boundaries = build_boundary_store(regions, timeout_s=10)
    return run_precompute(regions, get_catalog().layers, boundaries, out_dir)


def test_writes_one_file_per_region_and_clippable_layer(square_world, tmp_path):
    out = tmp_path / "out"
    report = _run(out)
    assert report.ok

    files = {p.name for p in out.glob("*.geojson")}
    assert "points-west.geojson" in files
    assert "polygons-core.geojson" in files
    assert "lines-east.geojson" in files
    # Boundaries, rasters and region-scoped layers are served as-is.
    assert not any(name.startswith(("boundary-", "tiles-", "east-only-")) for name in files)
    assert len(files) == 3 * 3


def test_written_files_match_runtime_clip(square_world, tmp_path):
    out = tmp_path / "out"
    _run(out)
    fc = load_feature_collection(out / "points-west.geojson")
    names = [f.props["name"] for f in fc.features]
    assert names == ["west-town", "border-town", "pair"]
    assert fc.members.get("name") == "Points"


def test_rerun_is_byte_identical(square_world, tmp_path):
    out = tmp_path / "out"
    _run(out)
    first = _snapshot(out)
    report = _run(out)
    assert _snapshot(out) == first
    assert {r.status for r in report.layers} == {"unchanged"}


def test_report_counts_before_and_after(square_world, tmp_path):
    report = _run(tmp_path / "out")
    row = next(r for r in report.layers if r.layer_id == "points" and r.region_key == "core")
    assert row.before == 6
    assert row.after == 1
    assert row.file == "points-core.geojson"
    assert row.clip["outsideBbox"] >= 1


def test_zero_output_for_non_empty_layer_is_flagged(square_world, tmp_path, caplog):
    write_fc(
        square_world / "lines.geojson",
        [feature("LineString", [[1, 9], [3, 9]], name="west-road")],
    )
    with caplog.at_level(logging.WARNING):
        report = _run(tmp_path / "out")
    flagged = [r for r in report.warnings if r.layer_id == "lines"]
    assert {r.region_key for r in flagged} == {"east", "core"}
    assert any("0 features" in m for m in caplog.messages)


def test_manifest_is_sorted_and_has_areas(square_world, tmp_path):
    out = tmp_path / "out"
    _run(out)
    manifest = json.loads((out / MANIFEST_NAME).read_text(encoding="utf-8"))
    assert manifest["catalog"] == "squareland"
    files = [e["file"] for e in manifest["files"]]
    assert files == sorted(files)
    by_file = {e["file"]: e for e in manifest["files"]}
    assert by_file["polygons-west.geojson"]["areaKm2"] > 0
    assert by_file["points-west.geojson"]["areaKm2"] is None


def test_region_without_boundary_is_reported(square_world, tmp_path):
    regions = [resolve_region("west"), resolve_region("east")]
    boundaries = BoundaryStore.of(
        {"west": make_region_boundary("west", box(0, 0, 10, 10)), "east": None}
    )
    report = run_precompute(regions, [get_layer("points")], boundaries, tmp_path / "out")
    assert report.missing_boundaries == ["east"]
    assert not report.ok
    assert not (tmp_path / "out" / "points-east.geojson").exists()


def test_geodesic_area_of_one_degree_cell_at_equator():
    fc = FeatureCollection(features=[Feature.from_geometry(box(0, 0, 1, 1))])
    area = polygonal_area_km2(fc)
    # ~111.3 km x ~110.6 km
    assert 12_200 < area < 12_400


def test_cli_runs_selected_region_and_layer(square_world, tmp_path):
    out = tmp_path / "cli-out"
    code = main(["--region", "West Province", "--layer", "polygons", "--out", str(out)])
    assert code == EXIT_OK
    assert sorted(p.name for p in out.glob("*.geojson")) == ["polygons-west.geojson"]
    assert (out / MANIFEST_NAME).exists()


def test_cli_rejects_unknown_region(square_world, tmp_path):
    assert main(["--region", "Atlantis", "--out", str(tmp_path / "x")]) == EXIT_CONFIG


def test_cli_rejects_unknown_layer(square_world, tmp_path):
    assert main(["--layer", "nope", "--out", str(tmp_path / "x")]) == EXIT_CONFIG


def test_cli_reports_unreadable_layer(square_world, tmp_path):
    (square_world / "polygons.geojson").write_text("{oops", encoding="utf-8")
    code = main(["--region", "west", "--out", str(tmp_path / "x")])
    assert code == EXIT_LAYER_FAILED
    # Other layers are still written.
    assert (tmp_path / "x" / "points-west.geojson").exists()


def test_cli_catalog_flag_overrides_env(square_world, tmp_path, monkeypatch):
    catalog = tmp_path / "catalog.yaml"
    monkeypatch.setenv("GEOPORTAL_CATALOG_PATH", str(tmp_path / "missing.yaml"))
    out = tmp_path / "y"
    assert main(["--catalog", str(catalog), "--region", "core", "--out", str(out)]) == EXIT_OK
    assert (out / "points-core.geojson").exists()


def test_area_ignores_ring_orientation_of_parts():
    ccw = box(0, 0, 1, 1)
    cw = Polygon([(2, 0), (2, 1), (3, 1), (3, 0), (2, 0)])
    assert not cw.exterior.is_ccw
    fc = FeatureCollection(features=[Feature.from_geometry(MultiPolygon([ccw, cw]))])
    area = polygonal_area_km2(fc)
    # Two one-degree cells at the equator, not cancelled out.
    assert 24_400 < area < 24_800


def test_manifest_drops_entries_for_removed_files(square_world, tmp_path):
    out = tmp_path / "out"
    _run(out)
    (out / "points-west.geojson").unlink()

    run_precompute(
        [resolve_region("east")],
        [get_layer("points")],
        build_boundary_store([resolve_region("east")], timeout_s=10),
        out,
    )
    manifest = json.loads((out / MANIFEST_NAME).read_text(encoding="utf-8"))
    files = [e["file"] for e in manifest["files"]]
    assert "points-west.geojson" not in files
    assert "points-east.geojson" in files
    assert "polygons-west.geojson" in files
