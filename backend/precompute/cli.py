from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

import yaml

from catalog.registry import (
    Region,
    clear_catalog_cache,
    get_catalog,
    get_layer,
    list_regions,
    resolve_region,
)
from catalog.types import CatalogLayer
from engine.config import boundary_timeout_s, precomputed_dir
from geo.boundary import build_boundary_store
from precompute.pipeline import report_rows, run_precompute
from telemetry.logs import configure_logging

logger = logging.getLogger("precompute")

EXIT_OK = 0
EXIT_LAYER_FAILED = 1
EXIT_CONFIG = 2


class ConfigError(Exception):
    pass


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="python -m precompute",
        description="Clip every catalog layer to every region and write GeoJSON files",
    )
    ap.add_argument(
        "--region",
        action="append",
        default=[],
        metavar="NAME",
        help="Region name, key or alias (repeatable; default: all regions)",
    )
    ap.add_argument(
        "--layer",
        action="append",
        default=[],
        metavar="ID",
        help="Layer id (repeatable; default: all clippable layers)",
    )
    ap.add_argument("--out", help="Output directory (default: GEOPORTAL_PRECOMPUTED_DIR)")
    ap.add_argument("--catalog", help="Catalog YAML (default: GEOPORTAL_CATALOG_PATH)")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    ap.add_argument(
        "--json", action="store_true", help="Print the per-layer report as JSON to stdout"
    )
    return ap


def _select_regions(names: list[str]) -> list[Region]:
    if not names:
        return list_regions()
    out: list[Region] = []
    for name in names:
        region = resolve_region(name)
        if region is None:
            raise ConfigError(f"Unknown region: {name}")
        if region not in out:
            out.append(region)
    return out


def _select_layers(ids: list[str]) -> list[CatalogLayer]:
    if not ids:
        return list(get_catalog().layers)
    out: list[CatalogLayer] = []
    for layer_id in ids:
        layer = get_layer(layer_id)
        if layer is None:
            raise ConfigError(f"Unknown layer: {layer_id}")
        if not layer.clippable:
            logger.warning("Layer %s is never clipped (raster, boundary or regional)", layer.id)
        out.append(layer)
    return out


def run_cli(args: argparse.Namespace) -> int:
    if args.catalog:
        os.environ["GEOPORTAL_CATALOG_PATH"] = str(Path(args.catalog).resolve())
        clear_catalog_cache()

    try:
        get_catalog()
        regions = _select_regions(args.region)
        layers = _select_layers(args.layer)
    except (ConfigError, RuntimeError, ValueError, yaml.YAMLError) as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    out_dir = Path(args.out) if args.out else precomputed_dir()
    out_dir.mkdir(parents=True, exist_ok=True)

    boundaries = build_boundary_store(regions, timeout_s=boundary_timeout_s())
    report = run_precompute(regions, layers, boundaries, out_dir)

    written = sum(1 for r in report.layers if r.status == "written")
    unchanged = sum(1 for r in report.layers if r.status == "unchanged")
    logger.info(
        "Precompute finished: %d written, %d unchanged, %d failed, %d warnings -> %s",
        written,
        unchanged,
        len(report.failed),
        len(report.warnings),
        out_dir,
    )
    for r in report.warnings:
        logger.warning("%s/%s: %s", r.layer_id, r.region_key, r.warning)

    if args.json:
        json.dump(report_rows(report), sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")

    return EXIT_OK if report.ok else EXIT_LAYER_FAILED


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return run_cli(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
