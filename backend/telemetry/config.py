from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def telemetry_path() -> Path:
    # Kept beside the data so the query log can be inspected with the duckdb CLI.
    return Path(
        os.getenv("GEOPORTAL_TELEMETRY_PATH")
        or (_repo_root() / "data" / "telemetry" / "telemetry.duckdb")
    )


def telemetry_enabled() -> bool:
    v = (os.getenv("GEOPORTAL_TELEMETRY") or "1").strip().lower()
    return v not in {"0", "false", "no", "off"}


def log_level() -> str:
    return (os.getenv("GEOPORTAL_LOG_LEVEL") or "INFO").strip().upper()
