from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def precomputed_dir() -> Path:
    # Output of `python -m precompute`; read-only at serve time.
    return Path(
        os.getenv("GEOPORTAL_PRECOMPUTED_DIR")
        or (_repo_root() / "data" / "precomputed")
    )


def boundary_timeout_s() -> float:
    raw = (os.getenv("GEOPORTAL_BOUNDARY_TIMEOUT_S") or "").strip()
    if raw:
        try:
            return max(0.1, float(raw))
        except ValueError:
            pass
    return 30.0


def clip_workers() -> int:
    raw = (os.getenv("GEOPORTAL_CLIP_WORKERS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except ValueError:
            pass
    return max(1, min(4, int(os.cpu_count() or 1)))


def use_precomputed() -> bool:
    v = (os.getenv("GEOPORTAL_USE_PRECOMPUTED") or "1").strip().lower()
    return v not in {"0", "false", "no", "off"}


def cors_origins() -> list[str]:
    raw = os.getenv("GEOPORTAL_CORS_ORIGINS") or "http://localhost:3000"
    return [o.strip() for o in raw.split(",") if o.strip()]
