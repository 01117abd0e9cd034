from __future__ import annotations

import logging

from telemetry.config import log_level

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Root logging for the server and the precompute CLI.

    Library code only calls `logging.getLogger(__name__)`; this is the single place that
    attaches handlers.
    """
    name = (level or log_level()).upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)
    # Shapely/pyproj are chatty at DEBUG.
    for noisy in ("shapely", "pyproj"):
        logging.getLogger(noisy).setLevel(max(logging.getLogger().level, logging.INFO))
