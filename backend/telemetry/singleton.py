from __future__ import annotations

import logging
import threading

from telemetry.config import telemetry_enabled, telemetry_path
from telemetry.store import TelemetryStore, open_store

logger = logging.getLogger(__name__)

_STORE: TelemetryStore | None = None
_STORE_LOCK = threading.RLock()


def get_store() -> TelemetryStore | None:
    """
    Process-wide store, or None when telemetry is disabled.

    Reopens on a new file if GEOPORTAL_TELEMETRY_PATH changed (tests use tmp paths).
    """
    global _STORE
    if not telemetry_enabled():
        return None
    with _STORE_LOCK:
        path = telemetry_path()
        if _STORE is not None:
            if _STORE.path.resolve() == path.resolve():
                return _STORE
            _STORE.close()
            _STORE = None
        _STORE = open_store(path)
        if _STORE is not None:
            _STORE.start()
            logger.info("Telemetry at %s", path)
        return _STORE


def close_store() -> None:
    global _STORE
    with _STORE_LOCK:
        if _STORE is not None:
            _STORE.close()
            _STORE = None


def reset_store() -> None:
    global _STORE
    with _STORE_LOCK:
        if _STORE is not None:
            _STORE.reset()
            _STORE = None
        else:
            telemetry_path().unlink(missing_ok=True)
