from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from telemetry.config import telemetry_enabled, telemetry_path
from telemetry.sql import (
    CREATE_EVENTS_TABLE_SQL,
    INSERT_EVENTS_SQL,
    SLOWEST_SQL_TEMPLATE,
    SUMMARY_SQL_TEMPLATE,
)

logger = logging.getLogger(__name__)

_BATCH_SIZE = 250
_FLUSH_INTERVAL_S = 0.5


def _as_float(v) -> float | None:
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


@dataclass
class TelemetryStore:
    """
    Append-only log of layer requests in a local DuckDB file.

    `record` only enqueues; a single writer thread batches inserts so request handlers
    never wait on disk.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[tuple | threading.Event]" = field(default_factory=queue.Queue, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, name="telemetry-writer", daemon=True
        )
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        endpoint: str,
        layer_id: str | None,
        region_key: str | None,
        source: str | None,
        feature_count: int,
        stats: dict[str, Any],
    ) -> None:
        self.start()
        try:
            self._q.put_nowait(
                (
                    int(time.time() * 1000),
                    str(endpoint),
                    layer_id,
                    region_key,
                    source,
                    int(feature_count),
                    json.dumps(stats, ensure_ascii=False, default=str),
                )
            )
        except queue.Full:
            logger.debug("telemetry queue full; dropping %s event", endpoint)

    def flush(self, *, timeout_s: float = 2.0) -> bool:
        """
        Wait until everything queued so far is written. Returns False on timeout.
        """
        if self._worker is None or not self._worker.is_alive():
            return True
        # The writer sets the marker once every earlier event is committed.
        marker = threading.Event()
        self._q.put(marker)
        return marker.wait(timeout_s)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        # DuckDB holds a file lock; other processes should read through the API.
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        layer_id: str | None = None,
        endpoint: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if layer_id:
            where.append("layer_id = ?")
            params.append(layer_id)
        if endpoint:
            where.append("endpoint = ?")
            params.append(endpoint)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)
        return [
            {
                "layerId": layer_v,
                "region": region_v,
                "n": int(n),
                "avgTotalMs": _as_float(avg_ms),
                "p50TotalMs": _as_float(p50),
                "p95TotalMs": _as_float(p95),
                "avgFeatures": _as_float(avg_features),
                "cacheHitRate": _as_float(hit_rate),
            }
            for layer_v, region_v, n, avg_ms, p50, p95, avg_features, hit_rate in rows
        ]

    def slowest(self, *, layer_id: str | None = None, limit: int = 25) -> list[dict[str, Any]]:
        where = ["json_extract(stats_json, '$.totalMs') IS NOT NULL"]
        params: list[Any] = []
        if layer_id:
            where.append("layer_id = ?")
            params.append(layer_id)
        params.append(int(max(1, min(200, limit))))

        rows = self.query(SLOWEST_SQL_TEMPLATE.format(where_sql=" AND ".join(where)), params)
        return [
            {
                "tsMs": int(ts_ms),
                "layerId": layer_v,
                "region": region_v,
                "source": source_v,
                "features": int(count) if count is not None else None,
                "totalMs": _as_float(total_ms),
                "cacheHit": bool(hit) if hit is not None else None,
            }
            for ts_ms, layer_v, region_v, source_v, count, total_ms, hit in rows
        ]

    def close(self) -> None:
        self.stop()
        with self._lock:
            self.conn.close()

    def reset(self) -> None:
        """
        Close the connection and delete the database file.
        """
        self.close()
        self.path.unlink(missing_ok=True)

    def _write(self, batch: list[tuple]) -> None:
        if not batch:
            return
        with self._lock:
            self.conn.executemany(INSERT_EVENTS_SQL, batch)
            # Make rows visible to readers right away.
            self.conn.execute("CHECKPOINT;")

    def _write_logged(self, batch: list[tuple]) -> None:
        try:
            self._write(batch)
        except duckdb.Error:
            logger.exception("telemetry write failed; dropping %d events", len(batch))

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[tuple] = []
        last_flush = time.time()

        while not self._stop.is_set():
            try:
                item = self._q.get(timeout=0.1)
            except queue.Empty:
                item = None

            marker = item if isinstance(item, threading.Event) else None
            if item is not None:
                if marker is None:
                    batch.append(item)
                self._q.task_done()

            now = time.time()
            if (
                marker is not None
                or len(batch) >= _BATCH_SIZE
                or (batch and now - last_flush >= _FLUSH_INTERVAL_S)
            ):
                self._write_logged(batch)
                batch = []
                last_flush = now
            if marker is not None:
                marker.set()

        # Drain on shutdown.
        markers: list[threading.Event] = []
        while True:
            try:
                item = self._q.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, threading.Event):
                markers.append(item)
            else:
                batch.append(item)
            self._q.task_done()
        self._write_logged(batch)
        for m in markers:
            m.set()


def open_store(path: Path | None = None) -> TelemetryStore | None:
    if not telemetry_enabled():
        return None
    path = path or telemetry_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    store = TelemetryStore(path=path, conn=duckdb.connect(str(path)))
    store.ensure_schema()
    return store
