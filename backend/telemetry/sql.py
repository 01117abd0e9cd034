from __future__ import annotations

CREATE_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS layer_events (
  ts_ms BIGINT,
  endpoint TEXT,
  layer_id TEXT,
  region_key TEXT,
  source TEXT,
  feature_count BIGINT,
  stats_json TEXT
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  layer_id,
  region_key,
  COUNT(*) AS n,
  AVG(try_cast(json_extract(stats_json, '$.totalMs') AS DOUBLE)) AS avg_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.totalMs') AS DOUBLE), 0.50) AS p50_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.totalMs') AS DOUBLE), 0.95) AS p95_total_ms,
  AVG(feature_count) AS avg_features,
  AVG(CASE WHEN try_cast(json_extract(stats_json, '$.cacheHit') AS BOOLEAN) THEN 1 ELSE 0 END) AS cache_hit_rate
FROM layer_events
{where_sql}
GROUP BY layer_id, region_key
ORDER BY layer_id, region_key NULLS FIRST
"""

SLOWEST_SQL_TEMPLATE = """
SELECT
  ts_ms,
  layer_id,
  region_key,
  source,
  feature_count,
  try_cast(json_extract(stats_json, '$.totalMs') AS DOUBLE) AS total_ms,
  try_cast(json_extract(stats_json, '$.cacheHit') AS BOOLEAN) AS cache_hit
FROM layer_events
WHERE {where_sql}
ORDER BY total_ms DESC
LIMIT ?
"""

INSERT_EVENTS_SQL = """
INSERT INTO layer_events
  (ts_ms, endpoint, layer_id, region_key, source, feature_count, stats_json)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""
