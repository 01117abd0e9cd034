"""
Serving engine for region-scoped layers.

`LayerCache` memoizes (layer, region) results, reading precomputed files when present
and clipping on demand otherwise; `LayerService` resolves request region names and runs
the cache off the event loop.
"""
