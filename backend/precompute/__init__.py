"""
Batch clipping of every clippable layer to every region, written as GeoJSON files the
layer service reads instead of clipping at request time.

Run with `python -m precompute --help` from `backend/`.
"""
