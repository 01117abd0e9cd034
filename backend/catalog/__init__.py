"""
Layer and region catalog, loaded from `catalog/catalog.yaml` at the repo root.
"""
