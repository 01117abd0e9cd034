from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from layers.types import FeatureCollection

# Where a result came from.
ResultSource = Literal["passthrough", "precomputed", "computed", "raster"]


@dataclass(frozen=True)
class ClipResult:
    """
    The features of one layer restricted to one region.

    `region_key` is None for unfiltered results (whole country, unknown region).
    """

    layer_id: str
    region_key: str | None
    collection: FeatureCollection
    source: ResultSource
    build_ms: float = 0.0
    # ClipReport.as_dict() for computed results.
    stats: dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.collection)


class LayerEngine(Protocol):
    """
    Produces clip results.

    - LayerCache: memory -> precomputed file -> clip on demand
    """

    def get(self, layer_id: str, region_key: str | None) -> ClipResult: ...
