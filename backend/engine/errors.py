from __future__ import annotations

from typing import Literal

ErrorCategory = Literal["not-found", "parse-error", "internal"]


class LayerServiceError(Exception):
    """
    Request-level failure with a machine-readable category.

    The API maps categories to status codes; nothing below the API catches these.
    """

    category: ErrorCategory = "internal"
    status_code: int = 500

    def __init__(self, message: str, *, layer_id: str | None = None) -> None:
        super().__init__(message)
        self.layer_id = layer_id

    def to_dict(self) -> dict[str, str]:
        return {"error": self.category, "detail": str(self)}


class LayerNotFoundError(LayerServiceError):
    category: ErrorCategory = "not-found"
    status_code = 404


class LayerParseError(LayerServiceError):
    """Source or precomputed GeoJSON could not be read."""

    category: ErrorCategory = "parse-error"
    status_code = 422


class InternalLayerError(LayerServiceError):
    category: ErrorCategory = "internal"
    status_code = 500
