"""
Custom exception hierarchy for gifcrop.

All gifcrop exceptions inherit from GifCropError so callers can catch
the entire family with a single except clause.
"""

from __future__ import annotations


class GifCropError(Exception):
    """Base exception for all gifcrop errors."""


class DecodeError(GifCropError):
    """Raised when the source animation cannot be decoded."""


class EncodeError(GifCropError):
    """Raised when the encoder rejects its parameters."""


class DegeneratePolygonError(GifCropError):
    """Raised when a polygon cannot bound a clip region."""


class FrameValidationError(GifCropError):
    """Raised when raw frames are inconsistent with the canvas."""

    def __init__(self, message: str, messages: list[str] | None = None) -> None:
        super().__init__(message)
        self.messages = list(messages or [])


class ExportCancelled(GifCropError):
    """Raised when the caller abandons an export between attempts."""


class SizeBudgetUnmet(GifCropError):
    """Raised on request when an export did not fit its size budget.

    ``export`` never raises this itself; the miss is reported through
    ``ExportResult.status``.  Callers that want a hard failure use
    ``ExportResult.raise_for_budget()``.
    """

    def __init__(self, message: str, size_bytes: int, budget_bytes: int) -> None:
        super().__init__(message)
        self.size_bytes = size_bytes
        self.budget_bytes = budget_bytes
