"""
gifcrop -- Clip animated images to a polygon and re-encode them as GIF.

Reconstructs full frames from differential GIF frames, masks them to a
polygon with a chroma-key substitution colour, and searches resolution
and quality to fit an optional byte budget.
"""

__version__ = "0.1.0"

from gifcrop.exceptions import (
    DecodeError,
    DegeneratePolygonError,
    EncodeError,
    ExportCancelled,
    FrameValidationError,
    GifCropError,
    SizeBudgetUnmet,
)
from gifcrop.types import (
    CanvasFrame,
    DisposalMode,
    ExportAttempt,
    ExportRequest,
    ExportResult,
    ExportStatus,
    Placement,
    Point,
    RawFrame,
)

__all__ = [
    "CanvasFrame",
    "DecodeError",
    "DegeneratePolygonError",
    "DisposalMode",
    "EncodeError",
    "ExportAttempt",
    "ExportCancelled",
    "ExportRequest",
    "ExportResult",
    "ExportStatus",
    "FrameValidationError",
    "GifCropError",
    "Placement",
    "Point",
    "RawFrame",
    "SizeBudgetUnmet",
]
