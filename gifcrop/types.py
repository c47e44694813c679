"""
Core data structures shared by the reconstruction, masking and export stages.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Tuple

from PIL import Image

from gifcrop.exceptions import SizeBudgetUnmet


class DisposalMode(enum.Enum):
    """What happens to a frame's rectangle once its display period ends."""
    UNSPECIFIED = 0        # Decoder may do anything; treated like NONE.
    NONE = 1               # Leave the frame in place.
    RESTORE_BACKGROUND = 2 # Clear the rectangle to transparent.
    RESTORE_PREVIOUS = 3   # Restore what was there before the frame.

    @classmethod
    def from_gif(cls, code: int | None) -> DisposalMode:
        """Map a GIF Graphic Control Extension disposal code."""
        try:
            return cls(code)
        except ValueError:
            return cls.UNSPECIFIED


class ExportStatus(enum.Enum):
    """Terminal state of the size-constrained export loop."""
    ACCEPTED = "accepted"        # No budget, or the budget was met.
    BEST_EFFORT = "best_effort"  # Stopped at the dimension floor.
    GAVE_UP = "gave_up"          # Attempt budget exhausted.


@dataclass(frozen=True)
class Placement:
    """Offset and extent of a patch within the full canvas."""
    left: int
    top: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """Pillow-style ``(x0, y0, x1, y1)`` box."""
        return (self.left, self.top, self.left + self.width, self.top + self.height)

    def fits(self, canvas_width: int, canvas_height: int) -> bool:
        return (
            self.left >= 0
            and self.top >= 0
            and self.width > 0
            and self.height > 0
            and self.left + self.width <= canvas_width
            and self.top + self.height <= canvas_height
        )


@dataclass(frozen=True)
class RawFrame:
    """One differential frame as produced by the decoder."""
    patch: Image.Image          # RGBA, size == (placement.width, placement.height)
    delay_ms: int
    placement: Placement
    disposal: DisposalMode = DisposalMode.UNSPECIFIED


@dataclass
class CanvasFrame:
    """The complete bitmap visible while raw frame ``index`` is displayed."""
    image: Image.Image
    delay_ms: int
    index: int


@dataclass(frozen=True)
class Point:
    x: float
    y: float


Polygon = Tuple[Point, ...]


@dataclass(frozen=True)
class ExportRequest:
    """Parameters of one export run."""
    source_width: int
    source_height: int
    target_width: int
    target_height: int
    frame_stride: int = 1
    quality: int = 10             # Encoder ordinal; lower = better fidelity.
    size_budget_bytes: int | None = None


@dataclass
class ExportAttempt:
    """One encode attempt of the export loop."""
    attempt_number: int
    target_width: int
    target_height: int
    quality: int
    data: bytes = b""
    size_bytes: int = 0

    def summary(self) -> str:
        return (f"attempt {self.attempt_number}: "
                f"{self.target_width}x{self.target_height} "
                f"q={self.quality} -> {self.size_bytes} bytes")


@dataclass
class ExportResult:
    """The accepted artifact of an export run."""
    data: bytes
    size_bytes: int
    status: ExportStatus
    width: int
    height: int
    quality: int
    size_budget_bytes: int | None = None
    attempts: list[ExportAttempt] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def budget_met(self) -> bool:
        return self.size_budget_bytes is None or self.size_bytes <= self.size_budget_bytes

    def raise_for_budget(self) -> None:
        """Raise SizeBudgetUnmet if the artifact is over budget."""
        if not self.budget_met:
            raise SizeBudgetUnmet(
                f"Output is {self.size_bytes} bytes, budget was "
                f"{self.size_budget_bytes} bytes ({self.status.value}).",
                size_bytes=self.size_bytes,
                budget_bytes=self.size_budget_bytes,
            )
