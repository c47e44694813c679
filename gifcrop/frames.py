"""
Raw frame validation and frame-stride grouping.

    raw frames  -->  [validate]  -->  [reconstruct]  -->  [group by stride]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from gifcrop.exceptions import FrameValidationError
from gifcrop.types import RawFrame

logger = logging.getLogger(__name__)


@dataclass
class FrameValidation:
    valid: bool
    total_frames: int
    misplaced_indices: List[int] = field(default_factory=list)
    size_mismatches: List[Tuple[int, Tuple[int, int]]] = field(default_factory=list)
    bad_delay_indices: List[int] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)


def validate_raw_frames(frames, canvas_width, canvas_height):
    """Check every raw frame against the canvas it will be composited on."""
    result = FrameValidation(valid=True, total_frames=len(frames))
    if not frames:
        result.valid = False
        result.messages.append("Frame list is empty.")
        return result
    if canvas_width <= 0 or canvas_height <= 0:
        result.valid = False
        result.messages.append(
            f"Canvas has zero dimension ({canvas_width}, {canvas_height}).")
        return result
    for i, frame in enumerate(frames):
        pl = frame.placement
        if not pl.fits(canvas_width, canvas_height):
            result.misplaced_indices.append(i)
            result.messages.append(
                f"Frame {i}: placement {pl.box} outside canvas "
                f"({canvas_width}, {canvas_height}).")
        if frame.patch.size != (pl.width, pl.height):
            result.size_mismatches.append((i, frame.patch.size))
            result.messages.append(
                f"Frame {i}: patch size {frame.patch.size} != placement "
                f"({pl.width}, {pl.height}).")
        if frame.delay_ms < 0:
            result.bad_delay_indices.append(i)
            result.messages.append(f"Frame {i}: negative delay {frame.delay_ms}.")
    if result.misplaced_indices or result.size_mismatches or result.bad_delay_indices:
        result.valid = False
    return result


def require_valid_frames(frames, canvas_width, canvas_height):
    """Like validate_raw_frames but raise FrameValidationError on failure."""
    validation = validate_raw_frames(frames, canvas_width, canvas_height)
    if not validation.valid:
        head = validation.messages[0]
        more = len(validation.messages) - 1
        suffix = f" (+{more} more)" if more else ""
        raise FrameValidationError(f"Invalid frames: {head}{suffix}",
                                   validation.messages)
    return validation


@dataclass
class FrameGroup:
    """A kept frame and the display time of the frames it stands for."""
    index: int
    delay_ms: int
    source_indices: List[int]


def group_by_stride(frames: Sequence[RawFrame], stride: int = 1) -> List[FrameGroup]:
    """Keep every *stride*-th frame, summing the delays of the skipped ones.

    The last group may be shorter when the frame count is not a multiple
    of *stride*.
    """
    if stride < 1:
        raise ValueError(f"Frame stride must be >= 1, got {stride}.")
    groups = []
    for start in range(0, len(frames), stride):
        members = list(range(start, min(start + stride, len(frames))))
        groups.append(FrameGroup(
            index=start,
            delay_ms=sum(frames[i].delay_ms for i in members),
            source_indices=members,
        ))
    return groups


def total_duration_ms(frames: Sequence[RawFrame]) -> int:
    return sum(f.delay_ms for f in frames)
