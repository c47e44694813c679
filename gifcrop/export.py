"""
Size-constrained export loop.

    raw frames --[reconstruct, once]--> canvas frames
        \\-> per attempt: [mask + scale] --> [encode] --> evaluate

State machine::

    INIT -> (RUN_ATTEMPT -> EVALUATE)* -> ACCEPTED | BEST_EFFORT | GAVE_UP

Each failed attempt shrinks both dimensions by ``sqrt(budget / size * 0.9)``
(area tracks the byte ratio, so each side tracks its square root) and
degrades quality on a fixed schedule keyed to the attempt number.  Frames
are never dropped to save space.  At most ``max_attempts`` encodes run;
an over-budget result is still returned, flagged through its status.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

from gifcrop.codec import decode_file, encode
from gifcrop.config import ExportConfig, quality_after_attempt
from gifcrop.exceptions import ExportCancelled
from gifcrop.frames import group_by_stride, require_valid_frames
from gifcrop.mask import default_polygon, mask_frame, validate_polygon
from gifcrop.reconstruct import reconstruct
from gifcrop.types import (
    CanvasFrame,
    ExportAttempt,
    ExportRequest,
    ExportResult,
    ExportStatus,
    RawFrame,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
Encoder = Callable[..., bytes]


class _CanvasCache:
    """Replays reconstructed frames; reconstruction itself runs only once.

    The first pass pulls frames lazily from the reconstructor, later
    passes read the stored snapshots.
    """

    def __init__(self, raw_frames: Sequence[RawFrame], width: int, height: int) -> None:
        self._source: Optional[Iterator[CanvasFrame]] = reconstruct(raw_frames, width, height)
        self._frames: List[CanvasFrame] = []

    def __iter__(self) -> Iterator[CanvasFrame]:
        yield from self._frames
        if self._source is None:
            return
        for frame in self._source:
            self._frames.append(frame)
            yield frame
        self._source = None


def next_dimensions(width: int, height: int, size_bytes: int, budget_bytes: int,
                    safety_margin: float, min_dimension: int) -> tuple[int, int]:
    """Shrink ``(width, height)`` toward *budget_bytes*.

    Each side is clamped to ``min_dimension``, except that a side already
    below the floor is never enlarged: its floor is its current size.
    """
    scale = math.sqrt(budget_bytes / size_bytes * safety_margin)
    new_w = max(min(min_dimension, width), math.floor(width * scale))
    new_h = max(min(min_dimension, height), math.floor(height * scale))
    return new_w, new_h


def _render_attempt(cache, raw_frames, polygon, source_width, source_height,
                    width, height, quality, config, encoder, progress):
    groups = {g.index: g for g in group_by_stride(raw_frames, config.frame_stride)}
    total = len(raw_frames)
    encoded = []
    for processed, canvas in enumerate(cache):
        if progress is not None:
            progress(processed / total)
        group = groups.get(canvas.index)
        if group is None:
            continue
        bitmap = mask_frame(canvas.image, polygon, source_width, source_height,
                            width, height, key_color=config.key_color)
        encoded.append((bitmap, group.delay_ms))
    if progress is not None:
        progress(1.0)
    return encoder(encoded, width, height, quality, config.key_color,
                   config=config.encoder)


def export(
    raw_frames: Sequence[RawFrame],
    polygon,
    source_width: int,
    source_height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    size_budget_bytes: Optional[int] = None,
    progress: Optional[ProgressCallback] = None,
    *,
    config: ExportConfig = ExportConfig(),
    encoder: Encoder = encode,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> ExportResult:
    """Clip, scale and re-encode *raw_frames*, fitting a size budget if given.

    *polygon* is in source coordinates.  The target size defaults to the
    source size.  ``should_cancel`` is polled between attempts; returning
    True raises ExportCancelled.  Decode-side errors
    (FrameValidationError, DegeneratePolygonError) and EncodeError abort
    the export; a missed budget does not.
    """
    polygon = validate_polygon(polygon)
    require_valid_frames(raw_frames, source_width, source_height)
    if size_budget_bytes is not None and size_budget_bytes <= 0:
        raise ValueError(f"Size budget must be positive, got {size_budget_bytes}.")

    width = target_width or source_width
    height = target_height or source_height
    if width <= 0 or height <= 0:
        raise ValueError(f"Target size must be positive, got {width}x{height}.")
    quality = config.initial_quality

    cache = _CanvasCache(raw_frames, source_width, source_height)
    attempts: List[ExportAttempt] = []
    warnings: List[str] = []
    status = ExportStatus.GAVE_UP

    for attempt_number in range(1, config.max_attempts + 1):
        # RUN_ATTEMPT
        data = _render_attempt(cache, raw_frames, polygon, source_width,
                               source_height, width, height, quality, config,
                               encoder, progress)
        attempt = ExportAttempt(attempt_number=attempt_number, target_width=width,
                                target_height=height, quality=quality,
                                data=data, size_bytes=len(data))
        if attempts:
            attempts[-1].data = b""
        attempts.append(attempt)
        logger.info("Export %s", attempt.summary())

        # EVALUATE
        if size_budget_bytes is None or attempt.size_bytes <= size_budget_bytes:
            status = ExportStatus.ACCEPTED
            break

        if attempt_number == config.max_attempts:
            break

        if should_cancel is not None and should_cancel():
            raise ExportCancelled(f"Export cancelled after attempt {attempt_number}.")

        new_w, new_h = next_dimensions(
            width, height, attempt.size_bytes, size_budget_bytes,
            config.safety_margin, config.min_dimension)
        if new_w < config.min_dimension or new_h < config.min_dimension:
            status = ExportStatus.BEST_EFFORT
            msg = (f"Cannot shrink below {config.min_dimension}px "
                   f"(at {width}x{height}); keeping {attempt.size_bytes} bytes "
                   f"against a budget of {size_budget_bytes}.")
            warnings.append(msg)
            logger.warning(msg)
            break
        width, height = new_w, new_h
        quality = quality_after_attempt(attempt_number)

    final = attempts[-1]
    if status is ExportStatus.GAVE_UP:
        msg = (f"Could not reach {size_budget_bytes} bytes in "
               f"{len(attempts)} attempts; returning best effort "
               f"({final.size_bytes} bytes at {final.target_width}x"
               f"{final.target_height}).")
        warnings.append(msg)
        logger.warning(msg)

    return ExportResult(
        data=final.data,
        size_bytes=final.size_bytes,
        status=status,
        width=final.target_width,
        height=final.target_height,
        quality=final.quality,
        size_budget_bytes=size_budget_bytes,
        attempts=attempts,
        warnings=warnings,
    )


def export_request(
    raw_frames: Sequence[RawFrame],
    polygon,
    request: ExportRequest,
    progress: Optional[ProgressCallback] = None,
    *,
    config: ExportConfig = ExportConfig(),
    encoder: Encoder = encode,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> ExportResult:
    """Run ``export`` for an ExportRequest.

    The request's stride and quality override the ones in *config*.
    """
    config = replace(config, frame_stride=request.frame_stride,
                     initial_quality=request.quality)
    return export(
        raw_frames, polygon, request.source_width, request.source_height,
        target_width=request.target_width, target_height=request.target_height,
        size_budget_bytes=request.size_budget_bytes, progress=progress,
        config=config, encoder=encoder, should_cancel=should_cancel,
    )


def export_file(
    input_path,
    output_path,
    polygon=None,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    size_budget_bytes: Optional[int] = None,
    progress: Optional[ProgressCallback] = None,
    *,
    config: ExportConfig = ExportConfig(),
    should_cancel: Optional[Callable[[], bool]] = None,
) -> ExportResult:
    """Decode *input_path*, export it and write the result to *output_path*.

    Without a polygon the default inset diamond is used.  Nothing is
    written if decoding or encoding fails.
    """
    animation = decode_file(input_path)
    if polygon is None:
        polygon = default_polygon(animation.width, animation.height)
    result = export(
        animation.frames, polygon, animation.width, animation.height,
        target_width=target_width, target_height=target_height,
        size_budget_bytes=size_budget_bytes, progress=progress,
        config=config, should_cancel=should_cancel,
    )
    output_path = Path(output_path)
    output_path.write_bytes(result.data)
    return result
