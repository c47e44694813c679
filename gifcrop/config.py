"""
Export policy constants, configuration objects and input parsing.

The size-fitting constants below are policy choices rather than derived
values; the test suite pins them literally.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gifcrop.types import Point

# Reserved substitution colour written wherever the output must be
# transparent.  Source pixels of exactly this colour become transparent
# as well.
CHROMA_KEY: tuple[int, int, int] = (0, 255, 0)

DEFAULT_QUALITY = 10          # Encoder ordinal, 1 (best) .. 30 (worst)
MIN_QUALITY = 1
MAX_QUALITY = 30
MAX_ATTEMPTS = 5
MIN_DIMENSION = 32            # Shrinking never goes below this
SAFETY_MARGIN = 0.9           # Applied to budget/actual before sqrt

# Quality used for the attempt *after* the given attempt number.
# Attempt numbers past the last key reuse the last value.
QUALITY_SCHEDULE: dict[int, int] = {
    1: 15,   # mild
    2: 20,   # moderate
    3: 30,   # maximum
}


def quality_after_attempt(attempt_number: int) -> int:
    """Return the encoder quality to use after *attempt_number* failed."""
    last = max(QUALITY_SCHEDULE)
    return QUALITY_SCHEDULE[min(attempt_number, last)]


class DitherAlgorithm(enum.Enum):
    """Dithering algorithm for GIF quantization."""
    FLOYD_STEINBERG = "floyd_steinberg"
    ORDERED = "ordered"
    NONE = "none"


@dataclass(frozen=True)
class EncoderConfig:
    """GIF writer options that are not part of the size search."""
    loop_count: int = 0             # 0 = infinite loop
    dither: DitherAlgorithm = DitherAlgorithm.FLOYD_STEINBERG
    two_pass_palette: bool = True   # One global palette for all frames
    comment: str = ""               # GIF comment extension; empty = none


@dataclass(frozen=True)
class ExportConfig:
    """Parameters of the size-constrained export loop."""
    initial_quality: int = DEFAULT_QUALITY
    frame_stride: int = 1
    max_attempts: int = MAX_ATTEMPTS
    min_dimension: int = MIN_DIMENSION
    safety_margin: float = SAFETY_MARGIN
    key_color: tuple[int, int, int] = CHROMA_KEY
    encoder: EncoderConfig = field(default_factory=EncoderConfig)


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1024,
    "k": 1024,
    "mb": 1024 ** 2,
    "m": 1024 ** 2,
    "gb": 1024 ** 3,
    "g": 1024 ** 3,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_byte_size(text: str) -> int:
    """Parse ``"5MB"``, ``"750kb"`` or ``"1200"`` into a byte count."""
    m = _SIZE_RE.match(text)
    if m is None:
        raise ValueError(f"Invalid size: {text!r}")
    number, unit = m.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown size unit {unit!r} in {text!r}")
    size = int(float(number) * multiplier)
    if size <= 0:
        raise ValueError(f"Size must be positive: {text!r}")
    return size


def parse_points(text: str) -> list[Point]:
    """Parse ``"x,y x,y ..."`` (also ``;``-separated) into points."""
    points = []
    for token in re.split(r"[\s;]+", text.strip()):
        if not token:
            continue
        parts = token.split(",")
        if len(parts) != 2:
            raise ValueError(f"Invalid point {token!r}; expected 'x,y'")
        points.append(Point(float(parts[0]), float(parts[1])))
    return points


def _point_from_json(item: Any) -> Point:
    try:
        if isinstance(item, dict):
            return Point(float(item["x"]), float(item["y"]))
        if isinstance(item, (list, tuple)) and len(item) == 2:
            return Point(float(item[0]), float(item[1]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid point entry: {item!r}") from exc
    raise ValueError(f"Invalid point entry: {item!r}")


def load_polygon(path: str | Path) -> list[Point]:
    """Load points from a JSON file.

    Accepts a list of ``[x, y]`` pairs, a list of ``{"x": .., "y": ..}``
    objects (extra keys such as ``id`` are ignored), or an object with a
    ``"points"`` key holding either form.
    """
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = payload.get("points")
    if not isinstance(payload, list):
        raise ValueError(f"{path}: expected a list of points")
    return [_point_from_json(item) for item in payload]
