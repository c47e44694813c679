"""
Polygon clipping and scaling of reconstructed frames.

The output never carries real alpha.  Everything outside the polygon is
painted with a single substitution colour (the chroma key) that the
encoder later declares as its transparent palette index.  A source pixel
that happens to equal the key exactly also turns transparent; this is an
accepted approximation of per-pixel alpha.

Fill rule
---------
The clip is rasterized with ``ImageDraw.polygon``, which fills between
pairs of edge crossings on each scanline, i.e. the even-odd rule.
Self-intersecting polygons are accepted and follow that rule: the inner
pentagon of a pentagram is *outside*.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

from PIL import Image, ImageDraw

from gifcrop.config import CHROMA_KEY
from gifcrop.exceptions import DegeneratePolygonError
from gifcrop.types import Point, Polygon

logger = logging.getLogger(__name__)

MIN_POLYGON_POINTS = 3
DEFAULT_INSET_FRACTION = 0.2


# ---------------------------------------------------------------------------
# Polygon helpers
# ---------------------------------------------------------------------------

def _as_point(p) -> Point:
    if isinstance(p, Point):
        return p
    if isinstance(p, dict):
        return Point(float(p["x"]), float(p["y"]))
    x, y = p
    return Point(float(x), float(y))


def polygon_area(polygon: Sequence[Point]) -> float:
    """Signed shoelace area; positive for counter-clockwise in y-up space."""
    n = len(polygon)
    twice = 0.0
    for i in range(n):
        a = polygon[i]
        b = polygon[(i + 1) % n]
        twice += a.x * b.y - b.x * a.y
    return twice / 2.0


def validate_polygon(points: Iterable) -> Polygon:
    """Normalize *points* into a Polygon or raise DegeneratePolygonError.

    Accepts Point objects, ``(x, y)`` pairs or ``{"x": .., "y": ..}``
    mappings.  Rejects fewer than three points, non-finite coordinates
    and polygons enclosing no area (all points collinear or coincident).
    """
    try:
        polygon = tuple(_as_point(p) for p in points)
    except (TypeError, ValueError, KeyError) as exc:
        raise DegeneratePolygonError(f"Invalid polygon point: {exc}") from exc
    if len(polygon) < MIN_POLYGON_POINTS:
        raise DegeneratePolygonError(
            f"Polygon needs at least {MIN_POLYGON_POINTS} points, got {len(polygon)}.")
    for p in polygon:
        if not (math.isfinite(p.x) and math.isfinite(p.y)):
            raise DegeneratePolygonError(f"Non-finite polygon point {p}.")
    if polygon_area(polygon) == 0.0:
        raise DegeneratePolygonError("Polygon encloses no area.")
    return polygon


def scale_polygon(polygon: Sequence[Point], sx: float, sy: float) -> Polygon:
    return tuple(Point(p.x * sx, p.y * sy) for p in polygon)


def clamp_polygon(polygon: Sequence[Point], width: int, height: int) -> Polygon:
    """Clamp every point into ``[0, width] x [0, height]``."""
    return tuple(
        Point(min(max(p.x, 0.0), float(width)), min(max(p.y, 0.0), float(height)))
        for p in polygon
    )


def default_polygon(width: int, height: int) -> Polygon:
    """Diamond touching the mid-points of a canvas inset by 20%.

    The inset is 20% of the shorter side, applied on both axes.
    """
    pad = min(width, height) * DEFAULT_INSET_FRACTION
    return (
        Point(width * 0.5, pad),
        Point(width - pad, height * 0.5),
        Point(width * 0.5, height - pad),
        Point(pad, height * 0.5),
    )


def polygon_mask(polygon: Sequence[Point], size: tuple[int, int]) -> Image.Image:
    """Rasterize *polygon* (already in target space) into an ``L`` mask."""
    mask = Image.new("L", size, 0)
    ImageDraw.Draw(mask).polygon([(p.x, p.y) for p in polygon], fill=255)
    return mask


# ---------------------------------------------------------------------------
# Frame masking
# ---------------------------------------------------------------------------

def mask_frame(image, polygon, source_width, source_height,
               target_width, target_height, key_color=CHROMA_KEY):
    """Clip *image* to *polygon* and scale it to the target size.

    *polygon* is in source coordinates.  Returns an opaque RGBA image of
    ``(target_width, target_height)`` in which every pixel outside the
    scaled polygon is exactly *key_color*.  Transparent source pixels
    inside the polygon also come out as *key_color*.
    """
    if target_width <= 0 or target_height <= 0:
        raise ValueError(
            f"Target size must be positive, got {target_width}x{target_height}.")
    polygon = validate_polygon(polygon)

    sx = target_width / source_width
    sy = target_height / source_height
    target_size = (target_width, target_height)
    key = (*key_color, 255)

    # Geometry is scaled before rasterizing so edges stay straight in
    # target space.
    clip = polygon_mask(scale_polygon(polygon, sx, sy), target_size)

    src = image if image.mode == "RGBA" else image.convert("RGBA")
    if src.size != target_size:
        src = src.resize(target_size, Image.LANCZOS)

    interior = Image.new("RGBA", target_size, key)
    interior.alpha_composite(src)

    target = Image.new("RGBA", target_size, key)
    target.paste(interior, (0, 0), clip)
    return target
