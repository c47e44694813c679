"""
Animated image decoding and GIF encoding on top of Pillow.

Decoding
--------
``decode`` turns an animated image into the differential frame model used
by the reconstructor.  For GIF input every frame yields the rectangle the
frame itself occupies (its dispose extent), its disposal code and its
delay.  Other animated formats Pillow can read (APNG, WebP) are
delivered as full-canvas patches with ``DisposalMode.NONE``.

Encoding
--------
``encode`` writes a sequence of ``(bitmap, delay_ms)`` pairs as an
animated GIF.  Transparency is a single colour key: palette index 255 is
reserved for the key colour and declared as the transparent index, and
every pixel exactly equal to the key is written with it.  The remaining
entries hold the quantized palette, whose size shrinks as ``quality``
grows (lower quality = better fidelity).
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import numpy as np
from PIL import GifImagePlugin, Image, ImageSequence, UnidentifiedImageError

from gifcrop.config import (
    DEFAULT_QUALITY,
    MAX_QUALITY,
    MIN_QUALITY,
    DitherAlgorithm,
    EncoderConfig,
)
from gifcrop.exceptions import DecodeError, EncodeError
from gifcrop.types import DisposalMode, Placement, RawFrame

logger = logging.getLogger(__name__)

TRANSPARENT_INDEX = 255
MAX_OPAQUE_COLORS = 255          # Index 255 is the key
MIN_OPAQUE_COLORS = 8
QUALITY_HALVING_STEP = 5         # Palette halves every 5 quality steps

_PIL_DITHER = {
    DitherAlgorithm.FLOYD_STEINBERG: Image.Dither.FLOYDSTEINBERG,
    DitherAlgorithm.ORDERED: Image.Dither.ORDERED,
    DitherAlgorithm.NONE: Image.Dither.NONE,
}


# ===================================================================
#  DECODING
# ===================================================================

@dataclass
class DecodedAnimation:
    """Raw frames plus the canvas they are composited on."""
    frames: list[RawFrame]
    width: int
    height: int
    loop: int | None = None
    format: str = ""
    info: dict[str, Any] = field(default_factory=dict)


def _clip_box(box, width, height):
    x0, y0, x1, y1 = box
    x0, y0 = max(0, x0), max(0, y0)
    x1, y1 = min(width, x1), min(height, y1)
    if x1 <= x0 or y1 <= y0:
        return None
    return (x0, y0, x1, y1)


def _raw_frame(frame: Image.Image, width: int, height: int, is_gif: bool) -> RawFrame:
    rgba = frame.convert("RGBA")
    delay = int(round(frame.info.get("duration", 0) or 0))
    box = None
    disposal = DisposalMode.NONE
    if is_gif:
        box = _clip_box(getattr(frame, "dispose_extent", (0, 0, width, height)),
                        width, height)
        disposal = DisposalMode.from_gif(getattr(frame, "disposal_method", 0))
    if box is None:
        box = (0, 0, width, height)
    # Pillow hands back the composited canvas; the frame's own rectangle
    # of it is the patch.
    patch = rgba.crop(box) if box != (0, 0) + rgba.size else rgba
    x0, y0, x1, y1 = box
    return RawFrame(
        patch=patch,
        delay_ms=delay,
        placement=Placement(left=x0, top=y0, width=x1 - x0, height=y1 - y0),
        disposal=disposal,
    )


def decode(data: bytes) -> DecodedAnimation:
    """Decode an animated image into raw frames.

    Raises DecodeError on unreadable, truncated or empty input.
    """
    if not data:
        raise DecodeError("Input is empty.")
    try:
        img = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, OSError, EOFError, SyntaxError, ValueError,
            Image.DecompressionBombError) as exc:
        raise DecodeError(f"Unrecognized image data: {exc}") from exc

    with img:
        fmt = img.format or ""
        is_gif = fmt == "GIF"
        frames: list[RawFrame] = []
        width = height = 0
        try:
            for i, frame in enumerate(ImageSequence.Iterator(img)):
                frame.load()
                if i == 0:
                    width, height = frame.size
                frames.append(_raw_frame(frame, width, height, is_gif))
        except (OSError, EOFError, SyntaxError, ValueError,
                Image.DecompressionBombError) as exc:
            raise DecodeError(f"Malformed {fmt or 'image'} data: {exc}") from exc
        loop = img.info.get("loop")
        info = dict(img.info)

    if not frames or width == 0 or height == 0:
        raise DecodeError("Image contains no frames.")
    logger.debug("Decoded %d %s frames on a %dx%d canvas",
                 len(frames), fmt, width, height)
    return DecodedAnimation(frames=frames, width=width, height=height,
                            loop=loop, format=fmt, info=info)


def decode_file(path: str | Path) -> DecodedAnimation:
    """Read and decode the animated image at *path*."""
    return decode(Path(path).read_bytes())


# ===================================================================
#  ENCODING
# ===================================================================

def palette_size(quality: int) -> int:
    """Number of opaque palette entries available at *quality*."""
    steps = max(0, quality - DEFAULT_QUALITY)
    colors = int(MAX_OPAQUE_COLORS * 0.5 ** (steps / QUALITY_HALVING_STEP))
    return max(MIN_OPAQUE_COLORS, colors)


def kmeans_passes(quality: int) -> int:
    """Extra k-means refinement passes for qualities better than default."""
    return max(0, DEFAULT_QUALITY - quality)


def _palette_source(image: Image.Image, exclude_color=None):
    """Pixels of *image* that count toward its palette.

    Pixels equal to *exclude_color* are dropped and the rest laid out as a
    single row.  Returns None when no pixel is left.
    """
    if exclude_color is None:
        return image
    pixels = np.asarray(image).reshape(-1, 3)
    keep = ~np.all(pixels == np.array(exclude_color, dtype=np.uint8), axis=-1)
    if not keep.any():
        return None
    return Image.fromarray(np.ascontiguousarray(pixels[keep].reshape(1, -1, 3)))


def quantized_palette(
    image: Image.Image,
    max_colors: int = MAX_OPAQUE_COLORS,
    kmeans: int = 0,
    exclude_color=None,
) -> list[int]:
    """Flat ``[r, g, b, ...]`` median-cut palette of at most *max_colors* entries."""
    source = _palette_source(image.convert("RGB"), exclude_color)
    if source is None:
        return [0, 0, 0]
    palette_img = source.quantize(
        colors=max_colors,
        method=Image.Quantize.MEDIANCUT,
        kmeans=kmeans,
        dither=Image.Dither.NONE,
    )
    return palette_img.getpalette()[: max_colors * 3]


def generate_global_palette(
    images: list[Image.Image],
    max_colors: int = MAX_OPAQUE_COLORS,
    kmeans: int = 0,
    exclude_color=None,
) -> list[int]:
    """Build one palette covering every frame.

    Pillow's ``quantize()`` works on a single image, so frames are tiled
    into a mosaic (at most 64 evenly spaced frames) and the mosaic is
    quantized.  Pixels equal to *exclude_color* (the transparency key)
    take no palette entry.  Returns the flat ``[r, g, b, ...]`` palette
    with at most *max_colors* entries.
    """
    frame_w, frame_h = images[0].size
    sample_indices = list(range(len(images)))
    if len(images) > 64:
        step = len(images) / 64
        sample_indices = [int(i * step) for i in range(64)]

    cols = min(len(sample_indices), 8)
    rows = math.ceil(len(sample_indices) / cols)
    # Unused cells are filled with the excluded colour so they stay out
    # of the palette too.
    fill = tuple(exclude_color) if exclude_color is not None else (0, 0, 0)
    mosaic = Image.new("RGB", (frame_w * cols, frame_h * rows), fill)
    for idx, frame_idx in enumerate(sample_indices):
        r, c = divmod(idx, cols)
        mosaic.paste(images[frame_idx], (c * frame_w, r * frame_h))

    return quantized_palette(mosaic, max_colors, kmeans, exclude_color)


def _padded_palette(palette: list[int], key_color) -> list[int]:
    """256-entry palette: *palette*, copies of entry 0, then the key at 255."""
    entries = len(palette) // 3
    filler = palette[:3] * (TRANSPARENT_INDEX - entries)
    return palette + filler + list(key_color)


def _reference_palette_image(palette: list[int]) -> Image.Image:
    ref = Image.new("P", (1, 1))
    entries = len(palette) // 3
    ref.putpalette(palette + palette[:3] * (256 - entries))
    return ref


def _keyed_frame(quantized: Image.Image, rgb: Image.Image, entries: int,
                 key_color) -> Image.Image:
    """Force key-coloured pixels onto the transparent index."""
    indices = np.array(quantized, dtype=np.uint8)
    # Padding entries duplicate entry 0.
    indices[indices >= entries] = 0
    key_mask = np.all(np.asarray(rgb) == np.array(key_color, dtype=np.uint8), axis=-1)
    indices[key_mask] = TRANSPARENT_INDEX
    return Image.frombytes("P", rgb.size, indices.tobytes())


def _validate_encode_args(frames, width, height, quality, transparent_color):
    if width <= 0 or height <= 0:
        raise EncodeError(f"Dimensions must be positive, got {width}x{height}.")
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise EncodeError(
            f"Quality must be in {MIN_QUALITY}..{MAX_QUALITY}, got {quality}.")
    if not frames:
        raise EncodeError("No frames to encode.")
    if (len(transparent_color) != 3
            or any(not 0 <= int(c) <= 255 for c in transparent_color)):
        raise EncodeError(f"Invalid transparent colour {transparent_color!r}.")
    for i, (bitmap, delay) in enumerate(frames):
        if bitmap.size != (width, height):
            raise EncodeError(
                f"Frame {i}: size {bitmap.size} != encoder size ({width}, {height}).")
        if delay < 0:
            raise EncodeError(f"Frame {i}: negative delay {delay}.")


def _write_gif(p_frames: list[Image.Image], delays: list[int],
               config: EncoderConfig, local_palettes: bool) -> bytes:
    """Write each frame as its own full-canvas image block.

    Consecutive identical frames stay separate frames with their own
    delays; ``Image.save(save_all=True)`` would fold them together.
    """
    info: dict[str, Any] = {
        "loop": config.loop_count,
        "transparency": TRANSPARENT_INDEX,
        "optimize": False,
    }
    if config.comment:
        info["comment"] = config.comment.encode("utf-8")
    header, _ = GifImagePlugin.getheader(p_frames[0].copy(), info=info)

    blocks = list(header)
    for frame, delay in zip(p_frames, delays):
        blocks.extend(GifImagePlugin.getdata(
            frame,
            offset=(0, 0),
            duration=delay,
            disposal=2,
            transparency=TRANSPARENT_INDEX,
            include_color_table=local_palettes,
        ))
    blocks.append(b";")
    return b"".join(blocks)


def encode(
    frames: Sequence[tuple[Image.Image, int]],
    width: int,
    height: int,
    quality: int,
    transparent_color: tuple[int, int, int],
    config: EncoderConfig = EncoderConfig(),
) -> bytes:
    """Encode ``(bitmap, delay_ms)`` pairs into animated GIF bytes.

    Steps:
        1. Build a palette of ``palette_size(quality)`` colours from the
           non-key pixels, either one global palette (two-pass) or one
           per frame.
        2. Map every frame onto its palette and rewrite key-coloured
           pixels to index 255.
        3. Write one image block per input frame with disposal 2 and
           index 255 as the transparency index.
    """
    _validate_encode_args(frames, width, height, quality, transparent_color)
    key = tuple(int(c) for c in transparent_color)
    colors = palette_size(quality)
    kmeans = kmeans_passes(quality)
    dither = _PIL_DITHER[config.dither]

    rgb_frames = [bitmap.convert("RGB") for bitmap, _ in frames]
    delays = [int(delay) for _, delay in frames]

    if config.two_pass_palette:
        shared = generate_global_palette(rgb_frames, max_colors=colors,
                                         kmeans=kmeans, exclude_color=key)
        palettes = [shared] * len(rgb_frames)
    else:
        palettes = [quantized_palette(rgb, colors, kmeans, exclude_color=key)
                    for rgb in rgb_frames]

    p_frames: list[Image.Image] = []
    for rgb, palette in zip(rgb_frames, palettes):
        q = rgb.quantize(palette=_reference_palette_image(palette), dither=dither)
        out = _keyed_frame(q, rgb, len(palette) // 3, key)
        out.putpalette(_padded_palette(palette, key))
        p_frames.append(out)

    try:
        data = _write_gif(p_frames, delays, config,
                          local_palettes=not config.two_pass_palette)
    except (OSError, ValueError) as exc:
        raise EncodeError(f"GIF writer failed: {exc}") from exc
    logger.debug("Encoded %d frames at %dx%d q=%d (%d colours): %d bytes",
                 len(p_frames), width, height, quality, colors, len(data))
    return data
