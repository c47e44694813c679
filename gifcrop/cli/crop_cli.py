"""
CLI command for clipping an animation to a polygon.

Usage:
    gifcrop crop input.gif --points "50,10 90,50 50,90 10,50" -o out.gif
    gifcrop crop input.gif --polygon shape.json --width 320 --max-size 2MB
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from tqdm import tqdm

from ..codec import decode_file
from ..config import (
    DEFAULT_QUALITY,
    MAX_QUALITY,
    MIN_QUALITY,
    DitherAlgorithm,
    EncoderConfig,
    ExportConfig,
    load_polygon,
    parse_byte_size,
    parse_points,
)
from ..exceptions import GifCropError
from ..export import export_request
from ..mask import clamp_polygon, default_polygon
from ..types import ExportRequest, ExportStatus

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BUDGET_UNMET = 2

_DITHER_MAP = {
    "floyd-steinberg": DitherAlgorithm.FLOYD_STEINBERG,
    "ordered": DitherAlgorithm.ORDERED,
    "none": DitherAlgorithm.NONE,
}


def format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


class ProgressBar:
    """tqdm bar driven by the export loop's fractional progress.

    Each size attempt replays the frames, so the bar restarts per attempt.
    Disabled automatically when stderr is not a terminal.
    """

    def __init__(self, total_frames: int) -> None:
        self._bar = tqdm(
            total=total_frames, desc="attempt 1", unit="frame",
            file=sys.stderr, dynamic_ncols=True, disable=None,
        )
        self._attempt = 1
        self._last = 0.0

    def __call__(self, fraction: float) -> None:
        if fraction < self._last:
            self._attempt += 1
            self._bar.reset()
            self._bar.set_description(f"attempt {self._attempt}")
        self._last = fraction
        self._bar.n = round(fraction * self._bar.total)
        self._bar.refresh()

    def close(self) -> None:
        self._bar.close()


def resolve_target_size(source_w, source_h, width=None, height=None, scale=None):
    """Work out the initial target size, keeping aspect for a single side."""
    if scale is not None:
        return max(1, round(source_w * scale)), max(1, round(source_h * scale))
    if width and height:
        return width, height
    if width:
        return width, max(1, round(source_h * width / source_w))
    if height:
        return max(1, round(source_w * height / source_h)), height
    return source_w, source_h


def cmd_crop(args: argparse.Namespace) -> int:
    """Main handler for ``gifcrop crop``."""
    if args.scale is not None and args.height is not None:
        print("Error: --scale cannot be combined with --height", file=sys.stderr)
        return EXIT_ERROR

    input_path = Path(args.input)
    if not input_path.is_file():
        print(f"Error: file not found: {input_path}", file=sys.stderr)
        return EXIT_ERROR

    try:
        budget = parse_byte_size(args.max_size) if args.max_size else None
        if args.polygon:
            points = load_polygon(args.polygon)
        elif args.points:
            points = parse_points(args.points)
        else:
            points = None
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    try:
        animation = decode_file(input_path)
    except GifCropError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    if points is None:
        polygon = default_polygon(animation.width, animation.height)
    else:
        polygon = clamp_polygon(points, animation.width, animation.height)

    target_w, target_h = resolve_target_size(
        animation.width, animation.height, args.width, args.height, args.scale)

    request = ExportRequest(
        source_width=animation.width,
        source_height=animation.height,
        target_width=target_w,
        target_height=target_h,
        frame_stride=args.frame_stride,
        quality=args.quality,
        size_budget_bytes=budget,
    )
    config = ExportConfig(
        encoder=EncoderConfig(
            loop_count=args.loop,
            dither=_DITHER_MAP[args.dither],
            two_pass_palette=not args.no_global_palette,
            comment=args.comment or "",
        ),
    )

    print(f"Cropping {len(animation.frames)} frames "
          f"({animation.width}x{animation.height} -> {target_w}x{target_h}) ...")
    bar = ProgressBar(len(animation.frames))
    try:
        result = export_request(animation.frames, polygon, request, bar,
                                config=config)
    except GifCropError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        bar.close()

    for attempt in result.attempts:
        print(f"  {attempt.summary()}")

    output_path = Path(args.output) if args.output else input_path.with_name(
        f"{input_path.stem}_cropped.gif")
    output_path.write_bytes(result.data)

    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    print(f"Done! {result.width}x{result.height} -> {output_path} "
          f"({format_size(result.size_bytes)}, {result.status.value})")

    if args.strict and result.status is not ExportStatus.ACCEPTED:
        return EXIT_BUDGET_UNMET
    return EXIT_OK


def _quality(text: str) -> int:
    value = int(text)
    if not MIN_QUALITY <= value <= MAX_QUALITY:
        raise argparse.ArgumentTypeError(
            f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}")
    return value


def _positive_float(text: str) -> float:
    value = float(text)
    if not value > 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return value


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


def build_crop_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``crop`` subcommand and its arguments."""
    p = subparsers.add_parser(
        "crop",
        help="Clip an animation to a polygon",
        description="Clip every frame of an animated image to a polygon, "
                    "optionally resize, and re-encode as GIF within a size budget.",
    )
    p.add_argument("input", help="Path to the source GIF (or APNG / WebP)")
    shape = p.add_mutually_exclusive_group()
    shape.add_argument(
        "--points", default=None,
        help='Polygon points in source pixels, e.g. "10,10 90,10 50,80"',
    )
    shape.add_argument(
        "--polygon", default=None,
        help="JSON file holding the polygon points",
    )
    size = p.add_mutually_exclusive_group()
    size.add_argument(
        "--scale", type=_positive_float, default=None,
        help="Scale both sides by this factor (not combinable with --height)",
    )
    size.add_argument(
        "--width", type=_positive_int, default=None,
        help="Target width (height follows aspect unless --height is given)",
    )
    p.add_argument(
        "--height", type=_positive_int, default=None,
        help="Target height",
    )
    p.add_argument(
        "--max-size", default=None,
        help="Size budget, e.g. 5MB or 750KB (default: none)",
    )
    p.add_argument(
        "--quality", type=_quality, default=DEFAULT_QUALITY,
        help=f"Initial encoder quality, {MIN_QUALITY} (best) to "
             f"{MAX_QUALITY} (default: {DEFAULT_QUALITY})",
    )
    p.add_argument(
        "--frame-stride", type=_positive_int, default=1,
        help="Keep every Nth frame, summing delays (default: 1)",
    )
    p.add_argument(
        "--dither", choices=sorted(_DITHER_MAP), default="floyd-steinberg",
        help="Dithering used when mapping to the palette",
    )
    p.add_argument(
        "--no-global-palette", action="store_true",
        help="Quantize each frame with its own palette",
    )
    p.add_argument(
        "--loop", type=int, default=0,
        help="GIF loop count; 0 = forever (default: 0)",
    )
    p.add_argument("--comment", default=None, help="GIF comment to embed")
    p.add_argument(
        "--strict", action="store_true",
        help=f"Exit with status {EXIT_BUDGET_UNMET} if the size budget is not met",
    )
    p.add_argument(
        "-o", "--output", default=None,
        help="Output file path (default: <input_stem>_cropped.gif)",
    )
    p.set_defaults(func=cmd_crop)
