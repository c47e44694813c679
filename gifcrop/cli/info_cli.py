"""
CLI command for inspecting the frame structure of an animation.

Usage:
    gifcrop info input.gif
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ..codec import decode_file
from ..exceptions import GifCropError
from ..frames import total_duration_ms, validate_raw_frames


def cmd_info(args: argparse.Namespace) -> int:
    """Main handler for ``gifcrop info``."""
    path = Path(args.input)
    if not path.is_file():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1
    try:
        animation = decode_file(path)
    except GifCropError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    frames = animation.frames
    print(f"{path.name}: {animation.format or 'unknown'} "
          f"{animation.width}x{animation.height}, {len(frames)} frames, "
          f"{total_duration_ms(frames)} ms, loop={animation.loop}")
    if args.frames:
        for i, frame in enumerate(frames):
            pl = frame.placement
            print(f"  {i:4d}  {pl.width}x{pl.height}+{pl.left}+{pl.top}  "
                  f"{frame.delay_ms:5d} ms  {frame.disposal.name}")

    validation = validate_raw_frames(frames, animation.width, animation.height)
    for message in validation.messages:
        print(f"Warning: {message}", file=sys.stderr)
    return 0


def build_info_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``info`` subcommand."""
    p = subparsers.add_parser(
        "info",
        help="Show canvas size, timing and per-frame placement",
    )
    p.add_argument("input", help="Path to an animated image")
    p.add_argument(
        "--frames", action="store_true",
        help="List every frame's placement, delay and disposal",
    )
    p.set_defaults(func=cmd_info)
