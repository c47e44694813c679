"""Main CLI entry point for gifcrop."""

from __future__ import annotations

import argparse
import logging
import sys

from .. import __version__
from .crop_cli import build_crop_parser
from .info_cli import build_info_parser


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gifcrop",
        description="Clip animated GIFs to a polygon and fit them to a size budget",
    )
    parser.add_argument("--version", action="version", version=f"gifcrop {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Log progress (-v) or debug output (-vv)",
    )
    subparsers = parser.add_subparsers(dest="command")
    build_crop_parser(subparsers)
    build_info_parser(subparsers)
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        return 0
    return args.func(args)


def cli_entry() -> None:
    sys.exit(main())
