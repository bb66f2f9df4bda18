"""
Command-Line Interface (CLI) setup for transcode-mirror.

This module uses Python's `argparse` to define and parse the command-line
arguments that control a synchronization run.
"""
import argparse
from pathlib import Path
from typing import List, Optional

from .config.common import DEFAULT_CONFIG_PATH


def get_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parses command-line arguments for transcode-mirror.

    Args:
        argv: Arguments to parse; `sys.argv[1:]` if None.

    Returns:
        argparse.Namespace: The parsed arguments. `display` is "bare" or "fancy".
    """
    parser = argparse.ArgumentParser(
        description="Keep a transcoded (MP3) copy of one or more music libraries up to date."
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH,
        help=f"Path to the YAML settings file (default: {DEFAULT_CONFIG_PATH})."
    )
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Number of concurrent jobs (overrides transcode.workers from the settings file)."
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set the logging level."
    )

    display_group = parser.add_mutually_exclusive_group()
    display_group.add_argument(
        "--bare", dest="display", action="store_const", const="bare",
        help="Report progress as plain log lines."
    )
    display_group.add_argument(
        "--fancy", dest="display", action="store_const", const="fancy",
        help="Show a live progress dashboard (default)."
    )
    parser.set_defaults(display="fancy")

    parser.add_argument(
        "--libraries", nargs="+", default=None, metavar="NAME",
        help="Only process these libraries (by key or name). All libraries by default."
    )
    parser.add_argument(
        "--skip-tool-check", action="store_true",
        help="Do not run `ffmpeg -version` before starting."
    )

    args = parser.parse_args(argv)

    if args.workers is not None and args.workers < 1:
        parser.error(f"--workers must be at least 1, got {args.workers}.")

    return args
