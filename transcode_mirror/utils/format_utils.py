"""
This module contains helper functions for formatting data into human-readable strings.
These functions are used throughout the application, particularly in logging and
the run summary, to present durations and to normalize file extensions.
"""

from datetime import timedelta
from pathlib import PurePath
from typing import Iterable, FrozenSet


def format_timedelta(td_object: timedelta) -> str:
    """
    Formats a timedelta object into a "HH:MM:SS" string.

    Args:
        td_object: The timedelta object to format.

    Returns:
        A string representing the timedelta in HH:MM:SS format.
        For example, a timedelta of 7261 seconds becomes "02:01:01".
        Returns "00:00:00" if the input is not a valid timedelta object.
    """
    if not isinstance(td_object, timedelta):
        return "00:00:00"

    total_seconds = int(td_object.total_seconds())
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


def normalize_extensions(extensions: Iterable[str]) -> FrozenSet[str]:
    """
    Normalizes an extension allow-list: lowercase, no leading dot.

    Both "FLAC" and ".flac" in a settings file end up as "flac".
    """
    return frozenset(ext.lower().lstrip(".") for ext in extensions if ext and ext.strip("."))


def path_extension(path: PurePath | str) -> str:
    """Returns the lowercase extension of a path without the leading dot ("" if none)."""
    return PurePath(path).suffix.lower().lstrip(".")


def has_extension(path: PurePath | str, extensions: FrozenSet[str]) -> bool:
    """
    Checks if a file's extension is present in a normalized allow-list
    (case-insensitive).
    """
    if not extensions:
        return False
    return path_extension(path) in extensions
