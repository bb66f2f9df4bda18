"""
Filesystem metadata helpers.

`read_file_record` is the only place transcode-mirror asks the operating system
about a tracked file. It returns the size and timestamps that change detection
compares, and never opens the file.
"""

import os
from pathlib import Path, PurePosixPath

from ..domain.exceptions import LibraryIOException
from ..domain.records import FileRecord


def read_file_record(absolute_path: Path, relative_path: str) -> FileRecord:
    """
    Stats a file and returns its size and timestamps.

    The creation time is the file's birth time where the platform exposes one
    (macOS, Windows, some BSDs). Elsewhere the inode change time is used, which
    changes under the same conditions a re-tag or replacement would.

    Args:
        absolute_path: Path of the file on disk.
        relative_path: Album-relative path to store in the record.

    Returns:
        The file's `FileRecord`.

    Raises:
        LibraryIOException: The path does not exist, is not a regular file, or
                            cannot be stat-ed.
    """
    try:
        stat_result = os.stat(absolute_path)
    except OSError as e:
        raise LibraryIOException(f"Could not read metadata of {absolute_path}: {e}") from e

    if not os.path.isfile(absolute_path):
        raise LibraryIOException(f"Not a regular file: {absolute_path}")

    created_time = getattr(stat_result, "st_birthtime", None)
    if created_time is None:
        created_time = stat_result.st_ctime

    return FileRecord(
        relative_path=relative_path,
        size_bytes=stat_result.st_size,
        modified_time=stat_result.st_mtime,
        created_time=float(created_time),
    )


def from_relative_posix(root: Path, relative_path: str) -> Path:
    """Joins an album-relative path (forward slashes) onto `root`."""
    return root.joinpath(*PurePosixPath(relative_path).parts)


def remove_empty_parents(start_dir: Path, stop_dir: Path) -> None:
    """
    Removes `start_dir` and its parents while they are empty, stopping before
    `stop_dir` (which is never removed).
    """
    current = start_dir
    stop_dir = stop_dir.resolve()
    while current.resolve() != stop_dir and stop_dir in current.resolve().parents:
        try:
            current.rmdir()
        except OSError:
            # Not empty (or already gone): nothing more to clean up.
            return
        current = current.parent
