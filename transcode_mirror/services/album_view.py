"""
This module discovers the contents of a source library.

A source library has a fixed layout: `library/artist/album/files`. Discovery
lists the artist and album directories of a library; the album view builder then
classifies the files of one album into audio files (to be transcoded), data files
(to be copied as-is) and ignored files, using the library's extension allow-lists.

Nothing here reads file contents or timestamps. Metadata is collected later, by
the change-detection engine, for the files the view says are tracked.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Set

import yaml
from loguru import logger

from ..config.common import ALBUM_OVERRIDE_FILE_NAME, INTERNAL_FILE_NAMES
from ..config.settings import LibraryConfig
from ..domain.exceptions import ConfigurationException, LibraryIOException, StructureException
from ..domain.records import AlbumOverride, LibraryState
from ..utils.format_utils import has_extension


@dataclass
class AlbumView:
    """
    The tracked files of one album directory, as album-relative POSIX paths.

    Attributes:
        album_dir: The album directory the view was built from.
        audio_files: Files matching the audio allow-list.
        data_files: Files matching the data allow-list.
        ignored_files: Every other regular file found within the scan depth.
    """

    album_dir: Path
    audio_files: Set[str] = field(default_factory=set)
    data_files: Set[str] = field(default_factory=set)
    ignored_files: Set[str] = field(default_factory=set)

    def tracked_count(self) -> int:
        return len(self.audio_files) + len(self.data_files)


@dataclass
class LibraryScan:
    """
    The result of discovering one library.

    `artists` maps each valid artist directory name to its album directory names.
    Artists with layout violations are listed in `skipped_artists` instead and
    the violations are collected in `structure_errors`; they never stop the
    discovery of their siblings.
    """

    library: LibraryConfig
    artists: Dict[str, List[str]] = field(default_factory=dict)
    skipped_artists: Set[str] = field(default_factory=set)
    structure_errors: List[StructureException] = field(default_factory=list)

    def album_count(self) -> int:
        return sum(len(albums) for albums in self.artists.values())

    def to_library_state(self) -> LibraryState:
        state = LibraryState()
        for artist, albums in self.artists.items():
            for album in albums:
                state.add_album(artist, album)
        return state


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def _list_entries(directory: Path) -> List[os.DirEntry]:
    try:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        raise LibraryIOException(f"Could not list directory {directory}: {e}") from e


def load_album_override(album_dir: Path) -> AlbumOverride:
    """
    Loads the optional per-album override file.

    The file is a small YAML document, for example:

        scan:
          depth: 1

    Args:
        album_dir: The source album directory.

    Returns:
        The album's `AlbumOverride`, or the defaults if there is no override file.

    Raises:
        ConfigurationException: The file exists but is malformed, or the depth is
                                not a non-negative integer.
    """
    override_path = album_dir / ALBUM_OVERRIDE_FILE_NAME
    if not override_path.is_file():
        return AlbumOverride()

    try:
        with override_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        raise ConfigurationException(f"Could not read album override {override_path}: {e}") from e

    if data is None:
        return AlbumOverride()
    if not isinstance(data, dict):
        raise ConfigurationException(f"Album override {override_path} is not a mapping.")

    scan_section = data.get("scan") or {}
    if not isinstance(scan_section, dict):
        raise ConfigurationException(f"'scan' in {override_path} must be a mapping.")

    depth = scan_section.get("depth", 0)
    if isinstance(depth, bool) or not isinstance(depth, int) or depth < 0:
        raise ConfigurationException(f"Invalid scan depth in {override_path}: {depth!r}")

    logger.debug(f"Album override for {album_dir.name}: scan depth {depth}")
    return AlbumOverride(scan_depth=depth)


def build_album_view(
    album_dir: Path,
    album_override: AlbumOverride,
    audio_extensions: FrozenSet[str],
    data_extensions: FrozenSet[str],
    library_root: Optional[Path] = None,
) -> AlbumView:
    """
    Builds the view of tracked files of one album directory.

    Files directly in the album directory are always considered. Subdirectories
    are descended into only as far as `album_override.scan_depth` allows
    (0 means the album root only). Hidden directories, and the state and override
    files that transcode-mirror itself writes, are never tracked.

    Args:
        album_dir: The source album directory.
        album_override: Per-album settings (scan depth).
        audio_extensions: Normalized audio allow-list.
        data_extensions: Normalized data allow-list.
        library_root: If given, the album directory must be exactly
                      `library_root/<artist>/<album>`.

    Returns:
        The album's `AlbumView`.

    Raises:
        LibraryIOException: The album directory is missing or cannot be listed.
        StructureException: The album directory is not at album depth below `library_root`.
    """
    if library_root is not None:
        # Compared without resolving symlinks, so a linked album directory still counts.
        absolute_album = Path(os.path.abspath(album_dir))
        if absolute_album.parent.parent != Path(os.path.abspath(library_root)):
            raise StructureException(
                f"{album_dir} is not an album directory of library {library_root} "
                f"(expected <library>/<artist>/<album>)."
            )

    if not album_dir.is_dir():
        raise LibraryIOException(f"Album directory does not exist: {album_dir}")

    view = AlbumView(album_dir=album_dir)

    # (directory, album-relative prefix, depth below the album root)
    pending = [(album_dir, "", 0)]
    while pending:
        directory, prefix, depth = pending.pop()
        for entry in _list_entries(directory):
            relative_path = f"{prefix}{entry.name}"
            if entry.is_dir():
                if not _is_hidden(entry.name) and depth < album_override.scan_depth:
                    pending.append((Path(entry.path), f"{relative_path}/", depth + 1))
                continue
            if not entry.is_file():
                continue
            if depth == 0 and entry.name in INTERNAL_FILE_NAMES:
                continue

            if has_extension(entry.name, audio_extensions):
                view.audio_files.add(relative_path)
            elif has_extension(entry.name, data_extensions):
                view.data_files.add(relative_path)
            else:
                view.ignored_files.add(relative_path)

    logger.debug(
        f"Album view of {album_dir}: {len(view.audio_files)} audio, "
        f"{len(view.data_files)} data, {len(view.ignored_files)} ignored"
    )
    return view


def discover_library(library_config: LibraryConfig) -> LibraryScan:
    """
    Lists the artists and albums of a source library.

    Artist directories are the non-hidden directories in the library root, minus
    the library's `ignored_directories`. Album directories are the non-hidden
    directories inside an artist directory.

    A tracked audio file placed directly in the library root, or directly inside
    an artist directory, violates the layout. The former is recorded as an error
    for the library; the latter also takes that artist out of this run. Neither
    stops discovery of the other artists.

    Args:
        library_config: The library to scan.

    Returns:
        A `LibraryScan` with the discovered artists and any layout violations.

    Raises:
        LibraryIOException: The library root is missing or cannot be listed.
    """
    library_root = library_config.path
    if not library_root.is_dir():
        raise LibraryIOException(f"Library directory does not exist: {library_root}")

    scan = LibraryScan(library=library_config)

    for entry in _list_entries(library_root):
        if entry.is_file():
            if has_extension(entry.name, library_config.audio_extensions):
                scan.structure_errors.append(
                    StructureException(
                        f"Audio file {entry.name} is directly in library root {library_root}; "
                        f"it must be inside an artist/album directory."
                    )
                )
            continue
        if not entry.is_dir() or _is_hidden(entry.name):
            continue
        if entry.name in library_config.ignored_directories:
            logger.debug(f"Ignoring directory {entry.name} in library {library_config.name}")
            continue

        artist = entry.name
        artist_dir = Path(entry.path)
        albums: List[str] = []
        violation = None
        for artist_entry in _list_entries(artist_dir):
            if artist_entry.is_dir():
                if not _is_hidden(artist_entry.name):
                    albums.append(artist_entry.name)
            elif artist_entry.is_file() and has_extension(artist_entry.name, library_config.audio_extensions):
                violation = StructureException(
                    f"Audio file {artist_entry.name} is directly in artist directory {artist_dir}; "
                    f"it must be inside an album directory."
                )

        if violation is not None:
            scan.structure_errors.append(violation)
            scan.skipped_artists.add(artist)
            continue
        scan.artists[artist] = albums

    for error in scan.structure_errors:
        logger.error(f"[{library_config.name}] {error}")
    logger.debug(
        f"Discovered {len(scan.artists)} artists and {scan.album_count()} albums in library {library_config.name}"
    )
    return scan
