"""
Defines the data model used for change detection.

The central idea is that a file is considered unchanged between two runs when its
size and its (truncated) timestamps are unchanged. File contents are never hashed:
that would mean reading every byte of a potentially huge lossless library on each
run.

Classes:
    FileRecord: size and timestamps of one tracked file.
    TrackedFiles: the audio and data file maps of one album.
    AlbumState: a persisted snapshot of one album (source- or transcode-side).
    LibraryState: the artists and albums known to exist in one source library.
    AlbumOverride: optional per-album settings (scan depth).
    AlbumKey: identifies an album (or a whole artist) across one run.
    ChangeSet: the work one album needs, as computed by the change-detection engine.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Set

from ..config.common import (
    ALBUM_STATE_SCHEMA_VERSION,
    LIBRARY_STATE_SCHEMA_VERSION,
    TIMESTAMP_PRECISION_DIGITS,
)
from .exceptions import SchemaVersionMismatchException, SerializationException

_TIMESTAMP_SCALE = 10 ** TIMESTAMP_PRECISION_DIGITS


def truncate_timestamp(timestamp: float) -> int:
    """
    Truncates a timestamp to `TIMESTAMP_PRECISION_DIGITS` decimal digits.

    The result is returned as an integer number of tenths (for the default
    precision) so that comparisons are exact. The scaled value is rounded to a
    few decimals before flooring, so 1636881979.7 (stored as 1636881979.6999999)
    still truncates to 16368819797.

    Args:
        timestamp: Seconds since the epoch.

    Returns:
        The truncated timestamp, scaled to an integer.
    """
    return math.floor(round(timestamp * _TIMESTAMP_SCALE, 4))


@dataclass(eq=False)
class FileRecord:
    """
    Metadata of a single tracked file.

    Two records are equal if and only if their sizes match exactly and both
    timestamps match after truncation to one decimal digit. The relative path is
    carried along for convenience but is not part of the comparison.
    """

    relative_path: str
    size_bytes: int
    modified_time: float
    created_time: float

    def _comparison_key(self):
        return (
            self.size_bytes,
            truncate_timestamp(self.modified_time),
            truncate_timestamp(self.created_time),
        )

    def matches(self, other: "FileRecord") -> bool:
        return self._comparison_key() == other._comparison_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileRecord):
            return NotImplemented
        return self.matches(other)

    def __hash__(self) -> int:
        return hash(self._comparison_key())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size_bytes": self.size_bytes,
            "time_modified": self.modified_time,
            "time_created": self.created_time,
        }

    @classmethod
    def from_dict(cls, relative_path: str, data: Any) -> "FileRecord":
        if not isinstance(data, dict):
            raise SerializationException(f"File record for {relative_path!r} is not a mapping.")
        try:
            size_bytes = data["size_bytes"]
            modified_time = data["time_modified"]
            created_time = data["time_created"]
        except KeyError as e:
            raise SerializationException(f"File record for {relative_path!r} is missing {e}.") from e

        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int) or size_bytes < 0:
            raise SerializationException(f"Invalid size_bytes for {relative_path!r}: {size_bytes!r}")
        for name, value in (("time_modified", modified_time), ("time_created", created_time)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise SerializationException(f"Invalid {name} for {relative_path!r}: {value!r}")

        return cls(
            relative_path=relative_path,
            size_bytes=size_bytes,
            modified_time=float(modified_time),
            created_time=float(created_time),
        )


def _records_from_mapping(category: str, data: Any) -> Dict[str, FileRecord]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SerializationException(f"'{category}' must be a mapping of paths to file records.")
    records: Dict[str, FileRecord] = {}
    for relative_path, record_data in data.items():
        if not isinstance(relative_path, str) or not relative_path:
            raise SerializationException(f"Invalid path key in '{category}': {relative_path!r}")
        records[relative_path] = FileRecord.from_dict(relative_path, record_data)
    return records


@dataclass
class TrackedFiles:
    """The two category maps of an album: relative path -> FileRecord."""

    audio_files: Dict[str, FileRecord] = field(default_factory=dict)
    data_files: Dict[str, FileRecord] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audio_files": {path: record.to_dict() for path, record in sorted(self.audio_files.items())},
            "data_files": {path: record.to_dict() for path, record in sorted(self.data_files.items())},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "TrackedFiles":
        if not isinstance(data, dict):
            raise SerializationException("'tracked_files' must be a mapping.")
        return cls(
            audio_files=_records_from_mapping("audio_files", data.get("audio_files")),
            data_files=_records_from_mapping("data_files", data.get("data_files")),
        )


def _check_schema_version(data: Any, expected_version: int) -> None:
    if not isinstance(data, dict):
        raise SerializationException("State document is not a mapping.")
    if "schema_version" not in data:
        raise SerializationException("State document has no schema_version.")
    found_version = data["schema_version"]
    if found_version != expected_version:
        raise SchemaVersionMismatchException(found_version, expected_version)


@dataclass
class AlbumState:
    """
    A persisted snapshot of one album directory.

    The same structure is used for the source side (keys are source-relative
    paths) and for the transcoded side (keys are output-relative paths, audio
    files carry the output extension).
    """

    tracked_files: TrackedFiles = field(default_factory=TrackedFiles)
    schema_version: int = ALBUM_STATE_SCHEMA_VERSION

    @property
    def audio_files(self) -> Dict[str, FileRecord]:
        return self.tracked_files.audio_files

    @property
    def data_files(self) -> Dict[str, FileRecord]:
        return self.tracked_files.data_files

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "tracked_files": self.tracked_files.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AlbumState":
        _check_schema_version(data, ALBUM_STATE_SCHEMA_VERSION)
        return cls(
            tracked_files=TrackedFiles.from_dict(data.get("tracked_files")),
            schema_version=data["schema_version"],
        )


@dataclass
class LibraryState:
    """
    The set of artist/album directory names that existed in a source library at
    the end of the last completed pass. Directory traversal cannot find albums
    that were deleted, so this standing record is what deletion detection uses.
    """

    tracked_artists: Dict[str, Set[str]] = field(default_factory=dict)
    schema_version: int = LIBRARY_STATE_SCHEMA_VERSION

    def albums_of(self, artist: str) -> Set[str]:
        return self.tracked_artists.get(artist, set())

    def identifiers(self) -> Set[tuple]:
        """All (artist, album) pairs known to this state."""
        return {
            (artist, album)
            for artist, albums in self.tracked_artists.items()
            for album in albums
        }

    def add_album(self, artist: str, album: str) -> None:
        self.tracked_artists.setdefault(artist, set()).add(album)

    def remove_album(self, artist: str, album: str) -> None:
        albums = self.tracked_artists.get(artist)
        if albums is None:
            return
        albums.discard(album)
        if not albums:
            del self.tracked_artists[artist]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "tracked_artists": {
                artist: sorted(albums) for artist, albums in sorted(self.tracked_artists.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LibraryState":
        _check_schema_version(data, LIBRARY_STATE_SCHEMA_VERSION)
        raw_artists = data.get("tracked_artists") or {}
        if not isinstance(raw_artists, dict):
            raise SerializationException("'tracked_artists' must be a mapping.")

        tracked_artists: Dict[str, Set[str]] = {}
        for artist, albums in raw_artists.items():
            if not isinstance(artist, str):
                raise SerializationException(f"Invalid artist name: {artist!r}")
            if albums is None:
                albums = []
            if not isinstance(albums, list) or not all(isinstance(a, str) for a in albums):
                raise SerializationException(f"Album list of artist {artist!r} is not a list of names.")
            tracked_artists[artist] = set(albums)

        return cls(tracked_artists=tracked_artists, schema_version=data["schema_version"])


@dataclass(frozen=True)
class AlbumOverride:
    """Per-album settings read from an optional override file."""

    scan_depth: int = 0


@dataclass(frozen=True, order=True)
class AlbumKey:
    """
    Identifies an album within a run: library name, artist and album directory
    names. `album` is None for a change set that concerns a whole artist.
    """

    library: str
    artist: str
    album: Optional[str] = None

    def __str__(self) -> str:
        if self.album is None:
            return f"{self.library}: {self.artist}"
        return f"{self.library}: {self.artist} - {self.album}"


@dataclass
class ChangeSet:
    """
    The delta between an album's current view and its persisted state.

    Path sets are album-relative. `files_to_delete_in_output` holds paths relative
    to the transcoded album directory (audio paths already carry the output
    extension). Change sets are never persisted.
    """

    album: AlbumKey
    audio_to_transcode: Set[str] = field(default_factory=set)
    data_to_copy: Set[str] = field(default_factory=set)
    files_to_delete_in_output: Set[str] = field(default_factory=set)
    album_removed: bool = False
    artist_removed: bool = False

    def is_empty(self) -> bool:
        return not (
            self.audio_to_transcode
            or self.data_to_copy
            or self.files_to_delete_in_output
            or self.album_removed
            or self.artist_removed
        )

    def job_count(self) -> int:
        if self.album_removed or self.artist_removed:
            return 1
        return len(self.audio_to_transcode) + len(self.data_to_copy) + len(self.files_to_delete_in_output)

    def summary(self) -> str:
        if self.artist_removed:
            return "artist removed"
        if self.album_removed:
            return "album removed"
        return (
            f"{len(self.audio_to_transcode)} to transcode, "
            f"{len(self.data_to_copy)} to copy, "
            f"{len(self.files_to_delete_in_output)} to delete"
        )


def sorted_paths(paths: Set[str] | FrozenSet[str]) -> List[str]:
    """Returns album-relative paths in a stable order for job generation."""
    return sorted(paths)
