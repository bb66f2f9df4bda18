"""
The change-detection engine.

For each album, the current tracked files (as stat-ed now) are compared with the
album's last committed source state. The result is a `ChangeSet`:

    - audio files that are new or whose metadata changed must be transcoded,
    - data files that are new or changed must be copied,
    - files that disappeared from the source must have their derived output deleted,
    - outputs recorded in the album's last transcode-state that no current file
      produces any more (stale outputs) must be deleted.

An album whose state file is missing, corrupt or from another schema version is
simply treated as never processed, so every tracked file shows up as new.

At library level, the saved library state is compared with what discovery found
now to produce album-removed and artist-removed change sets. Those cannot be
found by walking the source tree, since the directories no longer exist.
"""

from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Set

from loguru import logger

from ..config.audio import DEFAULT_AUDIO_OUTPUT_EXTENSION
from ..domain.exceptions import SerializationException
from ..domain.records import AlbumKey, AlbumState, ChangeSet, FileRecord, LibraryState, TrackedFiles
from ..utils.fs_utils import from_relative_posix, read_file_record
from .album_view import AlbumView
from .state_store import load_album_state


def derived_output_path(relative_path: str, is_audio: bool, output_extension: str) -> str:
    """
    Maps an album-relative source path to the album-relative output path.

    Audio files get the output extension ("CD1/01 Intro.flac" -> "CD1/01 Intro.mp3");
    data files keep their name.
    """
    if not is_audio:
        return relative_path
    return PurePosixPath(relative_path).with_suffix(f".{output_extension}").as_posix()


def snapshot_album(album_dir: Path, view: AlbumView) -> AlbumState:
    """
    Reads the metadata of every tracked file of an album view.

    Raises:
        LibraryIOException: A tracked file vanished or could not be stat-ed.
    """
    audio_files = {
        path: read_file_record(from_relative_posix(album_dir, path), path) for path in sorted(view.audio_files)
    }
    data_files = {
        path: read_file_record(from_relative_posix(album_dir, path), path) for path in sorted(view.data_files)
    }
    return AlbumState(tracked_files=TrackedFiles(audio_files=audio_files, data_files=data_files))


def snapshot_output(output_album_dir: Path, view: AlbumView, output_extension: str) -> AlbumState:
    """
    Reads the metadata of the output files derived from an album view.

    Keys are output-relative paths. Outputs that do not exist are left out.
    """
    tracked = TrackedFiles()
    for paths, is_audio, target in (
        (view.audio_files, True, tracked.audio_files),
        (view.data_files, False, tracked.data_files),
    ):
        for path in sorted(paths):
            output_path = derived_output_path(path, is_audio, output_extension)
            absolute_path = from_relative_posix(output_album_dir, output_path)
            if absolute_path.is_file():
                target[output_path] = read_file_record(absolute_path, output_path)
    return AlbumState(tracked_files=tracked)


def load_prior_album_state(path: Path) -> Optional[AlbumState]:
    """
    Loads an album's last committed state, treating an unusable file as absent.

    Returns:
        The prior `AlbumState`, or None if there is none or it could not be read.
    """
    try:
        return load_album_state(path)
    except SerializationException as e:
        logger.warning(f"Ignoring state file {path}, treating it as absent: {e}")
        return None


def _changed_paths(
    current: Dict[str, FileRecord],
    prior: Dict[str, FileRecord],
    is_audio: bool,
    output_album_dir: Optional[Path],
    output_extension: str,
) -> Set[str]:
    changed = set()
    for path, record in current.items():
        prior_record = prior.get(path)
        if prior_record is None or prior_record != record:
            changed.add(path)
        elif output_album_dir is not None:
            # Unchanged in the source, but the derived file is gone from the output.
            output_path = derived_output_path(path, is_audio, output_extension)
            if not from_relative_posix(output_album_dir, output_path).is_file():
                logger.debug(f"Output of unchanged file {path} is missing, queueing it again")
                changed.add(path)
    return changed


def expected_outputs(current: AlbumState, output_extension: str) -> Set[str]:
    """The output-relative paths the album's current files produce."""
    outputs = {derived_output_path(path, True, output_extension) for path in current.audio_files}
    outputs |= set(current.data_files)
    return outputs


def find_stale_outputs(
    output_album_dir: Path,
    transcode_state: Optional[AlbumState],
    live_outputs: Set[str],
) -> Set[str]:
    """
    Finds outputs a previous run produced that no current file produces any more.

    Only files listed in the saved transcode-state are considered, so files put
    into the output album by hand are never touched.

    Args:
        output_album_dir: The transcoded album directory.
        transcode_state: The album's last committed transcode-state, or None.
        live_outputs: Outputs the album's current files produce.

    Returns:
        Output-relative paths of stale files that still exist.
    """
    if transcode_state is None:
        return set()

    stale = set()
    for path in sorted(set(transcode_state.audio_files) | set(transcode_state.data_files)):
        if path in live_outputs:
            continue
        if from_relative_posix(output_album_dir, path).is_file():
            logger.debug(f"Output {path} is no longer produced by any source file")
            stale.add(path)
    return stale


def diff_album(
    current: AlbumState,
    prior_state: Optional[AlbumState],
    album_key: AlbumKey,
    output_album_dir: Optional[Path] = None,
    output_extension: str = DEFAULT_AUDIO_OUTPUT_EXTENSION,
    transcode_state: Optional[AlbumState] = None,
) -> ChangeSet:
    """
    Computes the change set of one album.

    Args:
        current: The album's tracked files as they are now (see `snapshot_album`).
        prior_state: The last committed source state, or None if never processed.
        album_key: Identifies the album in the change set.
        output_album_dir: If given, unchanged files whose output is missing from
                          this directory are queued again.
        output_extension: Extension of transcoded audio files.
        transcode_state: The last committed transcode-state of `output_album_dir`.
                         Stale outputs it lists are deleted.

    Returns:
        The album's `ChangeSet`. It is empty when nothing needs to be done.
    """
    prior = prior_state if prior_state is not None else AlbumState()

    change_set = ChangeSet(album=album_key)
    change_set.audio_to_transcode = _changed_paths(
        current.audio_files, prior.audio_files, True, output_album_dir, output_extension
    )
    change_set.data_to_copy = _changed_paths(
        current.data_files, prior.data_files, False, output_album_dir, output_extension
    )

    # Outputs that current files still produce are never deleted, even if the
    # source path that once produced them is gone (e.g. "a.flac" -> "a.m4a").
    live_outputs = expected_outputs(current, output_extension)

    for prior_paths, current_paths, is_audio in (
        (prior.audio_files, current.audio_files, True),
        (prior.data_files, current.data_files, False),
    ):
        for path in prior_paths:
            if path in current_paths:
                continue
            output_path = derived_output_path(path, is_audio, output_extension)
            if output_path not in live_outputs:
                change_set.files_to_delete_in_output.add(output_path)

    if output_album_dir is not None:
        change_set.files_to_delete_in_output |= find_stale_outputs(output_album_dir, transcode_state, live_outputs)

    if not change_set.is_empty():
        logger.debug(f"[{album_key}] {change_set.summary()}")
    return change_set


def detect_removals(
    saved_library_state: Optional[LibraryState],
    fresh_library_state: LibraryState,
    library_name: str,
) -> List[ChangeSet]:
    """
    Finds artists and albums that existed on the last completed pass but are gone now.

    An artist missing entirely yields a single artist-removed change set (its
    albums are not listed separately). For artists that still exist, each
    missing album yields an album-removed change set.

    Args:
        saved_library_state: The library state from the last completed pass, or
                             None on a first run.
        fresh_library_state: What discovery found in this run.
        library_name: Library name for the change sets' album keys.

    Returns:
        The removal change sets, sorted by artist and album.
    """
    if saved_library_state is None:
        return []

    removals: List[ChangeSet] = []
    for artist in sorted(saved_library_state.tracked_artists):
        if artist not in fresh_library_state.tracked_artists:
            removals.append(ChangeSet(album=AlbumKey(library_name, artist), artist_removed=True))
            continue
        fresh_albums = fresh_library_state.albums_of(artist)
        for album in sorted(saved_library_state.albums_of(artist) - fresh_albums):
            removals.append(ChangeSet(album=AlbumKey(library_name, artist, album), album_removed=True))

    for removal in removals:
        logger.info(f"[{removal.album}] {removal.summary()}")
    return removals
