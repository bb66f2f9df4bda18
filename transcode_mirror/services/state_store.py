"""
This module persists album and library state as YAML files.

Three kinds of state files exist:
    - `.album.source-state.yml` in each source album directory,
    - `.album.transcode-state.yml` in each transcoded album directory,
    - `.library.state.yml` in each source library root.

Every save is atomic: the document is written to a temporary file in the target
directory, flushed to disk, and then renamed over the old file. A crash at any
point leaves either the old state or the new state on disk, never a mix.

Loading is strict: anything that does not parse into the expected structure, or
carries a different `schema_version`, raises `SerializationException`. It is the
caller's job to treat such a file as absent.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import yaml
from loguru import logger

from ..config.common import (
    LIBRARY_STATE_FILE_NAME,
    SOURCE_ALBUM_STATE_FILE_NAME,
    TRANSCODED_ALBUM_STATE_FILE_NAME,
)
from ..domain.exceptions import SerializationException, StateStoreException
from ..domain.records import AlbumState, LibraryState

T = TypeVar("T")


def source_state_path(source_album_dir: Path) -> Path:
    return source_album_dir / SOURCE_ALBUM_STATE_FILE_NAME


def transcode_state_path(output_album_dir: Path) -> Path:
    return output_album_dir / TRANSCODED_ALBUM_STATE_FILE_NAME


def library_state_path(library_root: Path) -> Path:
    return library_root / LIBRARY_STATE_FILE_NAME


def _load_document(path: Path, parse: Callable[[Any], T]) -> Optional[T]:
    if not path.is_file():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SerializationException(f"State file {path} is not valid YAML: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise SerializationException(f"Could not read state file {path}: {e}") from e

    return parse(data)


def _save_document(path: Path, document: dict) -> None:
    directory = path.parent
    temp_path = None
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=directory,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = Path(f.name)
            yaml.dump(document, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
        temp_path = None
    except (OSError, yaml.YAMLError) as e:
        raise StateStoreException(f"Could not save state file {path}: {e}") from e
    finally:
        if temp_path is not None:
            try:
                temp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove temporary state file {temp_path}: {e}")

    logger.debug(f"Saved state file {path}")


def load_album_state(path: Path) -> Optional[AlbumState]:
    """
    Loads an album state file.

    Args:
        path: Path of the source-state or transcode-state file.

    Returns:
        The `AlbumState`, or None if the file does not exist.

    Raises:
        SerializationException: The file is unreadable, malformed, or has another
                                schema version (`SchemaVersionMismatchException`).
    """
    return _load_document(path, AlbumState.from_dict)


def save_album_state(path: Path, state: AlbumState) -> None:
    """
    Atomically replaces an album state file.

    Raises:
        StateStoreException: The file could not be written.
    """
    _save_document(path, state.to_dict())


def load_library_state(path: Path) -> Optional[LibraryState]:
    """Loads a library state file; see `load_album_state`."""
    return _load_document(path, LibraryState.from_dict)


def save_library_state(path: Path, state: LibraryState) -> None:
    """Atomically replaces a library state file; see `save_album_state`."""
    _save_document(path, state.to_dict())
