"""
Loads the user's YAML settings file into typed settings objects.

The settings file describes the source libraries, where the transcoded library
lives, how ffmpeg is invoked, and how the scheduler behaves. A minimal file only
needs the output path and one library; everything else falls back to the
defaults in `config.common` and `config.audio`.

Example `config.yaml`:

    paths:
      base_library_path: /music
      output_library_path: "{LIBRARY_BASE}/Aggregated"
    transcode:
      workers: 4
      max_retries: 2
      retry_delay_seconds: 2.0
    libraries:
      lossless:
        name: Lossless
        path: "{LIBRARY_BASE}/Lossless"
        transcoding:
          audio_file_extensions: [flac]
          other_file_extensions: [jpg, png]
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import yaml
from loguru import logger

from ..domain.exceptions import ConfigurationException
from ..domain.jobs import RetryPolicy
from ..utils.format_utils import normalize_extensions
from .audio import (
    DEFAULT_AUDIO_EXTENSIONS,
    DEFAULT_AUDIO_OUTPUT_EXTENSION,
    DEFAULT_AUDIO_TRANSCODING_ARGS,
    DEFAULT_DATA_EXTENSIONS,
    DEFAULT_FFMPEG_BINARY,
    DEFAULT_FFPROBE_BINARY,
    INPUT_FILE_PLACEHOLDER,
    OUTPUT_FILE_PLACEHOLDER,
)
from .common import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PROGRESS_BUFFER_SIZE,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_WORKERS,
    LIBRARY_BASE_PLACEHOLDER,
)


@dataclass(frozen=True)
class FfmpegConfig:
    binary: str = DEFAULT_FFMPEG_BINARY
    ffprobe_binary: str = DEFAULT_FFPROBE_BINARY
    audio_transcoding_args: Tuple[str, ...] = DEFAULT_AUDIO_TRANSCODING_ARGS
    audio_transcoding_output_extension: str = DEFAULT_AUDIO_OUTPUT_EXTENSION
    report_progress: bool = True


@dataclass(frozen=True)
class TranscodeConfig:
    workers: int = DEFAULT_WORKERS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    progress_buffer_size: int = DEFAULT_PROGRESS_BUFFER_SIZE

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_retries=self.max_retries, retry_delay=self.retry_delay_seconds)


@dataclass(frozen=True)
class LibraryConfig:
    """
    One source library.

    Attributes:
        key: The key of the library in the settings file.
        name: Display name (defaults to the key).
        path: Absolute path of the library root.
        audio_extensions: Extensions transcoded as audio.
        data_extensions: Extensions copied as data.
        ignored_directories: Directory names in the library root that are not artists.
    """

    key: str
    name: str
    path: Path
    audio_extensions: FrozenSet[str] = field(default_factory=lambda: normalize_extensions(DEFAULT_AUDIO_EXTENSIONS))
    data_extensions: FrozenSet[str] = field(default_factory=lambda: normalize_extensions(DEFAULT_DATA_EXTENSIONS))
    ignored_directories: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Settings:
    output_library_path: Path
    libraries: Tuple[LibraryConfig, ...]
    ffmpeg: FfmpegConfig = FfmpegConfig()
    transcode: TranscodeConfig = TranscodeConfig()
    source_path: Optional[Path] = None

    def library(self, name_or_key: str) -> LibraryConfig:
        for library in self.libraries:
            if name_or_key in (library.key, library.name):
                return library
        raise ConfigurationException(f"No library named {name_or_key!r} is configured.")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationException(f"'{key}' must be a mapping.")
    return value


def _string_list(value: Any, what: str) -> List[str]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigurationException(f"'{what}' must be a list of strings.")
    return list(value)


def _positive_int(value: Any, what: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationException(f"'{what}' must be an integer, got {value!r}.")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationException(f"'{what}' is out of range: {value}.")
    return value


def _resolve_path(raw_path: Any, base_library_path: Optional[str], what: str, relative_to: Path) -> Path:
    if not isinstance(raw_path, str) or not raw_path:
        raise ConfigurationException(f"'{what}' must be a non-empty path string.")
    if LIBRARY_BASE_PLACEHOLDER in raw_path:
        if base_library_path is None:
            raise ConfigurationException(
                f"'{what}' uses {LIBRARY_BASE_PLACEHOLDER} but paths.base_library_path is not set."
            )
        raw_path = raw_path.replace(LIBRARY_BASE_PLACEHOLDER, base_library_path)
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = relative_to / path
    return path.resolve()


def _parse_ffmpeg(tools_section: Dict[str, Any]) -> FfmpegConfig:
    ffmpeg_section = _section(tools_section, "ffmpeg")
    defaults = FfmpegConfig()

    args = ffmpeg_section.get("audio_transcoding_args", defaults.audio_transcoding_args)
    args = tuple(_string_list(args, "tools.ffmpeg.audio_transcoding_args"))
    if not any(INPUT_FILE_PLACEHOLDER in a for a in args) or not any(OUTPUT_FILE_PLACEHOLDER in a for a in args):
        raise ConfigurationException(
            f"tools.ffmpeg.audio_transcoding_args must contain both {INPUT_FILE_PLACEHOLDER} "
            f"and {OUTPUT_FILE_PLACEHOLDER}."
        )

    output_extension = ffmpeg_section.get(
        "audio_transcoding_output_extension", defaults.audio_transcoding_output_extension
    )
    if not isinstance(output_extension, str) or not output_extension.strip("."):
        raise ConfigurationException("tools.ffmpeg.audio_transcoding_output_extension must be a non-empty string.")

    report_progress = ffmpeg_section.get("report_progress", defaults.report_progress)
    if not isinstance(report_progress, bool):
        raise ConfigurationException("tools.ffmpeg.report_progress must be true or false.")

    return FfmpegConfig(
        binary=str(ffmpeg_section.get("binary", defaults.binary)),
        ffprobe_binary=str(ffmpeg_section.get("ffprobe_binary", defaults.ffprobe_binary)),
        audio_transcoding_args=args,
        audio_transcoding_output_extension=output_extension.lower().lstrip("."),
        report_progress=report_progress,
    )


def _parse_transcode(transcode_section: Dict[str, Any]) -> TranscodeConfig:
    defaults = TranscodeConfig()
    retry_delay = transcode_section.get("retry_delay_seconds", defaults.retry_delay_seconds)
    if isinstance(retry_delay, bool) or not isinstance(retry_delay, (int, float)) or retry_delay < 0:
        raise ConfigurationException(f"'transcode.retry_delay_seconds' is invalid: {retry_delay!r}.")

    return TranscodeConfig(
        workers=_positive_int(transcode_section.get("workers", defaults.workers), "transcode.workers"),
        max_retries=_positive_int(
            transcode_section.get("max_retries", defaults.max_retries), "transcode.max_retries", allow_zero=True
        ),
        retry_delay_seconds=float(retry_delay),
        progress_buffer_size=_positive_int(
            transcode_section.get("progress_buffer_size", defaults.progress_buffer_size),
            "transcode.progress_buffer_size",
        ),
    )


def _parse_library(key: str, data: Any, base_library_path: Optional[str], relative_to: Path) -> LibraryConfig:
    if not isinstance(data, dict):
        raise ConfigurationException(f"Library '{key}' must be a mapping.")
    transcoding = _section(data, "transcoding")

    audio_extensions = normalize_extensions(
        _string_list(
            transcoding.get("audio_file_extensions", list(DEFAULT_AUDIO_EXTENSIONS)),
            f"libraries.{key}.transcoding.audio_file_extensions",
        )
    )
    data_extensions = normalize_extensions(
        _string_list(
            transcoding.get("other_file_extensions", list(DEFAULT_DATA_EXTENSIONS)),
            f"libraries.{key}.transcoding.other_file_extensions",
        )
    )
    overlap = audio_extensions & data_extensions
    if overlap:
        raise ConfigurationException(
            f"Library '{key}' lists {sorted(overlap)} as both audio and data extensions."
        )

    ignored = data.get("ignored_directories_in_base_directory") or []
    ignored = frozenset(_string_list(ignored, f"libraries.{key}.ignored_directories_in_base_directory"))

    return LibraryConfig(
        key=key,
        name=str(data.get("name") or key),
        path=_resolve_path(data.get("path"), base_library_path, f"libraries.{key}.path", relative_to),
        audio_extensions=audio_extensions,
        data_extensions=data_extensions,
        ignored_directories=ignored,
    )


def parse_settings(data: Any, relative_to: Path = Path(".")) -> Settings:
    """
    Builds `Settings` from an already-parsed YAML document.

    Args:
        data: The document (a mapping).
        relative_to: Directory that relative paths in the document are resolved against
                     (normally the directory containing the settings file).

    Raises:
        ConfigurationException: A value is missing or invalid.
    """
    if not isinstance(data, dict):
        raise ConfigurationException("The settings document must be a mapping.")

    paths = _section(data, "paths")
    base_library_path = paths.get("base_library_path")
    if base_library_path is not None and not isinstance(base_library_path, str):
        raise ConfigurationException("paths.base_library_path must be a string.")

    output_library_path = _resolve_path(
        paths.get("output_library_path"), base_library_path, "paths.output_library_path", relative_to
    )

    raw_libraries = _section(data, "libraries")
    if not raw_libraries:
        raise ConfigurationException("At least one library must be configured under 'libraries'.")
    libraries = tuple(
        _parse_library(str(key), value, base_library_path, relative_to) for key, value in raw_libraries.items()
    )

    for library in libraries:
        if library.path == output_library_path or output_library_path in library.path.parents:
            raise ConfigurationException(
                f"Library '{library.key}' ({library.path}) is inside the output library {output_library_path}."
            )
        if library.path in output_library_path.parents:
            raise ConfigurationException(
                f"The output library {output_library_path} is inside library '{library.key}' ({library.path})."
            )

    return Settings(
        output_library_path=output_library_path,
        libraries=libraries,
        ffmpeg=_parse_ffmpeg(_section(data, "tools")),
        transcode=_parse_transcode(_section(data, "transcode")),
    )


def load_settings(config_path: Path) -> Settings:
    """
    Reads and validates the YAML settings file.

    Args:
        config_path: Path to the settings file.

    Returns:
        The validated `Settings`.

    Raises:
        ConfigurationException: The file is missing, unreadable, not valid YAML,
                                or contains invalid values.
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise ConfigurationException(f"Settings file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationException(f"Could not parse settings file {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationException(f"Could not read settings file {config_path}: {e}") from e

    settings = parse_settings(data, relative_to=config_path.resolve().parent)
    logger.debug(
        f"Loaded settings from {config_path}: {len(settings.libraries)} librar"
        f"{'y' if len(settings.libraries) == 1 else 'ies'}, output at {settings.output_library_path}"
    )
    return Settings(
        output_library_path=settings.output_library_path,
        libraries=settings.libraries,
        ffmpeg=settings.ffmpeg,
        transcode=settings.transcode,
        source_path=config_path.resolve(),
    )
