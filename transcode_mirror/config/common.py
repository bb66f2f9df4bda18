"""
Common configuration settings used throughout the application.

This module contains globally shared constants: the logging format, the names
of the state files that transcode-mirror writes next to the music it tracks,
their schema versions, and the defaults used by the job scheduler when the
user's configuration file does not override them.
"""
from pathlib import Path

# The settings file that is loaded when `--config` is not given.
DEFAULT_CONFIG_PATH = Path("config.yaml")

# Placeholder that may be used inside library and output paths in the settings
# file. It is replaced with `paths.base_library_path` on load.
LIBRARY_BASE_PLACEHOLDER = "{LIBRARY_BASE}"


# --- Logging Configuration ---

# The format string for the Loguru logger. It defines the structure and appearance
# of log messages, including timestamp, level, module name, and the message itself.
LOGGER_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "{thread.name} - <level>{message}</level>"
)


# --- State Files ---
# transcode-mirror tracks what it has already processed through small YAML files.
# All of them are dotfiles so they stay out of the way in music players.

# Saved in each source album directory: metadata of the tracked source files as of
# the last fully successful processing of that album.
SOURCE_ALBUM_STATE_FILE_NAME = ".album.source-state.yml"

# Saved in each transcoded album directory: metadata of the files transcode-mirror
# produced for that album.
TRANSCODED_ALBUM_STATE_FILE_NAME = ".album.transcode-state.yml"

# Saved in each source library root: the artists and albums that existed on the
# last completed pass. Needed to notice albums whose directories are gone.
LIBRARY_STATE_FILE_NAME = ".library.state.yml"

# Optional, user-written per-album override file (e.g. scan depth).
ALBUM_OVERRIDE_FILE_NAME = ".album.override.yml"

# Files transcode-mirror owns; they are never tracked as album content.
INTERNAL_FILE_NAMES = frozenset(
    {
        SOURCE_ALBUM_STATE_FILE_NAME,
        TRANSCODED_ALBUM_STATE_FILE_NAME,
        LIBRARY_STATE_FILE_NAME,
        ALBUM_OVERRIDE_FILE_NAME,
    }
)

# Bump these whenever the on-disk layout of a state file changes. Files with any
# other version are treated as if they did not exist.
ALBUM_STATE_SCHEMA_VERSION = 2
LIBRARY_STATE_SCHEMA_VERSION = 2

# Timestamps are compared after truncation to this many decimal digits, which
# absorbs sub-100ms jitter between filesystems and platforms.
TIMESTAMP_PRECISION_DIGITS = 1


# --- Run Logs ---
# Directory (inside the transcoded library) holding the error log and run log.
RUN_LOG_DIR_NAME = ".transcode-mirror"
ERROR_LOG_FILE_NAME = "error.txt"
RUN_LOG_FILE_NAME = "runs.yaml"
# How many run summaries are kept in the run log.
RUN_LOG_MAX_ENTRIES = 50


# --- Scheduler Defaults ---

# Number of concurrent workers (bounds both ffmpeg processes and file copies).
DEFAULT_WORKERS = 4

# How many additional attempts a failed job gets before it is terminal-failed.
DEFAULT_MAX_RETRIES = 2

# Seconds to wait before each retry attempt.
DEFAULT_RETRY_DELAY_SECONDS = 2.0

# Maximum number of progress events buffered between the workers and the
# progress consumer before emitters start waiting.
DEFAULT_PROGRESS_BUFFER_SIZE = 256

# How often blocking waits re-check the cancellation flag, in seconds.
CANCELLATION_POLL_INTERVAL = 0.05

# Chunk size used when copying data files (cancellation is checked between chunks).
COPY_CHUNK_SIZE = 1024 * 1024

# Number of stderr lines of a failed tool run that are kept for reporting.
STDERR_TAIL_LINES = 20


# --- Job Status Constants ---
# Terminal outcomes of a job as reported in run summaries and logs.

JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED = "failed"
JOB_STATUS_CANCELLED = "cancelled"


# --- Exit Codes ---
EXIT_OK = 0
EXIT_JOBS_FAILED = 1
EXIT_FATAL = 2
EXIT_CANCELLED = 130
