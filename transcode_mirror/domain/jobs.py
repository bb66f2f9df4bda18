"""
Defines jobs, their outcomes, and the retry policy applied to them.

A job is the unit of work the scheduler hands to a worker: transcode one audio
file, copy one data file, delete one output file, or delete an entire output
directory tree (when an album or artist disappeared from the source).
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from ..config.common import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_SECONDS,
    JOB_STATUS_CANCELLED,
    JOB_STATUS_FAILED,
    JOB_STATUS_SUCCEEDED,
)
from .exceptions import ConfigurationException
from .records import AlbumKey


class JobKind(Enum):
    TRANSCODE = "transcode"
    COPY = "copy"
    DELETE_OUTPUT_FILE = "delete_output_file"
    DELETE_OUTPUT_TREE = "delete_output_tree"


class JobOutcome(Enum):
    SUCCEEDED = JOB_STATUS_SUCCEEDED
    FAILED = JOB_STATUS_FAILED
    CANCELLED = JOB_STATUS_CANCELLED


@dataclass(frozen=True)
class Job:
    """
    A single file operation derived from a change set.

    Attributes:
        job_id: Run-unique identifier, used in progress events.
        album: The album this job belongs to (its commit barrier).
        kind: What to do.
        output_path: Absolute path in the transcoded library (file or directory).
        source_path: Absolute path in the source library; None for deletions.
        cleanup_stop_dir: For deletions, parent directories left empty are removed
                          up to (not including) this directory.
    """

    job_id: int
    album: AlbumKey
    kind: JobKind
    output_path: Path
    source_path: Optional[Path] = None
    cleanup_stop_dir: Optional[Path] = None

    def describe(self) -> str:
        if self.source_path is not None:
            return f"{self.kind.value} {self.source_path} -> {self.output_path}"
        return f"{self.kind.value} {self.output_path}"


@dataclass(frozen=True)
class JobResult:
    """
    The terminal result of a job: how it ended, after how many attempts, and
    the last error message if it did not succeed.
    """

    job: Job
    outcome: JobOutcome
    attempts: int
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is JobOutcome.SUCCEEDED


@dataclass(frozen=True)
class RetryPolicy:
    """
    How failed jobs are retried.

    A job that fails is attempted up to `max_retries` more times; each retry is
    preceded by `retry_delay` seconds of waiting (which only blocks the worker
    running that job).
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationException(f"max_retries must not be negative, got {self.max_retries}.")
        if self.retry_delay < 0:
            raise ConfigurationException(f"retry_delay must not be negative, got {self.retry_delay}.")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1
