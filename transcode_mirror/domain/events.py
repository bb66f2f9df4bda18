"""
The progress event vocabulary.

Workers and the scheduler describe everything that happens during a run as an
ordered stream of these events. Whatever displays progress (a live dashboard, a
plain log) only ever sees events, never the scheduler itself.
"""

from dataclasses import dataclass
from typing import Optional, Union

from .jobs import JobKind
from .records import AlbumKey


@dataclass(frozen=True)
class JobStarted:
    job_id: int
    album: AlbumKey
    kind: JobKind
    description: str = ""


@dataclass(frozen=True)
class JobProgress:
    job_id: int
    fraction: float


@dataclass(frozen=True)
class JobSucceeded:
    job_id: int


@dataclass(frozen=True)
class JobFailed:
    job_id: int
    attempt: int
    will_retry: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class JobCancelled:
    job_id: int


@dataclass(frozen=True)
class AlbumCommitted:
    album: AlbumKey


@dataclass(frozen=True)
class LogLine:
    level: str
    text: str


ProgressEvent = Union[
    JobStarted, JobProgress, JobSucceeded, JobFailed, JobCancelled, AlbumCommitted, LogLine
]

# Events that report the end of something. These are never dropped by the
# progress channel, whatever happens to the run.
TERMINAL_EVENT_TYPES = (JobSucceeded, JobFailed, JobCancelled, AlbumCommitted)


def is_terminal(event: ProgressEvent) -> bool:
    return isinstance(event, TERMINAL_EVENT_TYPES)
