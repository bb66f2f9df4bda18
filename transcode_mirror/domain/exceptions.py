"""
Defines custom exception types for transcode-mirror.

These exceptions let every layer say precisely what went wrong, and let the
scheduler decide what to do about it: an I/O or tool failure is retried, a
corrupt state file degrades to "never processed", a layout violation skips one
album, a state store failure aborts the run, and a cancellation is not a failure
at all.

All custom exceptions inherit from the base `TranscodeMirrorException`.
"""


class TranscodeMirrorException(Exception):
    """Base class for all custom exceptions in transcode-mirror."""

    pass


class ConfigurationException(TranscodeMirrorException):
    """
    Raised when the settings file or an album override file is missing a required
    value, has a value of the wrong type, or cannot be parsed at all.
    """

    pass


# --- Filesystem / Library Exceptions ---
class LibraryIOException(TranscodeMirrorException):
    """
    Raised when a path cannot be read or written (missing directory, permission
    problem, disk full).

    Inside a job this is a retryable failure.
    """

    pass


class StructureException(TranscodeMirrorException):
    """
    Raised when an entry violates the fixed library -> artist -> album layout,
    for example an audio file placed directly in the library root.

    Fatal for the affected album or artist only; sibling albums are processed.
    """

    pass


# --- State Exceptions ---
class SerializationException(TranscodeMirrorException):
    """
    Raised when a persisted state file cannot be understood (torn write, hand
    edits, wrong structure).

    Never fatal: the engine treats the album or library as never processed.
    """

    pass


class SchemaVersionMismatchException(SerializationException):
    """
    Raised when a state file was written with a different (usually newer)
    schema version. Misreading such a file would be worse than ignoring it.
    """

    def __init__(self, found_version, expected_version: int):
        super().__init__(
            f"State schema version mismatch: found {found_version!r}, expected {expected_version}."
        )
        self.found_version = found_version
        self.expected_version = expected_version


class StateStoreException(TranscodeMirrorException):
    """
    Raised when a state file cannot be written. Losing track of what was
    committed would make later runs unreliable, so this aborts the whole run.
    """

    pass


# --- Job Exceptions ---
class ToolExecutionException(TranscodeMirrorException):
    """
    Raised when the external transcoding tool cannot be started or exits with a
    non-zero status. Retried according to the retry policy.
    """

    def __init__(self, message: str, exit_status: int | None = None, stderr_tail: str = ""):
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr_tail = stderr_tail


class CancelledException(TranscodeMirrorException):
    """
    Raised inside a job when the run's cancellation flag is observed.

    This is a control flow mechanism rather than an error: the job ends with the
    "cancelled" outcome and is neither retried nor counted as failed.
    """

    pass
