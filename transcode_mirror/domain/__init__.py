"""
This package contains the core domain models of transcode-mirror.

The domain layer describes the things the rest of the application talks about,
independently of how they are scanned, stored or displayed.

Modules:
    exceptions.py: The exception hierarchy. Each exception type maps to one
                   handling policy (retry, skip album, degrade, abort, cancel).
    records.py: Per-file metadata records, album and library state snapshots,
                per-album overrides, album keys and change sets.
    jobs.py: The four job kinds, jobs themselves, their results and the
             retry policy.
    events.py: The vocabulary of progress events workers and the scheduler emit.
"""
