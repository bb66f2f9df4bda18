"""
This file marks the 'transcode_mirror' directory as a Python package.

transcode-mirror keeps a size-reduced copy of one or more source music libraries
(the "transcoded" or aggregated library) in sync with its sources. Each run scans
the source libraries, works out what changed since the previous run, and only
transcodes, copies or deletes the files that need it.

The package is organised in layers:

    config/     static settings and the YAML settings loader.
    domain/     data model, job and event types, and the exception hierarchy.
    utils/      small helpers (filesystem metadata, formatting).
    services/   the building blocks: album views, state store, change detection,
                the external transcoder adapter and progress reporting.
    pipeline/   the job scheduler and the scan -> diff -> schedule -> commit run.
"""

__version__ = "0.4.0"
