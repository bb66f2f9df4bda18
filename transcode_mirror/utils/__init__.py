"""
Utilities Package for transcode-mirror.

Small, reusable helpers that are not specific to any one part of the pipeline.

Modules:
    - fs_utils.py: Reads size and timestamps of files (the filesystem metadata
      reader) and converts between absolute and album-relative paths.
    - format_utils.py: Formats durations, file sizes and extensions for logs
      and summaries.
"""
