"""
Services Package for transcode-mirror.

This package holds the components that do the actual work of a run. Each module
covers one concern and is used by the pipeline package, which wires them together.

Modules:
    - album_view.py: Discovers artists and albums in a source library and builds
      the view of tracked files of one album.
    - state_store.py: Loads and atomically saves album and library state files.
    - change_detection.py: Compares an album's current files with its last
      committed state and produces a ChangeSet; detects removed albums/artists.
    - transcoder.py: Runs the external transcoding tool (ffmpeg) with
      cancellation and progress reporting.
    - progress.py: The bounded progress channel and its display consumers.
    - logging_service.py: Persistent error log and YAML run log.
"""
