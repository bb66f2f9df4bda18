"""
Pipeline Package for transcode-mirror.

Modules:
    - scheduler.py: Expands change sets into jobs and runs them on a bounded
      worker pool with retries, cancellation and per-album commit barriers.
    - sync_pipeline.py: Orchestrates a run: scan, diff, schedule, commit.
"""
