"""
Configuration Package for transcode-mirror.

This package centralizes the static configuration of the application and the
loader for the user's YAML settings file. Keeping configuration apart from the
application logic makes it easy to adjust behaviour (file names, defaults,
concurrency) without touching the core code.

This package includes settings for:
- Common application settings like the logging format, state file names,
  schema versions and scheduler defaults.
- Default audio/data extension allow-lists and the default ffmpeg argument template.
- Loading and validating `config.yaml` into typed settings objects.
"""
