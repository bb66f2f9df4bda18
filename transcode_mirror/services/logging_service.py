"""
This module provides the persistent logs written into the transcoded library.

Two logs live in `<output library>/.transcode-mirror/`:
    - `error.txt` (ErrorLog): a human-readable, append-only record of every job
      that ended in failure, with the tool's stderr where there was one.
    - `runs.yaml` (RunLog): a machine-readable YAML list with one summary per run
      (counts, failed paths, uncommitted albums). Only the most recent runs are kept.

Both complement the console output: the console shows what is happening now,
these files show what went wrong last time so it can be looked at or retried.
"""

from pathlib import Path
from typing import Dict, List, Union

import yaml
from loguru import logger

from ..config.common import ERROR_LOG_FILE_NAME, RUN_LOG_DIR_NAME, RUN_LOG_FILE_NAME, RUN_LOG_MAX_ENTRIES


class Log:
    """
    Base class for the log files. Resolves and creates the log directory.
    """

    # Separator between entries in text logs.
    linesep_marker: str = "=" * 50

    def __init__(self, log_dir: Path):
        self.log_file_path: Path  # Set by the subclass.
        self.log_dir: Path = log_dir.resolve()
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_output_library(cls, output_library_path: Path) -> "Log":
        return cls(output_library_path / RUN_LOG_DIR_NAME)

    def write(self, log_content: Union[dict, list, str]):
        raise NotImplementedError("Subclasses must implement the write() method.")


class ErrorLog(Log):
    """
    Appends error reports to a plain text file.
    """

    def __init__(self, error_log_dir: Path, filename: str = ERROR_LOG_FILE_NAME):
        super().__init__(error_log_dir)
        self.log_file_path = self.log_dir / filename

    def write(self, *error_messages: str):
        """
        Appends one error entry, each message on its own line, followed by a separator.

        Args:
            *error_messages: The lines of the entry.
        """
        if not error_messages:
            return

        content_to_write = "\n".join(error_messages) + "\n" + self.linesep_marker + "\n"
        try:
            with self.log_file_path.open("a", encoding="utf-8") as f:
                f.write(content_to_write)
        except OSError as e:
            # Keep the messages in the console output if the file cannot be written.
            logger.error(f"Failed to write to error log {self.log_file_path}: {e}")
            for msg in error_messages:
                logger.error(f"  - {msg}")


class RunLog(Log):
    """
    Keeps a YAML list of run summaries, newest last.

    Each entry is a dictionary; an `index` is assigned on write. When the list grows
    beyond `max_entries`, the oldest entries are dropped.
    """

    def __init__(self, run_log_dir: Path, filename: str = RUN_LOG_FILE_NAME, max_entries: int = RUN_LOG_MAX_ENTRIES):
        super().__init__(run_log_dir)
        self.log_file_path = self.log_dir / filename
        self.max_entries = max_entries

    def read(self) -> List[Dict]:
        """Returns the logged entries, or an empty list if the file is missing or unusable."""
        if not self.log_file_path.is_file():
            return []
        try:
            with self.log_file_path.open("r", encoding="utf-8") as f:
                loaded_entries = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            logger.error(f"Error reading run log {self.log_file_path}: {e}. Starting a new log.")
            return []

        if loaded_entries is None:
            return []
        if not isinstance(loaded_entries, list):
            logger.warning(f"Run log {self.log_file_path} contained unexpected data. Starting a new log.")
            return []
        return [entry for entry in loaded_entries if isinstance(entry, dict)]

    def write(self, new_log_entry: dict):
        """
        Appends a run summary and rewrites the file.

        Args:
            new_log_entry: The run summary.
        """
        if not isinstance(new_log_entry, dict):
            logger.error("RunLog.write expects a dictionary as a log entry.")
            return

        log_entries = self.read()
        current_max_index = max((entry.get("index", 0) for entry in log_entries), default=0)
        log_entries.append({"index": current_max_index + 1, **new_log_entry})
        log_entries = log_entries[-self.max_entries:]

        try:
            with self.log_file_path.open("w", encoding="utf-8") as f:
                yaml.dump(
                    log_entries,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                    indent=4,
                    width=220,
                )
        except OSError as e:
            logger.error(f"Failed to write to run log {self.log_file_path}: {e}")
