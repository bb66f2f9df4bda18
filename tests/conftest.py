"""
Pytest fixtures shared by the test suite.

- Source libraries are built in `tmp_path` with real files and timestamps.
- `FakeTranscoder` stands in for ffmpeg: it writes output files directly and can
  be told to fail or to block until the run is cancelled.
- `RecordingConsumer` collects progress events for assertions.
"""

import os
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add project root to path so tests can import the package and main.py
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from transcode_mirror.config.settings import Settings, parse_settings  # noqa: E402
from transcode_mirror.services.progress import ProgressChannel  # noqa: E402
from transcode_mirror.services.transcoder import TranscodeResult  # noqa: E402


def make_file(path: Path, content: bytes = b"data", mtime: Optional[float] = None) -> Path:
    """Creates a file (and its parents) with the given content and modification time."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


class FakeTranscoder:
    """
    A transcoder that never spawns a process.

    Args:
        failures: Source file name -> number of attempts that should fail.
        block_until_cancelled: Every run blocks until the cancel event is set.
        delay: Seconds each run takes.
    """

    output_extension = "mp3"

    def __init__(self, failures: Optional[Dict[str, int]] = None, block_until_cancelled: bool = False, delay: float = 0.0):
        self.failures = dict(failures or {})
        self.block_until_cancelled = block_until_cancelled
        self.delay = delay
        self.calls: List[Path] = []
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def run(self, input_path, output_path, cancel_event=None, on_progress=None, template_args=None):
        with self._lock:
            self.calls.append(input_path)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            remaining_failures = self.failures.get(input_path.name, 0)
            if remaining_failures:
                self.failures[input_path.name] = remaining_failures - 1
        self.started.set()
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(b"partial")
            if self.block_until_cancelled:
                cancel_event.wait(timeout=10)
                return TranscodeResult(exit_status=-9, stderr_tail="", duration=0.0, cancelled=True)
            if self.delay:
                time.sleep(self.delay)
            if on_progress is not None:
                on_progress(0.5)
            if remaining_failures:
                return TranscodeResult(exit_status=1, stderr_tail="simulated failure", duration=0.0)
            output_path.write_bytes(b"transcoded:" + input_path.read_bytes()[:16])
            if on_progress is not None:
                on_progress(1.0)
            return TranscodeResult(exit_status=0, stderr_tail="", duration=0.0)
        finally:
            with self._lock:
                self.active -= 1

    def call_names(self) -> List[str]:
        return sorted(path.name for path in self.calls)


class RecordingConsumer:
    """Collects every event it is handed."""

    def __init__(self, handle_delay: float = 0.0, gate: Optional[threading.Event] = None):
        self.events = []
        self.total_jobs = None
        self.closed = False
        self.handle_delay = handle_delay
        self.gate = gate

    def begin(self, total_jobs: int) -> None:
        self.total_jobs = total_jobs

    def handle(self, event) -> None:
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.handle_delay:
            time.sleep(self.handle_delay)
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def of_type(self, event_type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def recording_consumer() -> RecordingConsumer:
    return RecordingConsumer()


@pytest.fixture
def channel(recording_consumer):
    """A started progress channel feeding `recording_consumer`. Closed after the test."""
    progress_channel = ProgressChannel(recording_consumer, buffer_size=64)
    progress_channel.start()
    yield progress_channel
    progress_channel.close()


@pytest.fixture
def library_root(tmp_path) -> Path:
    root = tmp_path / "library"
    root.mkdir()
    return root


@pytest.fixture
def output_root(tmp_path) -> Path:
    return tmp_path / "output"


@pytest.fixture
def make_settings(tmp_path, library_root, output_root):
    """Returns a factory building `Settings` for the test library, with overrides."""

    def factory(**transcode_overrides) -> Settings:
        transcode = {"workers": 2, "max_retries": 1, "retry_delay_seconds": 0.0, "progress_buffer_size": 16}
        transcode.update(transcode_overrides)
        data = {
            "paths": {"output_library_path": str(output_root)},
            "transcode": transcode,
            "libraries": {
                "lossless": {
                    "name": "Lossless",
                    "path": str(library_root),
                    "ignored_directories_in_base_directory": ["_other"],
                    "transcoding": {
                        "audio_file_extensions": ["flac"],
                        "other_file_extensions": ["jpg", "png"],
                    },
                }
            },
        }
        return parse_settings(data, relative_to=tmp_path)

    return factory
