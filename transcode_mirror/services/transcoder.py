"""
This module runs the external transcoding tool.

`FfmpegTranscoder` turns one input file into one output file by running ffmpeg
with the configured argument template. While ffmpeg runs, the calling worker
polls it every `CANCELLATION_POLL_INTERVAL` seconds so a cancelled run kills the
process promptly instead of waiting for the file to finish. The tool runs in its
own session, so only this program receives a terminal Ctrl+C and decides what
to stop.

ffmpeg's progress output (`-progress pipe:1`) is parsed into completion
fractions when the input duration is known. The duration is read with
`ffmpeg.probe` from the ffmpeg-python package.

The scheduler only depends on the `Transcoder` protocol, so tests can substitute
a fake that never spawns a process.
"""

import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import ffmpeg
from loguru import logger

from ..config.audio import (
    DEFAULT_AUDIO_OUTPUT_EXTENSION,
    DEFAULT_FFPROBE_BINARY,
    INPUT_FILE_PLACEHOLDER,
    OUTPUT_FILE_PLACEHOLDER,
)
from ..config.common import CANCELLATION_POLL_INTERVAL, STDERR_TAIL_LINES
from ..domain.exceptions import ToolExecutionException

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class TranscodeResult:
    """
    The outcome of one tool invocation.

    Attributes:
        exit_status: The process exit status (meaningless if `cancelled`).
        stderr_tail: The last lines the tool wrote to stderr.
        duration: Wall-clock seconds the tool ran.
        cancelled: True if the process was killed because the run was cancelled.
    """

    exit_status: int
    stderr_tail: str
    duration: float
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.exit_status == 0


class Transcoder(Protocol):
    output_extension: str

    def run(
        self,
        input_path: Path,
        output_path: Path,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        template_args: Optional[Dict[str, str]] = None,
    ) -> TranscodeResult:
        ...


class FfmpegTranscoder:
    """
    Runs ffmpeg (or any tool with the same calling convention) for one file at a time.

    Instances hold no per-run state and are safe to share between workers.
    """

    def __init__(
        self,
        binary: str,
        args_template: Sequence[str],
        output_extension: str = DEFAULT_AUDIO_OUTPUT_EXTENSION,
        report_progress: bool = True,
        ffprobe_binary: str = DEFAULT_FFPROBE_BINARY,
    ):
        """
        Args:
            binary: The executable to run.
            args_template: Arguments, with `{INPUT_FILE}` and `{OUTPUT_FILE}`
                           placeholders substituted per job.
            output_extension: Extension of the files this tool produces.
            report_progress: Ask ffmpeg for machine-readable progress and report
                             completion fractions. Disable for tools that are not ffmpeg.
            ffprobe_binary: ffprobe executable used to read input durations.
        """
        self.binary = binary
        self.args_template = tuple(args_template)
        self.output_extension = output_extension
        self.report_progress = report_progress
        self.ffprobe_binary = ffprobe_binary

    def build_command(
        self, input_path: Path, output_path: Path, template_args: Optional[Dict[str, str]] = None
    ) -> List[str]:
        replacements = {
            INPUT_FILE_PLACEHOLDER: str(input_path),
            OUTPUT_FILE_PLACEHOLDER: str(output_path),
        }
        for key, value in (template_args or {}).items():
            replacements[f"{{{key}}}"] = str(value)

        args = []
        for arg in self.args_template:
            for placeholder, value in replacements.items():
                arg = arg.replace(placeholder, value)
            args.append(arg)

        if self.report_progress:
            return [self.binary, "-nostats", "-progress", "pipe:1", *args]
        return [self.binary, *args]

    def verify_binary(self) -> str:
        """
        Checks that the tool can be started, logging its version line.

        Returns:
            The first line of `<binary> -version`.

        Raises:
            ToolExecutionException: The tool is missing or exits with an error.
        """
        try:
            result = subprocess.run(
                [self.binary, "-version"],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as e:
            raise ToolExecutionException(f"Could not start {self.binary}: {e}") from e

        if result.returncode != 0:
            raise ToolExecutionException(
                f"{self.binary} -version exited with status {result.returncode}",
                exit_status=result.returncode,
                stderr_tail=result.stderr.strip(),
            )

        version_line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else self.binary
        logger.info(f"Using {version_line}")
        return version_line

    def _probe_duration(self, input_path: Path) -> Optional[float]:
        try:
            probe = ffmpeg.probe(str(input_path), cmd=self.ffprobe_binary)
            duration = float(probe["format"]["duration"])
        except (ffmpeg.Error, OSError, KeyError, ValueError, TypeError) as e:
            logger.debug(f"Could not read duration of {input_path}, no progress fractions: {e}")
            return None
        return duration if duration > 0 else None

    @staticmethod
    def _drain_progress(stream, duration: Optional[float], on_progress: Optional[ProgressCallback]) -> None:
        for line in stream:
            if on_progress is None or duration is None:
                continue
            key, _, value = line.strip().partition("=")
            # ffmpeg reports microseconds under both names.
            if key in ("out_time_us", "out_time_ms"):
                try:
                    seconds = int(value) / 1_000_000
                except ValueError:
                    continue
                on_progress(max(0.0, min(1.0, seconds / duration)))
            elif key == "progress" and value == "end":
                on_progress(1.0)

    @staticmethod
    def _drain_stderr(stream, tail: deque) -> None:
        for line in stream:
            line = line.rstrip()
            if line:
                tail.append(line)

    def run(
        self,
        input_path: Path,
        output_path: Path,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        template_args: Optional[Dict[str, str]] = None,
    ) -> TranscodeResult:
        """
        Transcodes `input_path` into `output_path`.

        The output's parent directories are created first. A non-zero exit status
        is returned, not raised; the caller decides whether that is a failure.

        Args:
            input_path: Absolute path of the source file.
            output_path: Absolute path of the file to produce.
            cancel_event: When set, the process is killed and the result is marked cancelled.
            on_progress: Called with completion fractions in [0, 1].
            template_args: Additional `{NAME}` placeholders to substitute.

        Returns:
            A `TranscodeResult`.

        Raises:
            ToolExecutionException: The process could not be started.
        """
        output_path.parent.mkdir(parents=True, exist_ok=True)
        command = self.build_command(input_path, output_path, template_args)
        duration = self._probe_duration(input_path) if self.report_progress and on_progress else None

        logger.debug(f"Running: {' '.join(command)}")
        started_at = time.monotonic()
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                # A Ctrl+C in the terminal must not reach the tool; cancellation kills it instead.
                start_new_session=True,
            )
        except OSError as e:
            raise ToolExecutionException(f"Could not start {self.binary}: {e}") from e

        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        readers = [
            threading.Thread(
                target=self._drain_progress, args=(process.stdout, duration, on_progress), daemon=True
            ),
            threading.Thread(target=self._drain_stderr, args=(process.stderr, stderr_tail), daemon=True),
        ]
        for reader in readers:
            reader.start()

        cancelled = False
        while True:
            try:
                exit_status = process.wait(timeout=CANCELLATION_POLL_INTERVAL)
                # The tool may have died from the same signal that cancelled the run.
                cancelled = exit_status != 0 and cancel_event is not None and cancel_event.is_set()
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    logger.debug(f"Cancelling transcode of {input_path}")
                    process.kill()
                    exit_status = process.wait()
                    cancelled = True
                    break

        for reader in readers:
            reader.join()
        process.stdout.close()
        process.stderr.close()

        return TranscodeResult(
            exit_status=exit_status,
            stderr_tail="\n".join(stderr_tail),
            duration=time.monotonic() - started_at,
            cancelled=cancelled,
        )
