"""
This module carries progress events from the workers to a display.

Workers never talk to the display directly. They `emit` events into a
`ProgressChannel`, a bounded queue drained by a single consumer thread, which
hands each event, in order, to a `ProgressConsumer`.

The buffer is bounded so that a slow display slows the workers down instead of
growing memory without limit. While the buffer is full, emitters wait. Once the
run is cancelled, waiting emitters may discard non-terminal events (progress
fractions, start notices, log lines) so shutdown is not held up. Events that
report how a job or album ended are always delivered.

Two consumers are available:
    - "bare": `LogConsumer`, one loguru line per notable event.
    - "fancy": `DashboardConsumer`, a rich live dashboard with progress bars.
"""

import queue
import threading
from collections import deque
from typing import Dict, Optional, Protocol

from loguru import logger
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from ..config.common import CANCELLATION_POLL_INTERVAL, DEFAULT_PROGRESS_BUFFER_SIZE
from ..domain.events import (
    AlbumCommitted,
    JobCancelled,
    JobFailed,
    JobProgress,
    JobStarted,
    JobSucceeded,
    LogLine,
    ProgressEvent,
    is_terminal,
)
from ..domain.exceptions import ConfigurationException

CONSUMER_KINDS = ("bare", "fancy")


class ProgressConsumer(Protocol):
    def begin(self, total_jobs: int) -> None:
        ...

    def handle(self, event: ProgressEvent) -> None:
        ...

    def close(self) -> None:
        ...


class ProgressChannel:
    """
    A bounded, ordered event channel with one consumer thread.

    Usage:
        with ProgressChannel(consumer) as channel:
            channel.emit(JobStarted(...))
    """

    _STOP = object()

    def __init__(self, consumer: ProgressConsumer, buffer_size: int = DEFAULT_PROGRESS_BUFFER_SIZE):
        if buffer_size < 1:
            raise ConfigurationException(f"Progress buffer size must be positive, got {buffer_size}.")
        self.consumer = consumer
        self._queue: "queue.Queue" = queue.Queue(maxsize=buffer_size)
        self._thread: Optional[threading.Thread] = None
        self._dropped_lock = threading.Lock()
        self.dropped_events = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._drain, name="progress", daemon=True)
        self._thread.start()

    def emit(self, event: ProgressEvent, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Queues an event for the consumer, waiting while the buffer is full.

        Args:
            event: The event to deliver.
            cancel_event: The run's cancellation flag. Once it is set, a
                          non-terminal event is discarded instead of waiting.

        Returns:
            True if the event was queued, False if it was discarded.
        """
        terminal = is_terminal(event)
        while True:
            try:
                self._queue.put(event, timeout=CANCELLATION_POLL_INTERVAL)
                return True
            except queue.Full:
                if not terminal and cancel_event is not None and cancel_event.is_set():
                    with self._dropped_lock:
                        self.dropped_events += 1
                    return False

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            if event is self._STOP:
                return
            try:
                self.consumer.handle(event)
            except Exception:
                # A broken display must not stop event delivery.
                logger.exception(f"Progress consumer failed on {event!r}")

    def close(self) -> None:
        """Delivers every queued event, stops the consumer thread and closes the consumer."""
        if self._thread is not None:
            self._queue.put(self._STOP)
            self._thread.join()
            self._thread = None
        self.consumer.close()
        if self.dropped_events:
            logger.debug(f"{self.dropped_events} progress events were discarded after cancellation")

    def __enter__(self) -> "ProgressChannel":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()


class LogConsumer:
    """Reports events as plain log lines. Progress fractions are not logged."""

    def __init__(self):
        self._descriptions: Dict[int, str] = {}
        self.total_jobs = 0
        self.finished_jobs = 0

    def begin(self, total_jobs: int) -> None:
        self.total_jobs = total_jobs
        self.finished_jobs = 0

    def _counter(self) -> str:
        if not self.total_jobs:
            return ""
        return f"[{self.finished_jobs}/{self.total_jobs}] "

    def handle(self, event: ProgressEvent) -> None:
        if isinstance(event, JobStarted):
            self._descriptions[event.job_id] = event.description or f"{event.kind.value} ({event.album})"
            logger.debug(f"Started {self._descriptions[event.job_id]}")
        elif isinstance(event, JobSucceeded):
            self.finished_jobs += 1
            logger.info(f"{self._counter()}Done: {self._descriptions.pop(event.job_id, event.job_id)}")
        elif isinstance(event, JobFailed):
            description = self._descriptions.get(event.job_id, event.job_id)
            if event.will_retry:
                logger.warning(f"Attempt {event.attempt} failed, retrying: {description}: {event.error}")
            else:
                self.finished_jobs += 1
                self._descriptions.pop(event.job_id, None)
                logger.error(f"{self._counter()}Failed after {event.attempt} attempts: {description}: {event.error}")
        elif isinstance(event, JobCancelled):
            self.finished_jobs += 1
            logger.warning(f"{self._counter()}Cancelled: {self._descriptions.pop(event.job_id, event.job_id)}")
        elif isinstance(event, AlbumCommitted):
            logger.info(f"Committed album {event.album}")
        elif isinstance(event, LogLine):
            logger.log(event.level, event.text)

    def close(self) -> None:
        self._descriptions.clear()


class DashboardConsumer:
    """
    A live terminal dashboard: overall progress, one bar per running job, and
    panels with recent activity and errors.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self.overall_progress = Progress(
            TextColumn("[bold green]Overall"),
            BarColumn(),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TextColumn("[dim]{task.completed:.0f}/{task.total:.0f} jobs[/dim]"),
            TimeRemainingColumn(),
        )
        self.job_progress = Progress(
            TextColumn("[bold cyan]{task.description}"),
            BarColumn(),
            "[progress.percentage]{task.percentage:>3.0f}%",
            TimeElapsedColumn(),
        )
        self.overall_task: Optional[TaskID] = None
        self.job_tasks: Dict[int, TaskID] = {}
        self.job_descriptions: Dict[int, str] = {}
        self.recent_messages: deque = deque(maxlen=5)
        self.error_list = []
        self.live: Optional[Live] = None

    def _make_layout(self) -> Group:
        messages_text = "\n".join(self.recent_messages) if self.recent_messages else "[dim]No activity yet...[/dim]"
        messages_panel = Panel(
            messages_text, title="[bold]Activity[/bold]", border_style="cyan", height=7, box=box.ROUNDED
        )
        errors_text = "\n".join(self.error_list[-5:]) if self.error_list else "[dim]No errors[/dim]"
        errors_panel = Panel(
            errors_text,
            title=f"[bold red]Errors ({len(self.error_list)})[/bold red]",
            border_style="red",
            height=7,
            box=box.ROUNDED,
        )
        return Group(self.overall_progress, self.job_progress, messages_panel, errors_panel)

    def _refresh(self) -> None:
        if self.live is not None:
            self.live.update(self._make_layout())

    def begin(self, total_jobs: int) -> None:
        self.overall_task = self.overall_progress.add_task("Overall", total=max(total_jobs, 1))
        self.live = Live(self._make_layout(), console=self.console, refresh_per_second=10)
        self.live.start()

    def _finish_job(self, job_id: int) -> Optional[str]:
        task_id = self.job_tasks.pop(job_id, None)
        description = self.job_descriptions.pop(job_id, None)
        if task_id is not None:
            self.job_progress.remove_task(task_id)
        if self.overall_task is not None:
            self.overall_progress.advance(self.overall_task)
        return description

    def handle(self, event: ProgressEvent) -> None:
        if isinstance(event, JobStarted):
            label = event.description or f"{event.kind.value} ({event.album})"
            self.job_descriptions[event.job_id] = label
            self.job_tasks[event.job_id] = self.job_progress.add_task(label[-60:], total=1.0)
        elif isinstance(event, JobProgress):
            task_id = self.job_tasks.get(event.job_id)
            if task_id is not None:
                self.job_progress.update(task_id, completed=event.fraction)
        elif isinstance(event, JobSucceeded):
            description = self._finish_job(event.job_id)
            self.recent_messages.append(f"[green]Done[/green] {description or event.job_id}")
        elif isinstance(event, JobFailed):
            if event.will_retry:
                description = self.job_descriptions.get(event.job_id, event.job_id)
                self.recent_messages.append(f"[yellow]Retrying[/yellow] {description}: {event.error}")
            else:
                description = self._finish_job(event.job_id)
                self.error_list.append(f"{description or event.job_id}: {event.error}")
        elif isinstance(event, JobCancelled):
            description = self._finish_job(event.job_id)
            self.recent_messages.append(f"[yellow]Cancelled[/yellow] {description or event.job_id}")
        elif isinstance(event, AlbumCommitted):
            self.recent_messages.append(f"[bold green]Committed[/bold green] {event.album}")
        elif isinstance(event, LogLine):
            if event.level in ("ERROR", "CRITICAL"):
                self.error_list.append(event.text)
            else:
                self.recent_messages.append(event.text)
        self._refresh()

    def close(self) -> None:
        if self.live is not None:
            self._refresh()
            self.live.stop()
            self.live = None


def create_consumer(kind: str) -> ProgressConsumer:
    """
    Creates one of the available progress consumers.

    Args:
        kind: "bare" for plain log lines, "fancy" for the live dashboard.

    Raises:
        ConfigurationException: Unknown consumer kind.
    """
    if kind == "bare":
        return LogConsumer()
    if kind == "fancy":
        return DashboardConsumer()
    raise ConfigurationException(f"Unknown progress display {kind!r}, expected one of {CONSUMER_KINDS}.")
