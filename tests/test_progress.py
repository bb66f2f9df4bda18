"""
Tests for the progress channel and its consumers.
"""

import io
import threading

import pytest
from rich.console import Console

from conftest import RecordingConsumer
from transcode_mirror.domain.events import (
    AlbumCommitted,
    JobCancelled,
    JobFailed,
    JobProgress,
    JobStarted,
    JobSucceeded,
    LogLine,
    is_terminal,
)
from transcode_mirror.domain.exceptions import ConfigurationException
from transcode_mirror.domain.jobs import JobKind
from transcode_mirror.domain.records import AlbumKey
from transcode_mirror.services.progress import (
    DashboardConsumer,
    LogConsumer,
    ProgressChannel,
    create_consumer,
)

KEY = AlbumKey("Lossless", "Artist", "Album")


@pytest.mark.unit
class TestProgressChannel:
    """Ordering, backpressure and the no-drop rule for terminal events."""

    def test_events_arrive_in_order(self):
        consumer = RecordingConsumer()
        events = [JobStarted(1, KEY, JobKind.TRANSCODE), JobProgress(1, 0.5), JobSucceeded(1), AlbumCommitted(KEY)]

        with ProgressChannel(consumer, buffer_size=2) as channel:
            for event in events:
                assert channel.emit(event)

        assert consumer.events == events
        assert consumer.closed

    def test_slow_consumer_applies_backpressure_without_loss(self):
        consumer = RecordingConsumer(handle_delay=0.01)
        events = [JobProgress(1, i / 20) for i in range(20)]

        with ProgressChannel(consumer, buffer_size=1) as channel:
            for event in events:
                channel.emit(event)

        assert consumer.events == events
        assert channel.dropped_events == 0

    def test_non_terminal_events_may_be_dropped_after_cancellation_only(self):
        gate = threading.Event()
        consumer = RecordingConsumer(gate=gate)
        cancel_event = threading.Event()
        channel = ProgressChannel(consumer, buffer_size=1)
        channel.start()

        channel.emit(JobStarted(1, KEY, JobKind.COPY), cancel_event)  # taken by the consumer, which blocks
        channel.emit(JobProgress(1, 0.1), cancel_event)  # fills the buffer
        cancel_event.set()

        assert channel.emit(JobProgress(1, 0.2), cancel_event) is False

        delivered = []
        emitter = threading.Thread(target=lambda: delivered.append(channel.emit(JobCancelled(1), cancel_event)))
        emitter.start()
        emitter.join(timeout=0.3)
        assert emitter.is_alive()  # terminal events wait instead of being dropped

        gate.set()
        emitter.join(timeout=5)
        channel.close()

        assert delivered == [True]
        assert channel.dropped_events == 1
        assert consumer.events[-1] == JobCancelled(1)
        assert JobProgress(1, 0.2) not in consumer.events

    def test_is_terminal(self):
        assert is_terminal(JobSucceeded(1))
        assert is_terminal(JobFailed(1, 1, False))
        assert is_terminal(JobCancelled(1))
        assert is_terminal(AlbumCommitted(KEY))
        assert not is_terminal(JobProgress(1, 0.3))
        assert not is_terminal(LogLine("INFO", "hello"))

    def test_invalid_buffer_size(self):
        with pytest.raises(ConfigurationException):
            ProgressChannel(RecordingConsumer(), buffer_size=0)


@pytest.mark.unit
class TestConsumers:
    """The two display variants."""

    def test_create_consumer(self):
        assert isinstance(create_consumer("bare"), LogConsumer)
        assert isinstance(create_consumer("fancy"), DashboardConsumer)
        with pytest.raises(ConfigurationException):
            create_consumer("json")

    def test_log_consumer_counts_finished_jobs(self):
        consumer = LogConsumer()
        consumer.begin(3)
        consumer.handle(JobStarted(1, KEY, JobKind.TRANSCODE, "transcode a.flac"))
        consumer.handle(JobSucceeded(1))
        consumer.handle(JobStarted(2, KEY, JobKind.TRANSCODE))
        consumer.handle(JobFailed(2, 1, True, "boom"))
        consumer.handle(JobFailed(2, 2, False, "boom"))
        consumer.handle(JobCancelled(3))
        consumer.handle(LogLine("WARNING", "something"))
        consumer.close()

        assert consumer.finished_jobs == 3

    def test_dashboard_consumer_tracks_jobs(self):
        consumer = DashboardConsumer(console=Console(file=io.StringIO(), force_terminal=False))
        consumer.begin(2)
        consumer.handle(JobStarted(1, KEY, JobKind.TRANSCODE, "transcode a.flac"))
        consumer.handle(JobProgress(1, 0.5))
        assert 1 in consumer.job_tasks
        consumer.handle(JobSucceeded(1))
        consumer.handle(JobStarted(2, KEY, JobKind.COPY, "copy cover.jpg"))
        consumer.handle(JobFailed(2, 1, False, "disk full"))
        consumer.handle(AlbumCommitted(KEY))
        consumer.close()

        assert consumer.job_tasks == {}
        assert consumer.error_list == ["copy cover.jpg: disk full"]
        assert consumer.overall_progress.tasks[0].completed == 2
