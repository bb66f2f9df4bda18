"""
End-to-end tests of synchronization runs, with FakeTranscoder standing in for ffmpeg.
"""

import os
import shutil
import threading

import pytest
import yaml

from conftest import FakeTranscoder, RecordingConsumer, make_file
from transcode_mirror.config.common import EXIT_CANCELLED, EXIT_JOBS_FAILED, EXIT_OK
from transcode_mirror.domain.events import AlbumCommitted
from transcode_mirror.domain.exceptions import ConfigurationException
from transcode_mirror.domain.records import AlbumKey
from transcode_mirror.pipeline.sync_pipeline import LibrarySyncPipeline
from transcode_mirror.services.state_store import (
    library_state_path,
    load_album_state,
    load_library_state,
    source_state_path,
    transcode_state_path,
)


@pytest.fixture
def populated_library(library_root):
    """Two artists, three albums, one of them with a disc subfolder scanned through an override."""
    make_file(library_root / "Artist A" / "First" / "01.flac", b"a-first-01", mtime=1636881979.7)
    make_file(library_root / "Artist A" / "First" / "02.flac", b"a-first-02", mtime=1636881979.7)
    make_file(library_root / "Artist A" / "First" / "cover.jpg", b"cover", mtime=1636881979.7)
    make_file(library_root / "Artist A" / "First" / "notes.txt", b"ignored", mtime=1636881979.7)
    make_file(library_root / "Artist A" / "Second" / "01.flac", b"a-second-01", mtime=1636881979.7)
    make_file(library_root / "Artist B" / "Only" / "CD1" / "01.flac", b"b-only-01", mtime=1636881979.7)
    make_file(library_root / "Artist B" / "Only" / ".album.override.yml", b"scan:\n  depth: 1\n")
    make_file(library_root / "_other" / "Stuff" / "x.flac", b"not an artist", mtime=1636881979.7)
    return library_root


def _sync(settings, transcoder=None, consumer=None):
    transcoder = transcoder or FakeTranscoder()
    consumer = consumer or RecordingConsumer()
    summary = LibrarySyncPipeline(settings, transcoder, consumer).run()
    return summary, transcoder, consumer


@pytest.mark.integration
class TestFirstRun:
    """A first run against an empty output library."""

    def test_transcodes_copies_and_writes_state(self, make_settings, populated_library, output_root):
        summary, transcoder, consumer = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.call_names() == ["01.flac", "01.flac", "01.flac", "02.flac"]
        assert consumer.total_jobs == 5
        assert consumer.closed

        first = output_root / "Artist A" / "First"
        assert (first / "01.mp3").read_bytes() == b"transcoded:a-first-01"
        assert (first / "cover.jpg").read_bytes() == b"cover"
        assert not (first / "notes.txt").exists()
        assert (output_root / "Artist B" / "Only" / "CD1" / "01.mp3").exists()
        assert not (output_root / "_other").exists()

        source_state = load_album_state(source_state_path(populated_library / "Artist A" / "First"))
        assert set(source_state.audio_files) == {"01.flac", "02.flac"}
        assert set(source_state.data_files) == {"cover.jpg"}
        transcode_state = load_album_state(transcode_state_path(first))
        assert set(transcode_state.audio_files) == {"01.mp3", "02.mp3"}

        library_state = load_library_state(library_state_path(populated_library))
        assert library_state.tracked_artists == {"Artist A": {"First", "Second"}, "Artist B": {"Only"}}
        assert len(consumer.of_type(AlbumCommitted)) == 3

    def test_run_log_is_written(self, make_settings, populated_library, output_root):
        _sync(make_settings())

        entries = yaml.safe_load((output_root / ".transcode-mirror" / "runs.yaml").read_text(encoding="utf-8"))

        assert entries[-1]["index"] == 1
        assert entries[-1]["jobs"] == {"succeeded": 5, "failed": 0, "cancelled": 0}
        assert entries[-1]["libraries"] == ["Lossless"]

    def test_unknown_library_selection_is_rejected(self, make_settings):
        with pytest.raises(ConfigurationException):
            LibrarySyncPipeline(make_settings(), FakeTranscoder(), RecordingConsumer(), library_names=["Vinyl"])


@pytest.mark.integration
class TestIncrementalRuns:
    """Runs after the first one only do what changed."""

    def test_second_run_does_nothing(self, make_settings, populated_library):
        _sync(make_settings())

        summary, transcoder, consumer = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.calls == []
        assert consumer.total_jobs == 0

    def test_modified_file_is_retranscoded(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        source = populated_library / "Artist A" / "Second" / "01.flac"
        source.write_bytes(b"a-second-01-remastered")
        os.utime(source, (1700000000.0, 1700000000.0))

        summary, transcoder, _ = _sync(make_settings())

        assert [path.name for path in transcoder.calls] == ["01.flac"]
        assert transcoder.calls[0].parent.name == "Second"
        assert (output_root / "Artist A" / "Second" / "01.mp3").read_bytes() == b"transcoded:a-second-01-rema"

    def test_deleted_file_removes_its_output(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        (populated_library / "Artist A" / "First" / "02.flac").unlink()

        summary, transcoder, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.calls == []
        assert not (output_root / "Artist A" / "First" / "02.mp3").exists()
        assert (output_root / "Artist A" / "First" / "01.mp3").exists()
        source_state = load_album_state(source_state_path(populated_library / "Artist A" / "First"))
        assert set(source_state.audio_files) == {"01.flac"}

    def test_deleted_output_is_restored(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        (output_root / "Artist A" / "First" / "cover.jpg").unlink()

        summary, transcoder, _ = _sync(make_settings())

        assert transcoder.calls == []
        assert (output_root / "Artist A" / "First" / "cover.jpg").read_bytes() == b"cover"

    def test_removed_album_deletes_output_tree(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        shutil.rmtree(populated_library / "Artist A" / "Second")

        summary, _, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert not (output_root / "Artist A" / "Second").exists()
        assert (output_root / "Artist A" / "First").exists()
        library_state = load_library_state(library_state_path(populated_library))
        assert library_state.tracked_artists["Artist A"] == {"First"}

    def test_removed_artist_deletes_output_tree(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        shutil.rmtree(populated_library / "Artist B")

        summary, _, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert not (output_root / "Artist B").exists()
        library_state = load_library_state(library_state_path(populated_library))
        assert set(library_state.tracked_artists) == {"Artist A"}

    def test_stale_outputs_are_deleted_after_source_state_loss(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        first = populated_library / "Artist A" / "First"
        source_state_path(first).unlink()
        (first / "02.flac").unlink()
        make_file(output_root / "Artist A" / "First" / "bonus.mp3", b"added by hand")

        summary, transcoder, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.call_names() == ["01.flac"]
        output_album = output_root / "Artist A" / "First"
        assert not (output_album / "02.mp3").exists()
        assert (output_album / "01.mp3").exists()
        assert (output_album / "bonus.mp3").read_bytes() == b"added by hand"
        transcode_state = load_album_state(transcode_state_path(output_album))
        assert set(transcode_state.audio_files) == {"01.mp3"}


@pytest.mark.integration
class TestFailures:
    """Failed jobs leave their album uncommitted so the next run retries it."""

    def test_failed_album_is_retried_next_run(self, make_settings, populated_library, output_root):
        failing = FakeTranscoder(failures={"02.flac": 99})
        summary, _, _ = _sync(make_settings(max_retries=1), transcoder=failing)

        assert summary.exit_code == EXIT_JOBS_FAILED
        assert summary.report.failed_paths() == [str(populated_library / "Artist A" / "First" / "02.flac")]
        assert load_album_state(source_state_path(populated_library / "Artist A" / "First")) is None
        assert load_album_state(source_state_path(populated_library / "Artist A" / "Second")) is not None

        error_log = (output_root / ".transcode-mirror" / "error.txt").read_text(encoding="utf-8")
        assert "02.flac" in error_log
        assert "simulated failure" in error_log

        summary, transcoder, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.call_names() == ["01.flac", "02.flac"]
        assert (output_root / "Artist A" / "First" / "02.mp3").read_bytes() == b"transcoded:a-first-02"

    def test_audio_in_artist_directory_skips_artist_without_deleting(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        make_file(populated_library / "Artist B" / "stray.flac")

        summary, transcoder, _ = _sync(make_settings())

        assert summary.exit_code == EXIT_JOBS_FAILED
        assert summary.album_errors
        assert transcoder.calls == []
        assert (output_root / "Artist B" / "Only" / "CD1" / "01.mp3").exists()
        library_state = load_library_state(library_state_path(populated_library))
        assert library_state.tracked_artists["Artist B"] == {"Only"}


@pytest.mark.integration
class TestCancelledRuns:
    """A cancelled run leaves every state untouched; the next run picks up the work."""

    def test_cancel_mid_album_then_rerun(self, make_settings, populated_library, output_root):
        _sync(make_settings())
        first = populated_library / "Artist A" / "First"
        output_album = output_root / "Artist A" / "First"
        for name in ("01.flac", "02.flac"):
            (first / name).write_bytes(b"v2-" + name.encode())
            os.utime(first / name, (1700000000.0, 1700000000.0))
        source_state_before = source_state_path(first).read_bytes()
        transcode_state_before = transcode_state_path(output_album).read_bytes()
        library_state_before = library_state_path(populated_library).read_bytes()

        blocking = FakeTranscoder(block_until_cancelled=True)
        pipeline = LibrarySyncPipeline(make_settings(), blocking, RecordingConsumer(), workers=1)

        def cancel_once_started():
            blocking.started.wait(timeout=10)
            pipeline.cancel()

        threading.Thread(target=cancel_once_started, daemon=True).start()
        summary = pipeline.run()

        assert summary.exit_code == EXIT_CANCELLED
        assert summary.report.failed_results == []
        assert len(summary.report.cancelled_results) == 2
        assert summary.report.uncommitted_albums == [AlbumKey("Lossless", "Artist A", "First")]
        assert len(blocking.calls) == 1
        assert source_state_path(first).read_bytes() == source_state_before
        assert transcode_state_path(output_album).read_bytes() == transcode_state_before
        assert library_state_path(populated_library).read_bytes() == library_state_before

        summary, transcoder, consumer = _sync(make_settings())

        assert summary.exit_code == EXIT_OK
        assert transcoder.call_names() == ["01.flac", "02.flac"]
        assert {path.parent for path in transcoder.calls} == {first}
        assert (output_album / "01.mp3").read_bytes() == b"transcoded:v2-01.flac"
        assert (output_album / "02.mp3").read_bytes() == b"transcoded:v2-02.flac"
        assert consumer.of_type(AlbumCommitted) == [AlbumCommitted(AlbumKey("Lossless", "Artist A", "First"))]
        source_state = load_album_state(source_state_path(first))
        assert source_state.audio_files["01.flac"].size_bytes == len(b"v2-01.flac")
