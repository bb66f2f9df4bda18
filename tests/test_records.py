"""
Tests for the change-detection data model: FileRecord equality, state
serialization and change set queries.
"""

import pytest

from transcode_mirror.domain.exceptions import SchemaVersionMismatchException, SerializationException
from transcode_mirror.domain.records import (
    AlbumKey,
    AlbumState,
    ChangeSet,
    FileRecord,
    LibraryState,
    TrackedFiles,
    truncate_timestamp,
)


@pytest.mark.unit
class TestFileRecordEquality:
    """Records are equal iff size matches and both timestamps match after truncation."""

    def test_truncation_ignores_hundredths(self):
        assert truncate_timestamp(1636881979.70) == truncate_timestamp(1636881979.74)
        assert truncate_timestamp(1636881979.7) == 16368819797

    def test_truncation_is_floor_not_round(self):
        assert truncate_timestamp(1636881979.79) != truncate_timestamp(1636881979.81)

    def test_small_perturbation_is_equal(self):
        a = FileRecord("A.flac", 3403902, 1636881979.70, 1636881979.70)
        b = FileRecord("A.flac", 3403902, 1636881979.74, 1636881979.71)
        assert a == b
        assert hash(a) == hash(b)

    def test_size_change_is_not_equal(self):
        a = FileRecord("A.flac", 3403902, 1636881979.7, 1636881979.7)
        b = FileRecord("A.flac", 3403903, 1636881979.7, 1636881979.7)
        assert a != b

    def test_tenth_of_a_second_is_not_equal(self):
        a = FileRecord("A.flac", 10, 1636881979.7, 1.0)
        b = FileRecord("A.flac", 10, 1636881979.8, 1.0)
        assert a != b

    def test_created_time_participates(self):
        a = FileRecord("A.flac", 10, 5.0, 1.0)
        b = FileRecord("A.flac", 10, 5.0, 2.0)
        assert a != b

    def test_relative_path_does_not_participate(self):
        assert FileRecord("a.flac", 1, 1.0, 1.0) == FileRecord("b.flac", 1, 1.0, 1.0)

    def test_equality_is_deterministic(self):
        a = FileRecord("A.flac", 1, 1636881979.7, 1636881979.7)
        b = FileRecord("A.flac", 1, 1636881979.7, 1636881979.7)
        assert all(a == b for _ in range(100))


@pytest.mark.unit
class TestAlbumStateSerialization:
    """AlbumState to_dict/from_dict and validation."""

    def test_to_dict_layout(self):
        state = AlbumState(
            tracked_files=TrackedFiles(
                audio_files={"A.flac": FileRecord("A.flac", 3403902, 1636881979.7, 1636881979.7)},
                data_files={"cover.jpg": FileRecord("cover.jpg", 100, 1.5, 1.5)},
            )
        )
        data = state.to_dict()
        assert data["schema_version"] == 2
        assert data["tracked_files"]["audio_files"]["A.flac"] == {
            "size_bytes": 3403902,
            "time_modified": 1636881979.7,
            "time_created": 1636881979.7,
        }
        assert list(data["tracked_files"]["data_files"]) == ["cover.jpg"]

    def test_from_dict_restores_records(self):
        data = {
            "schema_version": 2,
            "tracked_files": {
                "audio_files": {"CD1/01.flac": {"size_bytes": 5, "time_modified": 2, "time_created": 3.25}},
                "data_files": {},
            },
        }
        state = AlbumState.from_dict(data)
        record = state.audio_files["CD1/01.flac"]
        assert record.relative_path == "CD1/01.flac"
        assert record.size_bytes == 5
        assert record.modified_time == 2.0
        assert state.data_files == {}

    def test_wrong_schema_version(self):
        with pytest.raises(SchemaVersionMismatchException) as exc_info:
            AlbumState.from_dict({"schema_version": 3, "tracked_files": {}})
        assert exc_info.value.found_version == 3
        assert exc_info.value.expected_version == 2

    def test_missing_schema_version(self):
        with pytest.raises(SerializationException):
            AlbumState.from_dict({"tracked_files": {}})

    @pytest.mark.parametrize(
        "record",
        [
            {"size_bytes": "5", "time_modified": 1.0, "time_created": 1.0},
            {"size_bytes": -1, "time_modified": 1.0, "time_created": 1.0},
            {"size_bytes": 5, "time_modified": "yesterday", "time_created": 1.0},
            {"size_bytes": 5, "time_modified": 1.0},
            ["not", "a", "mapping"],
        ],
    )
    def test_invalid_records(self, record):
        data = {"schema_version": 2, "tracked_files": {"audio_files": {"a.flac": record}}}
        with pytest.raises(SerializationException):
            AlbumState.from_dict(data)


@pytest.mark.unit
class TestLibraryState:
    """LibraryState bookkeeping and serialization."""

    def test_add_and_identifiers(self):
        state = LibraryState()
        state.add_album("Artist", "Album 1")
        state.add_album("Artist", "Album 2")
        state.add_album("Other", "X")
        assert state.identifiers() == {("Artist", "Album 1"), ("Artist", "Album 2"), ("Other", "X")}

    def test_removing_last_album_removes_artist(self):
        state = LibraryState()
        state.add_album("Artist", "Album")
        state.remove_album("Artist", "Album")
        assert "Artist" not in state.tracked_artists

    def test_round_trip_is_sorted(self):
        state = LibraryState(tracked_artists={"B": {"z", "a"}, "A": {"m"}})
        data = state.to_dict()
        assert list(data["tracked_artists"]) == ["A", "B"]
        assert data["tracked_artists"]["B"] == ["a", "z"]
        assert LibraryState.from_dict(data).tracked_artists == {"A": {"m"}, "B": {"a", "z"}}

    def test_invalid_album_list(self):
        with pytest.raises(SerializationException):
            LibraryState.from_dict({"schema_version": 2, "tracked_artists": {"A": "not a list"}})


@pytest.mark.unit
class TestChangeSet:
    """ChangeSet helper queries."""

    def test_empty(self):
        assert ChangeSet(album=AlbumKey("L", "A", "B")).is_empty()

    def test_job_count(self):
        change_set = ChangeSet(
            album=AlbumKey("L", "A", "B"),
            audio_to_transcode={"1.flac", "2.flac"},
            data_to_copy={"cover.jpg"},
            files_to_delete_in_output={"old.mp3"},
        )
        assert change_set.job_count() == 4
        assert not change_set.is_empty()

    def test_removal_is_one_job(self):
        assert ChangeSet(album=AlbumKey("L", "A"), artist_removed=True).job_count() == 1

    def test_album_key_str(self):
        assert str(AlbumKey("Lossless", "Artist", "Album")) == "Lossless: Artist - Album"
        assert str(AlbumKey("Lossless", "Artist")) == "Lossless: Artist"
