"""
Tests for cache residency tracking and access event reconciliation.
"""

import pytest

from tiermeta.error_handling import EmptyUpdateError, InvalidValueError, MetaStoreResourceError
from tiermeta.models import CachedFileStatus, FileAccessEvent


@pytest.fixture
def resident(store):
    """File 1 (/a) and file 2 (/b) resident since t=100."""
    store.insert_cached_files(
        [
            CachedFileStatus(1, "/a", 100, 100, 0),
            CachedFileStatus(2, "/b", 100, 150, 4),
        ]
    )


class TestCachedFileCrud:
    def test_insert_and_read(self, store, resident):
        assert store.get_cached_fids() == [1, 2]
        assert store.get_cached_file_status(2) == CachedFileStatus(2, "/b", 100, 150, 4)
        assert store.get_cached_file_status(3) is None
        assert len(store.get_all_cached_file_status()) == 2

    def test_insert_single(self, store):
        store.insert_cached_file(5, "/e", 10, 20)

        assert store.get_cached_file_status(5) == CachedFileStatus(5, "/e", 10, 20, 0)

    def test_delete(self, store, resident):
        assert store.delete_cached_file(1)
        assert not store.delete_cached_file(1)
        assert store.get_cached_fids() == [2]

    def test_delete_all(self, store, resident):
        assert store.delete_all_cached_files() == 2
        assert store.get_cached_fids() == []


class TestUpdateCachedFile:
    """Partial updates of one residency row."""

    def test_only_supplied_fields_change(self, store, resident):
        assert store.update_cached_file(2, num_accessed=9)

        assert store.get_cached_file_status(2) == CachedFileStatus(2, "/b", 100, 150, 9)

    def test_from_time_is_set_from_its_own_argument(self, store, resident):
        assert store.update_cached_file(1, from_time=500, last_access_time=600)

        status = store.get_cached_file_status(1)
        assert status.from_time == 500
        assert status.last_access_time == 600

    def test_no_fields_raises(self, store, resident):
        with pytest.raises(EmptyUpdateError):
            store.update_cached_file(1)

    def test_absent_row_returns_false(self, store, resident):
        assert store.update_cached_file(42, num_accessed=1) is False


class TestReconcile:
    """Folding access event batches into residency rows."""

    def test_counts_and_latest_timestamp(self, store, resident):
        events = [
            FileAccessEvent("/a", 300),
            FileAccessEvent("/a", 200),
            FileAccessEvent("/b", 250),
        ]

        updated = store.update_cached_files({"/a": 1, "/b": 2}, events)

        assert updated == 2
        assert store.get_cached_file_status(1) == CachedFileStatus(1, "/a", 100, 300, 2)
        assert store.get_cached_file_status(2) == CachedFileStatus(2, "/b", 100, 250, 5)

    def test_event_order_does_not_matter(self, store, resident):
        events = [FileAccessEvent("/a", 300), FileAccessEvent("/a", 200)]

        store.update_cached_files({"/a": 1}, list(reversed(events)))

        assert store.get_cached_file_status(1).last_access_time == 300

    def test_non_resident_files_are_not_admitted(self, store, resident):
        updated = store.update_cached_files({"/c": 3}, [FileAccessEvent("/c", 400)])

        assert updated == 0
        assert store.get_cached_fids() == [1, 2]

    def test_resident_file_without_events_untouched(self, store, resident):
        store.update_cached_files({"/a": 1, "/b": 2}, [FileAccessEvent("/a", 120)])

        assert store.get_cached_file_status(2) == CachedFileStatus(2, "/b", 100, 150, 4)

    def test_last_access_time_never_moves_backwards(self, store, resident):
        store.update_cached_files({"/b": 2}, [FileAccessEvent("/b", 120)])

        status = store.get_cached_file_status(2)
        assert status.last_access_time == 150
        assert status.num_accessed == 5

    def test_unresolved_event_paths_ignored(self, store, resident):
        updated = store.update_cached_files({"/a": 1}, [FileAccessEvent("/unknown", 999)])

        assert updated == 0
        assert store.get_cached_file_status(1).num_accessed == 0

    def test_empty_batch(self, store, resident):
        assert store.update_cached_files({}, []) == 0


class TestResidencyConstraints:
    """Rows never hold a negative count or an access before admission."""

    def test_record_rejects_negative_count(self):
        with pytest.raises(InvalidValueError):
            CachedFileStatus(1, "/a", 100, 100, -3)

    def test_record_rejects_access_before_admission(self):
        with pytest.raises(InvalidValueError):
            CachedFileStatus(1, "/a", 100, 50)

    def test_insert_rejects_invalid_record(self, store):
        with pytest.raises(InvalidValueError):
            store.insert_cached_file(1, "/a", from_time=100, last_access_time=50, num_accessed=-3)

        assert store.get_cached_fids() == []

    def test_update_rejects_negative_count(self, store, resident):
        with pytest.raises(InvalidValueError):
            store.update_cached_file(2, num_accessed=-9)

        assert store.get_cached_file_status(2).num_accessed == 4

    def test_update_checks_against_stored_from_time(self, store, resident):
        with pytest.raises(InvalidValueError):
            store.update_cached_file(2, last_access_time=10)

        assert store.get_cached_file_status(2).last_access_time == 150

    def test_update_checks_against_stored_last_access(self, store, resident):
        with pytest.raises(InvalidValueError):
            store.update_cached_file(2, from_time=200)

    def test_update_checks_both_supplied_times(self, store, resident):
        with pytest.raises(InvalidValueError):
            store.update_cached_file(1, from_time=500, last_access_time=400)

    def test_partial_time_update_of_absent_row(self, store, resident):
        assert store.update_cached_file(42, last_access_time=10) is False

    def test_database_rejects_raw_violation(self, store, resident):
        with pytest.raises(MetaStoreResourceError):
            store.execute("UPDATE cached_files SET num_accessed = -1 WHERE fid = 1")
