# =============================================================================
# tests/unit/test_conflict_resolution.py
# Unit Tests for ConflictResolutionService
# =============================================================================

import threading
import uuid
import pytest
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

from conftest import (
    T0,
    make_conversation,
    make_course,
    mark_local_edit,
    seed_metadata,
)


def _snapshot(**lists):
    from lms_core.offline.snapshot import ServerSnapshot
    return ServerSnapshot.from_lists(**lists)


class TestNoConflicts:
    """Test cycles where nothing was edited offline"""

    def test_unmodified_cache_produces_no_conflicts(self, service, storage, sample_snapshot):
        """Reconciling an identical snapshot is a no-op apart from bookkeeping"""
        seed_metadata(storage, sample_snapshot)

        result = service.resolve_conflicts(sample_snapshot)

        assert result.is_success
        assert result.conflicts_found == 0
        assert result.items_synced == sample_snapshot.total_items
        assert service.pending_conflicts == []

    def test_second_cycle_is_idempotent(self, service, storage, sample_snapshot):
        service.resolve_conflicts(sample_snapshot)
        first = sorted((m.key, m.modified_at) for m in storage.load_metadata())

        result = service.resolve_conflicts(sample_snapshot)

        assert result.conflicts_found == 0
        assert sorted((m.key, m.modified_at) for m in storage.load_metadata()) == first

    def test_edit_within_epsilon_is_not_a_conflict(self, service, storage):
        course = make_course("Chemistry")
        snapshot = _snapshot(courses=[course])
        seed_metadata(storage, snapshot)
        mark_local_edit(storage, course.id, "course", T0 + timedelta(microseconds=900))

        result = service.resolve_conflicts(snapshot)

        assert result.conflicts_found == 0


class TestServerWins:
    """Test conflict detection and server-wins resolution"""

    def test_server_newer_wins(self, service, storage):
        """Server edit after the local edit replaces the local copy"""
        course = make_course("Chemistry", updated_at=T0)
        seed_metadata(storage, _snapshot(courses=[course]))
        mark_local_edit(storage, course.id, "course", T0 + timedelta(minutes=5))

        server_copy = replace(course, title="Chemistry (Honors)", updated_at=T0 + timedelta(minutes=10))
        result = service.resolve_conflicts(_snapshot(courses=[server_copy]))

        assert result.conflicts_found == 1
        assert result.conflicts_resolved == 1
        conflict = service.pending_conflicts[0]
        from lms_core.offline.models import ConflictResolution
        assert conflict.resolution == ConflictResolution.SERVER_WINS
        assert conflict.entity_id == str(course.id)
        assert conflict.entity_name == "Chemistry (Honors)"
        assert conflict.server_is_newer
        assert storage.load_entities("course")[0].title == "Chemistry (Honors)"

    def test_local_newer_still_resolves_to_server(self, service, storage):
        """A newer offline edit is discarded but reported"""
        course = make_course("Physics", updated_at=T0)
        seed_metadata(storage, _snapshot(courses=[course]))
        mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=2))

        result = service.resolve_conflicts(_snapshot(courses=[course]))

        assert result.conflicts_found == 1
        conflict = service.pending_conflicts[0]
        assert not conflict.server_is_newer
        assert conflict.local_modified_at == T0 + timedelta(hours=2)
        assert conflict.server_modified_at == T0
        meta = storage.load_metadata()[0]
        assert not meta.is_locally_modified
        assert meta.modified_at == T0

    def test_deleted_on_server(self, service, storage, sync_clock):
        """Missing server entity yields a conflict stamped now and is dropped locally"""
        keep = make_course("Art")
        gone = make_course("Latin")
        seed_metadata(storage, _snapshot(courses=[keep, gone]))
        mark_local_edit(storage, gone.id, "course", T0 + timedelta(minutes=1))

        result = service.resolve_conflicts(_snapshot(courses=[keep]))

        assert result.conflicts_found == 1
        conflict = service.pending_conflicts[0]
        assert conflict.entity_name == "Latin"
        assert conflict.server_modified_at == sync_clock.now
        assert [c.id for c in storage.load_entities("course")] == [keep.id]
        assert gone.id not in {m.id for m in storage.load_metadata()}

    def test_conversation_uses_last_message_date(self, service, storage):
        conversation = make_conversation("Project group", last_message_date=T0)
        seed_metadata(storage, _snapshot(conversations=[conversation]))
        mark_local_edit(storage, conversation.id, "conversation", T0 + timedelta(seconds=30))

        newer = replace(conversation, last_message_date=T0 + timedelta(minutes=1))
        result = service.resolve_conflicts(_snapshot(conversations=[newer]))

        assert result.conflicts_found == 1
        assert service.pending_conflicts[0].server_modified_at == T0 + timedelta(minutes=1)


class TestServerTimestampResolution:
    """Test the comparison timestamp for entities without one"""

    def test_entity_timestamp_preferred(self):
        from lms_core.offline.conflict_resolution import ConflictResolutionService
        from lms_core.offline.entity_registry import get_collection
        from lms_core.offline.models import CachedItemMetadata

        course = make_course("Music", updated_at=T0 + timedelta(days=2))
        meta = CachedItemMetadata(
            id=course.id, entity_type="course", entity_name="Music",
            modified_at=T0, server_modified_at=T0,
        )

        stamp = ConflictResolutionService.resolve_server_timestamp(get_collection("course"), course, meta)
        assert stamp == T0 + timedelta(days=2)

    def test_falls_back_to_server_modified_at(self):
        from lms_core.offline.conflict_resolution import ConflictResolutionService
        from lms_core.offline.entity_registry import get_collection
        from lms_core.offline.models import CachedItemMetadata

        course = make_course("Music", updated_at=None)
        meta = CachedItemMetadata(
            id=course.id, entity_type="course", entity_name="Music",
            modified_at=T0 + timedelta(hours=1), server_modified_at=T0,
            is_locally_modified=True,
        )

        stamp = ConflictResolutionService.resolve_server_timestamp(get_collection("course"), course, meta)
        assert stamp == T0

    def test_falls_back_to_modified_at(self):
        from lms_core.offline.conflict_resolution import ConflictResolutionService
        from lms_core.offline.entity_registry import get_collection
        from lms_core.offline.models import CachedItemMetadata

        course = make_course("Music", updated_at=None)
        meta = CachedItemMetadata(id=course.id, entity_type="course", entity_name="Music", modified_at=T0)

        stamp = ConflictResolutionService.resolve_server_timestamp(get_collection("course"), course, meta)
        assert stamp == T0

    def test_untouched_entity_without_timestamp_is_not_a_conflict(self, service, storage):
        """Flagged but unedited entity without server timestamp compares equal"""
        from lms_core.offline.models import CachedItemMetadata

        course = make_course("Drama", updated_at=None)
        storage.save_entities("course", [course])
        storage.save_metadata([CachedItemMetadata(
            id=course.id, entity_type="course", entity_name="Drama",
            modified_at=T0, cached_at=T0, is_locally_modified=True, server_modified_at=T0,
        )])

        result = service.resolve_conflicts(_snapshot(courses=[course]))

        assert result.conflicts_found == 0


class TestMetadataRebuild:
    """Test metadata after a successful cycle"""

    def test_every_server_entity_has_clean_metadata(self, service, storage, sample_snapshot):
        course = sample_snapshot.items("course")[0]
        seed_metadata(storage, sample_snapshot)
        mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))

        service.resolve_conflicts(sample_snapshot)

        metadata = storage.load_metadata()
        expected = {
            (entity_type, item.id)
            for entity_type, items in sample_snapshot.collections.items()
            for item in items
        }
        assert {m.key for m in metadata} == expected
        assert not any(m.is_locally_modified for m in metadata)

    def test_build_metadata_uses_now_without_timestamp(self, service, sync_clock):
        course = make_course("Photography", updated_at=None)

        metadata = service.build_metadata(_snapshot(courses=[course]))

        assert metadata[0].modified_at == sync_clock.now
        assert metadata[0].server_modified_at == sync_clock.now
        assert metadata[0].cached_at == sync_clock.now

    def test_last_sync_date_recorded(self, service, storage, sample_snapshot, sync_clock):
        service.resolve_conflicts(sample_snapshot)
        assert storage.last_sync_date == sync_clock.now


class TestConflictHistory:
    """Test history ordering, cap and persistence"""

    def test_history_is_most_recent_first_and_capped(self, service, storage):
        """60 conflicts across two cycles leave the newest 50"""
        first = [make_course(f"First {i}") for i in range(30)]
        seed_metadata(storage, _snapshot(courses=first))
        for course in first:
            mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))
        service.resolve_conflicts(_snapshot(courses=first))

        second = [make_course(f"Second {i}") for i in range(30)]
        seed_metadata(storage, _snapshot(courses=second))
        for course in second:
            mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))
        service.resolve_conflicts(_snapshot(courses=second))

        assert len(service.conflict_history) == 50
        assert all(c.entity_name.startswith("Second") for c in service.conflict_history[:30])
        assert all(c.entity_name.startswith("First") for c in service.conflict_history[30:])

    def test_history_reloaded_by_new_service(self, service, storage, offline_settings):
        from lms_core.offline.conflict_resolution import ConflictResolutionService

        course = make_course("Geography")
        seed_metadata(storage, _snapshot(courses=[course]))
        mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))
        service.resolve_conflicts(_snapshot(courses=[course]))

        reloaded = ConflictResolutionService(storage=storage, settings=offline_settings)

        assert [c.id for c in reloaded.conflict_history] == [c.id for c in service.conflict_history]
        assert reloaded.last_sync_result.conflicts_found == 1

    def test_clear_history(self, service, storage):
        course = make_course("Geography")
        seed_metadata(storage, _snapshot(courses=[course]))
        mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))
        service.resolve_conflicts(_snapshot(courses=[course]))

        service.clear_history()

        assert service.conflict_history == []
        assert service.pending_conflicts == []
        assert service.last_sync_result is None
        assert storage.load_conflict_history() == []

    def test_dismiss_conflict(self, service, storage):
        courses = [make_course("A"), make_course("B")]
        seed_metadata(storage, _snapshot(courses=courses))
        for course in courses:
            mark_local_edit(storage, course.id, "course", T0 + timedelta(hours=1))
        service.resolve_conflicts(_snapshot(courses=courses))

        dismissed = service.pending_conflicts[0]
        service.dismiss_conflict(dismissed)

        assert len(service.pending_conflicts) == 1
        assert service.pending_conflicts[0].id != dismissed.id
        assert len(service.conflict_history) == 2


class TestMarkAsLocallyModified:
    """Test flagging offline edits"""

    def test_marks_existing_row(self, service, storage, sync_clock):
        course = make_course("Economics")
        seed_metadata(storage, _snapshot(courses=[course]))

        assert service.mark_as_locally_modified(course.id, "course")

        meta = storage.load_metadata()[0]
        assert meta.is_locally_modified
        assert meta.modified_at == sync_clock.now
        assert meta.server_modified_at == T0

    def test_unknown_entity_returns_false(self, service, storage):
        seed_metadata(storage, _snapshot(courses=[make_course("Economics")]))

        assert not service.mark_as_locally_modified(uuid.uuid4(), "course")
        assert not any(m.is_locally_modified for m in storage.load_metadata())


class TestPartialAndFailedCycles:
    """Test per-type failures, cancellation and unavailable storage"""

    def test_failed_type_is_left_untouched(self, service, storage, sample_snapshot):
        """A failed grades fetch keeps the cached grades and their local edits"""
        seed_metadata(storage, sample_snapshot)
        grade = sample_snapshot.items("grade")[0]
        mark_local_edit(storage, grade.id, "grade", T0 + timedelta(hours=1))

        partial = _snapshot(
            courses=sample_snapshot.items("course")[:1],
            assignments=sample_snapshot.items("assignment"),
            conversations=sample_snapshot.items("conversation"),
        )
        partial.fail("grade", "HTTP 503")

        result = service.resolve_conflicts(partial)

        assert result.errors == ("Failed to fetch grades: HTTP 503",)
        assert not result.is_success
        assert service.sync_error == "Failed to fetch grades: HTTP 503"
        assert len(storage.load_entities("grade")) == 2
        assert len(storage.load_entities("course")) == 1
        grade_meta = [m for m in storage.load_metadata() if m.entity_type == "grade"]
        assert len(grade_meta) == 2
        assert any(m.is_locally_modified for m in grade_meta)

    def test_cancelled_cycle_writes_nothing(self, service, storage, sample_snapshot):
        from lms_core.offline.models import SyncPhase

        seed_metadata(storage, sample_snapshot)
        before = sorted(m.key for m in storage.load_metadata())
        cancel = threading.Event()
        cancel.set()

        result = service.resolve_conflicts(_snapshot(courses=[make_course("New")]), cancel_event=cancel)

        assert result.errors == ("Sync cancelled before commit.",)
        assert result.items_synced == 0
        assert service.phase == SyncPhase.FAILED
        assert len(storage.load_entities("course")) == 3
        assert sorted(m.key for m in storage.load_metadata()) == before
        assert storage.last_sync_date is None

    def test_store_unavailable(self, offline_settings, sample_snapshot):
        """No signed-in user: error result and nothing written"""
        from lms_core.offline.conflict_resolution import ConflictResolutionService
        from lms_core.offline.models import SyncPhase

        store = MagicMock()
        store.is_available = False
        service = ConflictResolutionService(storage=store, settings=offline_settings)

        result = service.resolve_conflicts(sample_snapshot)

        assert result.items_synced == 0
        assert result.errors == ("Offline storage not available.",)
        assert service.last_sync_result is result
        assert service.sync_error == "Offline storage not available."
        assert service.phase == SyncPhase.FAILED
        assert service.conflict_history == []
        store.save_entities.assert_not_called()
        store.save_metadata.assert_not_called()
        store.save_conflict_history.assert_not_called()

    def test_unconfigured_service(self, offline_settings, sample_snapshot):
        from lms_core.offline.conflict_resolution import ConflictResolutionService

        service = ConflictResolutionService(settings=offline_settings)

        result = service.resolve_conflicts(sample_snapshot)

        assert result.errors == ("Offline storage not available.",)

    def test_storage_failure_is_reported_not_raised(self, offline_settings, sample_snapshot, mock_streamlit):
        from lms_core.errors import StorageError
        from lms_core.offline.conflict_resolution import ConflictResolutionService
        from lms_core.offline.models import SyncPhase

        store = MagicMock()
        store.is_available = True
        store.load_conflict_history.return_value = []
        store.load_sync_result.return_value = None
        store.load_metadata.return_value = []
        store.save_metadata.side_effect = StorageError("disk full", operation="transaction")
        service = ConflictResolutionService(storage=store, settings=offline_settings)

        result = service.resolve_conflicts(sample_snapshot)

        assert result.items_synced == 0
        assert result.errors[0].startswith("Sync failed:")
        assert "disk full" in result.errors[0]
        assert service.phase == SyncPhase.FAILED
        mock_streamlit.error.assert_not_called()


class TestSingleFlight:
    """Test that concurrent callers share one cycle"""

    def test_concurrent_callers_get_same_result(self, service, storage, sample_snapshot):
        entered = threading.Event()
        release = threading.Event()
        calls = []
        original_load = storage.load_metadata

        def blocking_load():
            calls.append(1)
            entered.set()
            release.wait(timeout=5)
            return original_load()

        storage.load_metadata = blocking_load
        results = {}

        def run(name):
            results[name] = service.resolve_conflicts(sample_snapshot)

        leader = threading.Thread(target=run, args=("leader",))
        leader.start()
        assert entered.wait(timeout=5)

        follower = threading.Thread(target=run, args=("follower",))
        follower.start()
        follower.join(timeout=0.2)
        assert follower.is_alive()

        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert len(calls) == 1
        assert results["leader"] is results["follower"]

    def test_next_cycle_runs_after_previous_finishes(self, service, sample_snapshot):
        first = service.resolve_conflicts(sample_snapshot)
        second = service.resolve_conflicts(sample_snapshot)

        assert first is not second


class TestObservers:
    """Test callbacks and status display"""

    def test_callbacks_see_phase_changes(self, service, sample_snapshot):
        from lms_core.offline.models import SyncPhase

        phases = []
        service.register_callback(lambda s: phases.append(s.phase))

        service.resolve_conflicts(sample_snapshot)

        assert phases == [SyncPhase.SYNCING, SyncPhase.COMPLETED, SyncPhase.IDLE]

    def test_failing_callback_does_not_break_cycle(self, service, sample_snapshot):
        def broken(_):
            raise ValueError("observer bug")

        service.register_callback(broken)
        result = service.resolve_conflicts(sample_snapshot)

        assert result.is_success

    def test_status_display(self, service, sample_snapshot):
        service.resolve_conflicts(sample_snapshot)

        status = service.get_status_display()

        assert status["phase"] == "idle"
        assert status["items_synced"] == sample_snapshot.total_items
        assert status["pending_conflicts"] == 0
        assert status["error"] is None


class TestNaiveTimestamps:
    """Test entities and metadata built with naive datetimes"""

    def test_naive_values_become_utc(self):
        from datetime import datetime, timezone
        from lms_core.offline.models import CachedItemMetadata, Conversation, Course

        course = Course(id=uuid.uuid4(), title="Statistics", updated_at=datetime(2024, 3, 1, 12))
        conversation = Conversation(id=uuid.uuid4(), title="Office hours", last_message_date=datetime(2024, 3, 1, 12))
        meta = CachedItemMetadata(
            id=course.id, entity_type="course", entity_name="Statistics",
            modified_at=datetime(2024, 3, 1, 12), cached_at=datetime(2024, 3, 1, 12),
        )

        assert course.updated_at == T0
        assert course.updated_at.tzinfo == timezone.utc
        assert conversation.last_message_date == T0
        assert meta.modified_at.tzinfo == timezone.utc
        assert meta.cached_at.tzinfo == timezone.utc

    def test_cycles_with_naive_server_timestamps_keep_syncing(self, service, storage):
        """A locally edited entity with naive server timestamps reconciles instead of failing"""
        from datetime import datetime, timezone
        from lms_core.offline.models import Course

        course_id = uuid.uuid4()
        original = Course(id=course_id, title="Statistics", updated_at=datetime(2024, 3, 1, 12))
        assert service.resolve_conflicts(_snapshot(courses=[original])).is_success
        assert service.mark_as_locally_modified(course_id, "course")

        revised = Course(id=course_id, title="Statistics II", updated_at=datetime(2024, 3, 5, 12))
        second = service.resolve_conflicts(_snapshot(courses=[revised]))

        assert second.is_success
        assert second.conflicts_found == 1
        assert service.pending_conflicts[0].server_modified_at == datetime(2024, 3, 5, 12, tzinfo=timezone.utc)
        assert not any(m.is_locally_modified for m in storage.load_metadata())

        third = service.resolve_conflicts(_snapshot(courses=[revised]))
        assert third.is_success
        assert third.conflicts_found == 0


class TestLocalEditDuringCycle:
    """Test marking an edit while a cycle is between load and commit"""

    def test_edit_waits_for_commit_and_is_kept(self, service, storage, sample_snapshot):
        seed_metadata(storage, sample_snapshot)
        course = sample_snapshot.items("course")[0]
        entered = threading.Event()
        release = threading.Event()
        original_load = storage.load_metadata

        def blocking_load():
            entered.set()
            release.wait(timeout=5)
            return original_load()

        storage.load_metadata = blocking_load
        marked = {}

        cycle = threading.Thread(target=service.resolve_conflicts, args=(sample_snapshot,))
        cycle.start()
        assert entered.wait(timeout=5)

        edit = threading.Thread(
            target=lambda: marked.update(ok=service.mark_as_locally_modified(course.id, "course"))
        )
        edit.start()
        edit.join(timeout=0.2)
        assert edit.is_alive()

        release.set()
        cycle.join(timeout=5)
        edit.join(timeout=5)

        assert marked["ok"]
        flagged = [m for m in original_load() if m.is_locally_modified]
        assert [m.id for m in flagged] == [course.id]

        result = service.resolve_conflicts(sample_snapshot)
        assert result.conflicts_found == 1
        assert service.pending_conflicts[0].entity_id == str(course.id)
