# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import uuid
import pytest
from datetime import datetime, timedelta, timezone
from typing import List
from unittest.mock import MagicMock


T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
USER_ID = "6f1c2a9e-0b7d-4c55-9a61-3f0e2d8b7c41"


# =============================================================================
# CLOCKS
# =============================================================================

class FakeClock:
    """Manually advanced clock; works for both float seconds and datetimes."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, amount):
        self.now = self.now + amount
        return self.now


@pytest.fixture
def fake_clock():
    """Monotonic-style clock in seconds for TTLCache"""
    return FakeClock(1000.0)


@pytest.fixture
def sync_clock():
    """Aware UTC clock for the reconciler, starting at T0 + 1 day"""
    return FakeClock(T0 + timedelta(days=1))


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

def make_course(title: str, updated_at=T0, course_id=None):
    from lms_core.offline.models import Course
    return Course(id=course_id or uuid.uuid4(), title=title, subject="General", updated_at=updated_at)


def make_assignment(title: str, course_id=None, updated_at=T0):
    from lms_core.offline.models import Assignment
    return Assignment(
        id=uuid.uuid4(),
        title=title,
        course_id=course_id,
        due_date=T0 + timedelta(days=7),
        points=100,
        updated_at=updated_at,
    )


def make_grade(course_name: str, numeric: float = 91.5, updated_at=T0):
    from lms_core.offline.models import GradeEntry
    return GradeEntry(
        id=uuid.uuid4(),
        course_name=course_name,
        letter_grade="A-",
        numeric_grade=numeric,
        updated_at=updated_at,
    )


def make_conversation(title: str, last_message_date=T0, updated_at=None):
    from lms_core.offline.models import Conversation
    return Conversation(
        id=uuid.uuid4(),
        title=title,
        last_message_date=last_message_date,
        updated_at=updated_at,
    )


@pytest.fixture
def sample_courses() -> List:
    return [
        make_course("Algebra I"),
        make_course("Biology"),
        make_course("World History"),
    ]


@pytest.fixture
def sample_snapshot(sample_courses):
    """Server snapshot with every collection populated"""
    from lms_core.offline.snapshot import ServerSnapshot

    algebra = sample_courses[0]
    return ServerSnapshot.from_lists(
        courses=sample_courses,
        assignments=[
            make_assignment("Quadratics worksheet", course_id=algebra.id),
            make_assignment("Cell diagram", course_id=sample_courses[1].id),
        ],
        grades=[make_grade("Algebra I"), make_grade("Biology", numeric=84.0)],
        conversations=[make_conversation("Field trip permission")],
    )


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
def offline_settings(tmp_path, monkeypatch):
    """Settings with no Streamlit secrets and a temp database path"""
    from lms_core import settings as settings_module

    monkeypatch.setattr(settings_module, "_read_secrets", lambda: {})
    return settings_module.load_settings({
        "db_path": tmp_path / "offline.db",
        "supabase_url": "https://example.supabase.co",
        "supabase_key": "anon-key",
    })


@pytest.fixture
def storage(tmp_path):
    """OfflineStorage on a temp file, scoped to USER_ID"""
    from lms_core.offline.offline_storage import OfflineStorage

    store = OfflineStorage(tmp_path / "offline.db")
    store.set_current_user(USER_ID)
    yield store
    store.close()


@pytest.fixture
def service(storage, offline_settings, sync_clock):
    """ConflictResolutionService wired to the temp storage"""
    from lms_core.offline.conflict_resolution import ConflictResolutionService

    return ConflictResolutionService(
        storage=storage,
        settings=offline_settings,
        clock=sync_clock,
    )


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock the Streamlit module used by the error handlers and settings"""
    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.secrets = {}

    monkeypatch.setattr("lms_core.errors.handlers.st", mock_st)
    monkeypatch.setattr("lms_core.settings.st", mock_st)
    yield mock_st


@pytest.fixture
def mock_supabase():
    """Mock Supabase client; every table returns no rows"""
    mock_client = MagicMock()
    query = mock_client.table.return_value.select.return_value.order.return_value
    query.range.return_value.execute.return_value.data = []
    return mock_client


def supabase_with_tables(tables):
    """
    Mock Supabase client serving rows per table name.

    tables maps a table name to a list of row dicts, or to an Exception that
    execute() raises for that table.
    """
    client = MagicMock()

    def table(name):
        source = tables.get(name, [])
        builder = MagicMock()

        def range_(start, end):
            response = MagicMock()
            if isinstance(source, Exception):
                response.execute.side_effect = source
            else:
                response.execute.return_value.data = source[start:end + 1]
            return response

        builder.select.return_value.order.return_value.range.side_effect = range_
        return builder

    client.table.side_effect = table
    return client


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def seed_metadata(storage, snapshot, clock_value=T0):
    """Persist entities and clean metadata for a snapshot, as a finished sync would"""
    from lms_core.offline.entity_registry import DEFAULT_COLLECTIONS
    from lms_core.offline.models import CachedItemMetadata

    metadata = []
    for collection in DEFAULT_COLLECTIONS:
        items = snapshot.items(collection.entity_type)
        storage.save_entities(collection.entity_type, items)
        for item in items:
            stamp = collection.server_timestamp(item) or clock_value
            metadata.append(CachedItemMetadata(
                id=item.id,
                entity_type=collection.entity_type,
                entity_name=collection.entity_name(item),
                modified_at=stamp,
                cached_at=clock_value,
                server_modified_at=stamp,
            ))
    storage.save_metadata(metadata)
    return metadata


def mark_local_edit(storage, entity_id, entity_type, modified_at):
    """Flag one metadata row as edited offline at modified_at"""
    from dataclasses import replace

    metadata = storage.load_metadata()
    updated = [
        replace(meta, is_locally_modified=True, modified_at=modified_at)
        if meta.id == entity_id and meta.entity_type == entity_type else meta
        for meta in metadata
    ]
    storage.save_metadata(updated)
