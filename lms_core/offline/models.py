# =============================================================================
# lms_core/offline/models.py
# Data model for offline caching and sync reconciliation
# =============================================================================
"""
Dataclasses shared by the offline storage, the snapshot fetcher and the
conflict-resolution service.

All timestamps are timezone-aware UTC datetimes. Naive values read from
storage or Supabase are interpreted as UTC.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from lms_core.errors import MetadataDecodeError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (Supabase emits a trailing 'Z') into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _optional_uuid(value: Any) -> Optional[uuid.UUID]:
    return parse_uuid(value) if value not in (None, "") else None


def _normalize_timestamps(obj: Any, *names: str) -> None:
    """Coerce the named datetime attributes to aware UTC (naive values are UTC)."""
    for name in names:
        value = getattr(obj, name)
        if value is not None:
            object.__setattr__(obj, name, parse_timestamp(value))


def _required(row: Dict[str, Any], *names: str) -> Any:
    """First present value among names; MetadataDecodeError if none."""
    for name in names:
        if row.get(name) is not None:
            return row[name]
    raise MetadataDecodeError(f"Missing required field '{names[0]}'", field=names[0])


# =============================================================================
# SYNC BOOKKEEPING
# =============================================================================

class ConflictResolution(Enum):
    """How a sync conflict was resolved."""
    SERVER_WINS = "serverWins"     # Server version replaced the local version
    LOCAL_WINS = "localWins"       # Local version was pushed to the server
    NO_CONFLICT = "noConflict"     # Timestamps matched; nothing to do


class SyncPhase(Enum):
    """Reconciliation cycle state."""
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CachedItemMetadata:
    """
    Per-entity bookkeeping stored next to the cached collections.

    server_modified_at is the server-confirmed modification instant recorded
    when the row was rebuilt from a snapshot. It is the comparison baseline for
    entity types without an authoritative timestamp and is never touched by
    local edits.
    """
    id: uuid.UUID
    entity_type: str
    entity_name: str
    modified_at: datetime
    cached_at: datetime = field(default_factory=utc_now)
    is_locally_modified: bool = False
    server_modified_at: Optional[datetime] = None

    def __post_init__(self):
        _normalize_timestamps(self, "modified_at", "cached_at", "server_modified_at")

    @property
    def key(self) -> Tuple[str, uuid.UUID]:
        return (self.entity_type, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "cached_at": format_timestamp(self.cached_at),
            "modified_at": format_timestamp(self.modified_at),
            "is_locally_modified": self.is_locally_modified,
            "server_modified_at": format_timestamp(self.server_modified_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> CachedItemMetadata:
        """Raises MetadataDecodeError when a required field is missing or malformed."""
        try:
            return cls(
                id=parse_uuid(_required(row, "id", "entity_id")),
                entity_type=str(_required(row, "entity_type")),
                entity_name=str(row.get("entity_name") or ""),
                cached_at=parse_timestamp(_required(row, "cached_at")),
                modified_at=parse_timestamp(_required(row, "modified_at")),
                is_locally_modified=bool(row.get("is_locally_modified", False)),
                server_modified_at=parse_timestamp(row.get("server_modified_at")),
            )
        except (TypeError, ValueError) as e:
            raise MetadataDecodeError(f"Malformed metadata row: {e}")


@dataclass(frozen=True)
class SyncConflict:
    """A local change that was overridden by the server during reconciliation."""
    entity_type: str
    entity_id: str
    entity_name: str
    local_modified_at: datetime
    server_modified_at: datetime
    resolution: ConflictResolution = ConflictResolution.SERVER_WINS
    resolved_at: datetime = field(default_factory=utc_now)
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self):
        _normalize_timestamps(self, "local_modified_at", "server_modified_at", "resolved_at")

    @property
    def server_is_newer(self) -> bool:
        return self.server_modified_at > self.local_modified_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "local_modified_at": format_timestamp(self.local_modified_at),
            "server_modified_at": format_timestamp(self.server_modified_at),
            "resolution": self.resolution.value,
            "resolved_at": format_timestamp(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> SyncConflict:
        try:
            return cls(
                id=parse_uuid(_required(row, "id")),
                entity_type=str(_required(row, "entity_type")),
                entity_id=str(_required(row, "entity_id")),
                entity_name=str(row.get("entity_name") or ""),
                local_modified_at=parse_timestamp(_required(row, "local_modified_at")),
                server_modified_at=parse_timestamp(_required(row, "server_modified_at")),
                resolution=ConflictResolution(row.get("resolution", "serverWins")),
                resolved_at=parse_timestamp(row.get("resolved_at")) or utc_now(),
            )
        except (TypeError, ValueError) as e:
            raise MetadataDecodeError(f"Malformed conflict row: {e}")


@dataclass(frozen=True)
class SyncResult:
    """Summary of one reconciliation cycle."""
    items_synced: int
    conflicts_found: int = 0
    conflicts_resolved: int = 0
    errors: Tuple[str, ...] = ()
    synced_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        _normalize_timestamps(self, "synced_at")

    @property
    def is_success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synced_at": format_timestamp(self.synced_at),
            "items_synced": self.items_synced,
            "conflicts_found": self.conflicts_found,
            "conflicts_resolved": self.conflicts_resolved,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> SyncResult:
        return cls(
            synced_at=parse_timestamp(row.get("synced_at")) or utc_now(),
            items_synced=int(row.get("items_synced", 0)),
            conflicts_found=int(row.get("conflicts_found", 0)),
            conflicts_resolved=int(row.get("conflicts_resolved", 0)),
            errors=tuple(row.get("errors") or ()),
        )


# =============================================================================
# SYNCHRONIZED ENTITIES
# =============================================================================
# from_dict accepts Supabase rows (snake_case DB columns) as well as the
# output of to_dict, which is what OfflineStorage persists.

@dataclass
class Course:
    id: uuid.UUID
    title: str
    subject: Optional[str] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _normalize_timestamps(self, "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "subject": self.subject,
            "status": self.status,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> Course:
        return cls(
            id=parse_uuid(row["id"]),
            title=row.get("title") or row.get("name") or "",
            subject=row.get("subject"),
            status=row.get("status"),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class Assignment:
    id: uuid.UUID
    title: str
    course_id: Optional[uuid.UUID] = None
    due_date: Optional[datetime] = None
    points: Optional[int] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _normalize_timestamps(self, "due_date", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "course_id": str(self.course_id) if self.course_id else None,
            "due_date": format_timestamp(self.due_date),
            "points": self.points,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> Assignment:
        points = row.get("points", row.get("max_points"))
        return cls(
            id=parse_uuid(row["id"]),
            title=row.get("title") or "",
            course_id=_optional_uuid(row.get("course_id")),
            due_date=parse_timestamp(row.get("due_date")),
            points=int(points) if points is not None else None,
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class GradeEntry:
    id: uuid.UUID
    course_name: str
    course_id: Optional[uuid.UUID] = None
    letter_grade: Optional[str] = None
    numeric_grade: Optional[float] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _normalize_timestamps(self, "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "course_name": self.course_name,
            "course_id": str(self.course_id) if self.course_id else None,
            "letter_grade": self.letter_grade,
            "numeric_grade": self.numeric_grade,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> GradeEntry:
        numeric = row.get("numeric_grade", row.get("percentage"))
        return cls(
            id=parse_uuid(row["id"]),
            course_name=row.get("course_name") or "",
            course_id=_optional_uuid(row.get("course_id")),
            letter_grade=row.get("letter_grade"),
            numeric_grade=float(numeric) if numeric is not None else None,
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class Conversation:
    id: uuid.UUID
    title: str
    last_message_date: Optional[datetime] = None
    course_id: Optional[uuid.UUID] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _normalize_timestamps(self, "last_message_date", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "title": self.title,
            "last_message_date": format_timestamp(self.last_message_date),
            "course_id": str(self.course_id) if self.course_id else None,
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> Conversation:
        return cls(
            id=parse_uuid(row["id"]),
            title=row.get("title") or row.get("subject") or "",
            last_message_date=parse_timestamp(
                row.get("last_message_date") or row.get("last_message_at")
            ),
            course_id=_optional_uuid(row.get("course_id")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )
