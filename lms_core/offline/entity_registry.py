# =============================================================================
# lms_core/offline/entity_registry.py
# Synchronized entity collections
# =============================================================================

from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from lms_core.offline.models import Assignment, Conversation, Course, GradeEntry, parse_timestamp


@dataclass(frozen=True)
class EntityCollection:
    """
    Describes one entity collection kept in the offline cache.

    timestamp_fields lists the entity attributes that carry an authoritative
    server modification time, in order of preference.
    """
    entity_type: str
    label: str
    model: type
    name_field: str
    timestamp_fields: Tuple[str, ...] = ("updated_at",)
    default_table: Optional[str] = None

    def entity_id(self, entity: Any) -> uuid.UUID:
        return entity.id

    def entity_name(self, entity: Any) -> str:
        return getattr(entity, self.name_field, "") or ""

    def server_timestamp(self, entity: Any) -> Optional[datetime]:
        """First non-empty authoritative timestamp, or None if the entity has none."""
        for name in self.timestamp_fields:
            value = getattr(entity, name, None)
            if value is not None:
                return parse_timestamp(value)
        return None

    def decode(self, row: Dict[str, Any]) -> Any:
        return self.model.from_dict(row)

    def encode(self, entity: Any) -> Dict[str, Any]:
        return entity.to_dict()


DEFAULT_COLLECTIONS: Tuple[EntityCollection, ...] = (
    EntityCollection("course", "Courses", Course, "title", default_table="courses"),
    EntityCollection("assignment", "Assignments", Assignment, "title", default_table="assignments"),
    EntityCollection("grade", "Grades", GradeEntry, "course_name", default_table="grades"),
    EntityCollection(
        "conversation",
        "Conversations",
        Conversation,
        "title",
        timestamp_fields=("last_message_date", "updated_at"),
        default_table="conversations",
    ),
)


def collections_by_type(
    collections: Iterable[EntityCollection] = DEFAULT_COLLECTIONS,
) -> Dict[str, EntityCollection]:
    return {collection.entity_type: collection for collection in collections}


def get_collection(entity_type: str) -> EntityCollection:
    """Look up a default collection; KeyError for unknown types."""
    return collections_by_type()[entity_type]
