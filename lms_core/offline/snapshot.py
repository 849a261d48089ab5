# =============================================================================
# lms_core/offline/snapshot.py
# Authoritative server snapshot passed into a reconciliation cycle
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class ServerSnapshot:
    """
    Freshly fetched server state, grouped by entity type.

    collections holds the entity lists that were fetched successfully.
    failures maps an entity type to the error message for a failed fetch;
    such types are left untouched by reconciliation.
    """
    collections: Dict[str, List[Any]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_lists(
        cls,
        courses: Optional[Sequence[Any]] = None,
        assignments: Optional[Sequence[Any]] = None,
        grades: Optional[Sequence[Any]] = None,
        conversations: Optional[Sequence[Any]] = None,
    ) -> ServerSnapshot:
        """Build a snapshot from the four standard LMS collections."""
        snapshot = cls()
        for entity_type, items in (
            ("course", courses),
            ("assignment", assignments),
            ("grade", grades),
            ("conversation", conversations),
        ):
            snapshot.collections[entity_type] = list(items or [])
        return snapshot

    def add(self, entity_type: str, items: Sequence[Any]) -> None:
        self.collections[entity_type] = list(items)
        self.failures.pop(entity_type, None)

    def fail(self, entity_type: str, message: str) -> None:
        self.failures[entity_type] = message
        self.collections.pop(entity_type, None)

    def has(self, entity_type: str) -> bool:
        return entity_type in self.collections

    def items(self, entity_type: str) -> List[Any]:
        return self.collections.get(entity_type, [])

    @property
    def total_items(self) -> int:
        return sum(len(items) for items in self.collections.values())
