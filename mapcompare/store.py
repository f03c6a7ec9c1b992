"""Persistence store collaborator: keyed reads/writes for the engine's records."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, Sequence
from uuid import uuid4

import yaml

from mapcompare.models import (
    Comparison,
    ComparisonMode,
    ComparisonResult,
    ConceptMap,
    Permission,
    Topic,
)

logger = logging.getLogger(__name__)


class Store(Protocol):
    """What the engine needs from persistence. Records are keyed by id."""

    def get_topic(self, topic_id: str) -> Topic | None: ...
    def get_map(self, map_id: str) -> ConceptMap | None: ...
    def maps_by_topic(self, topic_id: str) -> list[ConceptMap]: ...
    def maps_by_owner(self, owner_id: str) -> list[ConceptMap]: ...

    def create_comparison(
        self,
        mode: ComparisonMode,
        topic_id: str,
        map_ids: Sequence[str],
        created_by: str,
        results: Sequence[ComparisonResult],
    ) -> Comparison: ...
    def get_comparison(self, comparison_id: str) -> Comparison | None: ...
    def comparisons_by_topic(self, topic_id: str) -> list[Comparison]: ...
    def comparisons_by_creator(self, user_id: str) -> list[Comparison]: ...

    def get_permission(self, comparison_id: str, student_id: str) -> Permission | None: ...
    def add_permission(self, permission: Permission) -> Permission: ...
    def delete_permission(self, comparison_id: str, student_id: str) -> None: ...
    def permissions_by_comparison(self, comparison_id: str) -> list[Permission]: ...
    def permissions_by_student(self, student_id: str) -> list[Permission]: ...


class InMemoryStore:
    """Dict-backed store. Permissions are kept sparse: only grants exist."""

    def __init__(self):
        self.topics: dict[str, Topic] = {}
        self.maps: dict[str, ConceptMap] = {}
        self.comparisons: dict[str, Comparison] = {}
        self.permissions: dict[tuple[str, str], Permission] = {}

    # Topics and maps

    def save_topic(self, topic: Topic) -> Topic:
        self.topics[topic.id] = topic
        return topic

    def get_topic(self, topic_id: str) -> Topic | None:
        return self.topics.get(topic_id)

    def save_map(self, concept_map: ConceptMap) -> ConceptMap:
        self.maps[concept_map.id] = concept_map
        return concept_map

    def get_map(self, map_id: str) -> ConceptMap | None:
        return self.maps.get(map_id)

    def maps_by_topic(self, topic_id: str) -> list[ConceptMap]:
        return [m for m in self.maps.values() if m.topic_id == topic_id]

    def maps_by_owner(self, owner_id: str) -> list[ConceptMap]:
        return [m for m in self.maps.values() if m.owner_id == owner_id]

    # Comparisons (append-only)

    def create_comparison(
        self,
        mode: ComparisonMode,
        topic_id: str,
        map_ids: Sequence[str],
        created_by: str,
        results: Sequence[ComparisonResult],
    ) -> Comparison:
        comparison = Comparison(
            id=uuid4().hex,
            mode=mode,
            topic_id=topic_id,
            map_ids=tuple(map_ids),
            created_by=created_by,
            results=tuple(results),
            created_at=datetime.now(timezone.utc),
        )
        self.comparisons[comparison.id] = comparison
        return comparison

    def get_comparison(self, comparison_id: str) -> Comparison | None:
        return self.comparisons.get(comparison_id)

    def comparisons_by_topic(self, topic_id: str) -> list[Comparison]:
        return [c for c in self.comparisons.values() if c.topic_id == topic_id]

    def comparisons_by_creator(self, user_id: str) -> list[Comparison]:
        return [c for c in self.comparisons.values() if c.created_by == user_id]

    # Permissions

    def get_permission(self, comparison_id: str, student_id: str) -> Permission | None:
        return self.permissions.get((comparison_id, student_id))

    def add_permission(self, permission: Permission) -> Permission:
        """Insert unless a grant already exists; return whichever is stored."""
        key = (permission.comparison_id, permission.student_id)
        return self.permissions.setdefault(key, permission)

    def delete_permission(self, comparison_id: str, student_id: str) -> None:
        self.permissions.pop((comparison_id, student_id), None)

    def permissions_by_comparison(self, comparison_id: str) -> list[Permission]:
        return [p for p in self.permissions.values() if p.comparison_id == comparison_id]

    def permissions_by_student(self, student_id: str) -> list[Permission]:
        return [p for p in self.permissions.values() if p.student_id == student_id]


def load_workspace(path: Path) -> InMemoryStore:
    """Load topics and maps from a YAML (or JSON) workspace file.

    Expected layout:

        topics:
          - id: photosynthesis
            name: Photosynthesis
        maps:
          - id: ref
            topic_id: photosynthesis
            owner_id: instr-1
            is_reference: true
            nodes:
              - {id: A, label: light, category: subject}
            links: []
    """
    data = yaml.safe_load(Path(path).read_text()) or {}

    store = InMemoryStore()
    for topic_data in data.get("topics") or []:
        store.save_topic(Topic(**topic_data))
    for map_data in data.get("maps") or []:
        store.save_map(ConceptMap(**map_data))

    logger.info(
        "Loaded workspace %s: %d topics, %d maps",
        path, len(store.topics), len(store.maps),
    )
    return store
