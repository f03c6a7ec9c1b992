"""Comparison orchestration - one creation operation per comparison mode.

Every operation resolves and topic-checks all maps before the first
normalization call, runs adjust-then-match per pair with bounded
concurrency, and persists a single Comparison only when every pair
succeeded. Any failure aborts the whole request.
"""

import asyncio
import logging
from itertools import combinations
from typing import Sequence

from mapcompare.errors import (
    ComparisonNotFound,
    MapNotFound,
    NoMapsSelected,
    PermissionDenied,
    TopicMismatch,
)
from mapcompare.matcher import compare_maps
from mapcompare.models import Caller, Comparison, ComparisonMode, ComparisonResult, ConceptMap
from mapcompare.permissions import PermissionGate
from mapcompare.store import Store
from mapcompare.vocabulary import VocabularyAdjuster

logger = logging.getLogger(__name__)

# Max concurrent normalization calls per request
DEFAULT_MAX_CONCURRENT = 4


class ComparisonService:
    """Creates and reads Comparison aggregates.

    Args:
        store: Persistence collaborator
        adjuster: Vocabulary adjuster used for every participating map
        gate: Permission gate consulted on reads (built from store if omitted)
        max_concurrent: Upper bound on in-flight adjuster calls per request
    """

    def __init__(
        self,
        store: Store,
        adjuster: VocabularyAdjuster,
        gate: PermissionGate | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.adjuster = adjuster
        self.gate = gate or PermissionGate(store)
        self.max_concurrent = max_concurrent

    # Creation

    async def pair(self, caller: Caller, topic_id: str, map_id1: str, map_id2: str) -> Comparison:
        """Compare exactly two maps of a topic."""
        self._require_instructor(caller)
        if map_id1 == map_id2:
            raise NoMapsSelected(
                "Two different maps are required for a pair comparison",
                mode=ComparisonMode.PAIR.value,
                required=2,
                actual=1,
            )
        map1, map2 = self._resolve_maps([map_id1, map_id2], topic_id)

        results = await self._run_pairs([(map1, map2)])
        return self._save(caller, ComparisonMode.PAIR, topic_id, [map1.id, map2.id], results)

    async def reference_to_all(
        self, caller: Caller, topic_id: str, reference_map_id: str
    ) -> Comparison:
        """Compare a reference map against every learner map of the topic.

        The reference is always map 1 of each result, and its vocabulary is
        the normalization target for both sides.
        """
        self._require_instructor(caller)
        (reference,) = self._resolve_maps([reference_map_id], topic_id)

        students = [
            m.model_copy(deep=True)
            for m in self.store.maps_by_topic(topic_id)
            if not m.is_reference and m.id != reference.id
        ]
        if not students:
            raise NoMapsSelected(
                "No learner maps found for comparison",
                mode=ComparisonMode.REFERENCE_TO_ALL.value,
                required=1,
                actual=0,
            )
        self._check_topic(students, topic_id)

        results = await self._run_pairs([(reference, s) for s in students], reference=reference)
        map_ids = [reference.id] + [s.id for s in students]
        return self._save(caller, ComparisonMode.REFERENCE_TO_ALL, topic_id, map_ids, results)

    async def all_vs_all(self, caller: Caller, topic_id: str) -> Comparison:
        """Compare every pair of learner maps in the topic."""
        self._require_instructor(caller)
        maps = [
            m.model_copy(deep=True)
            for m in self.store.maps_by_topic(topic_id)
            if not m.is_reference
        ]
        if len(maps) < 2:
            raise NoMapsSelected(
                "At least 2 learner maps required for comparison",
                mode=ComparisonMode.ALL_VS_ALL.value,
                required=2,
                actual=len(maps),
            )
        self._check_topic(maps, topic_id)

        results = await self._run_pairs(list(combinations(maps, 2)))
        return self._save(caller, ComparisonMode.ALL_VS_ALL, topic_id, [m.id for m in maps], results)

    async def partial_subset(
        self, caller: Caller, topic_id: str, map_ids: Sequence[str]
    ) -> Comparison:
        """Compare every pair among an explicit selection of maps."""
        self._require_instructor(caller)
        unique_ids = list(dict.fromkeys(map_ids))
        if len(unique_ids) < 2:
            raise NoMapsSelected(
                "At least 2 maps required for comparison",
                mode=ComparisonMode.PARTIAL_SUBSET.value,
                required=2,
                actual=len(unique_ids),
            )
        maps = self._resolve_maps(unique_ids, topic_id)

        results = await self._run_pairs(list(combinations(maps, 2)))
        return self._save(caller, ComparisonMode.PARTIAL_SUBSET, topic_id, unique_ids, results)

    # Reads

    def get_comparison(self, comparison_id: str, caller: Caller) -> Comparison:
        comparison = self.store.get_comparison(comparison_id)
        if comparison is None:
            raise ComparisonNotFound(
                f"Comparison not found: {comparison_id}",
                comparison_id=comparison_id,
            )
        if not self.gate.can_view(comparison_id, caller.user_id, caller.role):
            raise PermissionDenied(
                "You do not have permission to view this comparison",
                reason="view_denied",
                comparison_id=comparison_id,
            )
        return comparison

    def comparisons_for_topic(self, topic_id: str, caller: Caller) -> list[Comparison]:
        return [
            c for c in self.store.comparisons_by_topic(topic_id)
            if self.gate.can_view(c.id, caller.user_id, caller.role)
        ]

    def accessible_comparisons(self, caller: Caller) -> list[Comparison]:
        """Comparisons the caller created or was granted, newest first."""
        found = {c.id: c for c in self.store.comparisons_by_creator(caller.user_id)}
        for permission in self.store.permissions_by_student(caller.user_id):
            comparison = self.store.get_comparison(permission.comparison_id)
            if comparison is not None:
                found[comparison.id] = comparison
        return sorted(found.values(), key=lambda c: c.created_at, reverse=True)

    # Internals

    def _require_instructor(self, caller: Caller):
        if not caller.is_instructor:
            raise PermissionDenied(
                "Only instructors can create comparisons",
                reason="instructor_required",
                user_id=caller.user_id,
            )

    def _resolve_maps(self, map_ids: Sequence[str], topic_id: str) -> list[ConceptMap]:
        # Snapshot copies so later map edits never reach this comparison
        maps = []
        for map_id in map_ids:
            concept_map = self.store.get_map(map_id)
            if concept_map is None:
                raise MapNotFound(f"Map not found: {map_id}", map_id=map_id)
            maps.append(concept_map.model_copy(deep=True))
        self._check_topic(maps, topic_id)
        return maps

    def _check_topic(self, maps: Sequence[ConceptMap], topic_id: str):
        for concept_map in maps:
            if concept_map.topic_id != topic_id:
                raise TopicMismatch(
                    f"Map {concept_map.id} does not belong to topic {topic_id}",
                    map_id=concept_map.id,
                    map_topic_id=concept_map.topic_id,
                    expected_topic_id=topic_id,
                )

    async def _run_pairs(
        self,
        pairs: Sequence[tuple[ConceptMap, ConceptMap]],
        reference: ConceptMap | None = None,
    ) -> list[ComparisonResult]:
        """Adjust and match every pair; results keep enumeration order."""
        semaphore = asyncio.Semaphore(self.max_concurrent)
        total = len(pairs)

        async def adjust(concept_map: ConceptMap):
            async with semaphore:
                return await self.adjuster.adjust_map_vocabulary(
                    concept_map.nodes,
                    concept_map.links,
                    reference.nodes if reference else None,
                    reference.links if reference else None,
                )

        async def process_pair(num: int, map1: ConceptMap, map2: ConceptMap) -> ComparisonResult:
            adj1, adj2 = await _gather_or_cancel([adjust(map1), adjust(map2)])
            result = compare_maps(map1, adj1, map2, adj2)
            logger.debug(
                "[%d/%d] %s vs %s: score %.3f",
                num, total, map1.id, map2.id, result.similarity_score,
            )
            return result

        return await _gather_or_cancel(
            [process_pair(i + 1, m1, m2) for i, (m1, m2) in enumerate(pairs)]
        )

    def _save(
        self,
        caller: Caller,
        mode: ComparisonMode,
        topic_id: str,
        map_ids: Sequence[str],
        results: Sequence[ComparisonResult],
    ) -> Comparison:
        comparison = self.store.create_comparison(
            mode=mode,
            topic_id=topic_id,
            map_ids=map_ids,
            created_by=caller.user_id,
            results=results,
        )
        logger.info(
            "Created %s comparison %s over %d maps (%d results)",
            mode.value, comparison.id, len(map_ids), len(results),
        )
        return comparison


async def _gather_or_cancel(coros) -> list:
    """Run coroutines concurrently; on the first failure cancel and await the rest."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
