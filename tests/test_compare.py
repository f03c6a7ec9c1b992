"""Tests for the comparison orchestration service."""

import asyncio

import pytest

from mapcompare.compare import ComparisonService
from mapcompare.errors import (
    ComparisonNotFound,
    MapNotFound,
    NoMapsSelected,
    NormalizationUnavailable,
    PermissionDenied,
    TopicMismatch,
)
from mapcompare.models import Caller, ComparisonMode, ConceptMap, Role, Topic
from mapcompare.store import InMemoryStore
from mapcompare.vocabulary import StaticVocabularyAdjuster

INSTRUCTOR = Caller(user_id="instr-1", role=Role.INSTRUCTOR)
OTHER_INSTRUCTOR = Caller(user_id="instr-2", role=Role.INSTRUCTOR)
LEARNER = Caller(user_id="s-1", role=Role.LEARNER)


def _cmap(map_id, topic_id, labels, is_reference=False, owner="s-1"):
    """Build a map from (label, category) pairs, linking each action to the node before it."""
    nodes = [
        {"id": f"{map_id}-n{i}", "label": label, "category": category}
        for i, (label, category) in enumerate(labels)
    ]
    links = [
        {
            "id": f"{map_id}-l{i}",
            "source_node_id": nodes[i]["id"],
            "target_node_id": nodes[i - 1]["id"],
            "semantic_role": "agent",
            "relationship": "does",
        }
        for i in range(1, len(nodes))
        if nodes[i]["category"] == "action"
    ]
    return ConceptMap(
        id=map_id,
        topic_id=topic_id,
        owner_id=owner,
        is_reference=is_reference,
        nodes=nodes,
        links=links,
    )


@pytest.fixture
def store():
    store = InMemoryStore()
    store.save_topic(Topic(id="t1", name="Photosynthesis"))
    store.save_topic(Topic(id="t2", name="Erosion"))
    store.save_map(_cmap("ref", "t1", [("plant", "subject"), ("absorb", "action"), ("light", "subject")],
                         is_reference=True, owner="instr-1"))
    store.save_map(_cmap("s1", "t1", [("plant", "subject"), ("absorb", "action")], owner="s-1"))
    store.save_map(_cmap("s2", "t1", [("tree", "subject"), ("absorb", "action")], owner="s-2"))
    store.save_map(_cmap("s3", "t1", [("sunlight", "subject")], owner="s-3"))
    store.save_map(_cmap("other", "t2", [("rock", "subject")], owner="s-1"))
    return store


class SlowAdjuster(StaticVocabularyAdjuster):
    """Records how many adjust calls overlap."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def adjust_map_vocabulary(self, nodes, links, reference_nodes=None, reference_links=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().adjust_map_vocabulary(nodes, links, reference_nodes, reference_links)
        finally:
            self.in_flight -= 1


class FailingAdjuster(StaticVocabularyAdjuster):
    """Fails on the n-th map adjustment."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on

    async def adjust_map_vocabulary(self, nodes, links, reference_nodes=None, reference_links=None):
        result = await super().adjust_map_vocabulary(nodes, links, reference_nodes, reference_links)
        if self.map_calls == self.fail_on:
            raise NormalizationUnavailable("Normalization service unreachable", reason="connection_failed")
        return result


class RecordingAdjuster(StaticVocabularyAdjuster):
    def __init__(self):
        super().__init__()
        self.references = []

    async def adjust_map_vocabulary(self, nodes, links, reference_nodes=None, reference_links=None):
        self.references.append(None if reference_nodes is None else [n.label for n in reference_nodes])
        return await super().adjust_map_vocabulary(nodes, links, reference_nodes, reference_links)


class TestCreationModes:
    @pytest.mark.asyncio
    async def test_pair(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        comparison = await service.pair(INSTRUCTOR, "t1", "s1", "s2")

        assert comparison.mode == ComparisonMode.PAIR
        assert comparison.map_ids == ("s1", "s2")
        assert comparison.created_by == "instr-1"
        assert len(comparison.results) == 1
        assert store.get_comparison(comparison.id) == comparison

    @pytest.mark.asyncio
    async def test_reference_to_all(self, store):
        """The reference is map 1 of every result; each learner map gets one result."""
        adjuster = StaticVocabularyAdjuster()
        service = ComparisonService(store, adjuster)

        comparison = await service.reference_to_all(INSTRUCTOR, "t1", "ref")

        assert comparison.map_ids == ("ref", "s1", "s2", "s3")
        assert [r.map1_id for r in comparison.results] == ["ref", "ref", "ref"]
        assert [r.map2_id for r in comparison.results] == ["s1", "s2", "s3"]
        assert adjuster.map_calls == 6

    @pytest.mark.asyncio
    async def test_reference_vocabulary_targets_both_sides(self, store):
        adjuster = RecordingAdjuster()
        service = ComparisonService(store, adjuster)

        await service.reference_to_all(INSTRUCTOR, "t1", "ref")

        assert adjuster.references == [["plant", "absorb", "light"]] * 6

    @pytest.mark.asyncio
    async def test_all_vs_all(self, store):
        """Three learner maps give three pairs; the reference map is left out."""
        service = ComparisonService(store, StaticVocabularyAdjuster())

        comparison = await service.all_vs_all(INSTRUCTOR, "t1")

        assert comparison.map_ids == ("s1", "s2", "s3")
        assert [(r.map1_id, r.map2_id) for r in comparison.results] == [
            ("s1", "s2"), ("s1", "s3"), ("s2", "s3"),
        ]

    @pytest.mark.asyncio
    async def test_partial_subset(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        comparison = await service.partial_subset(INSTRUCTOR, "t1", ["s3", "ref", "s1"])

        assert comparison.map_ids == ("s3", "ref", "s1")
        assert [(r.map1_id, r.map2_id) for r in comparison.results] == [
            ("s3", "ref"), ("s3", "s1"), ("ref", "s1"),
        ]

    @pytest.mark.asyncio
    async def test_partial_subset_ignores_duplicate_ids(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        comparison = await service.partial_subset(INSTRUCTOR, "t1", ["s1", "s2", "s1"])

        assert comparison.map_ids == ("s1", "s2")
        assert len(comparison.results) == 1


class TestValidation:
    @pytest.mark.asyncio
    async def test_topic_mismatch_persists_nothing(self, store):
        """A map from another topic fails the request before any normalization call."""
        adjuster = StaticVocabularyAdjuster()
        service = ComparisonService(store, adjuster)

        with pytest.raises(TopicMismatch) as exc_info:
            await service.partial_subset(INSTRUCTOR, "t1", ["s1", "s2", "other"])

        assert exc_info.value.details["map_id"] == "other"
        assert exc_info.value.details["map_topic_id"] == "t2"
        assert adjuster.map_calls == 0
        assert store.comparisons == {}

    @pytest.mark.asyncio
    async def test_pair_topic_mismatch(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(TopicMismatch):
            await service.pair(INSTRUCTOR, "t1", "s1", "other")

    @pytest.mark.asyncio
    async def test_partial_subset_needs_two_maps(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(NoMapsSelected) as exc_info:
            await service.partial_subset(INSTRUCTOR, "t1", ["s1"])

        assert exc_info.value.details["required"] == 2
        assert exc_info.value.details["actual"] == 1

    @pytest.mark.asyncio
    async def test_reference_to_all_without_learner_maps(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())
        store.save_map(_cmap("ref2", "t2", [("rock", "subject")], is_reference=True, owner="instr-1"))
        del store.maps["other"]

        with pytest.raises(NoMapsSelected) as exc_info:
            await service.reference_to_all(INSTRUCTOR, "t2", "ref2")

        assert exc_info.value.details["actual"] == 0

    @pytest.mark.asyncio
    async def test_all_vs_all_needs_two_learner_maps(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(NoMapsSelected):
            await service.all_vs_all(INSTRUCTOR, "t2")

    @pytest.mark.asyncio
    async def test_pair_with_same_map_twice(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(NoMapsSelected):
            await service.pair(INSTRUCTOR, "t1", "s1", "s1")

    @pytest.mark.asyncio
    async def test_unknown_map(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(MapNotFound) as exc_info:
            await service.pair(INSTRUCTOR, "t1", "s1", "nope")

        assert exc_info.value.details["map_id"] == "nope"

    @pytest.mark.asyncio
    async def test_learner_cannot_create(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(PermissionDenied):
            await service.all_vs_all(LEARNER, "t1")

        assert store.comparisons == {}

    def test_max_concurrent_must_be_positive(self, store):
        with pytest.raises(ValueError):
            ComparisonService(store, StaticVocabularyAdjuster(), max_concurrent=0)


class TestExecution:
    @pytest.mark.asyncio
    async def test_normalization_failure_aborts_request(self, store):
        """One failed adjustment fails the whole request; nothing is saved."""
        service = ComparisonService(store, FailingAdjuster(fail_on=3))

        with pytest.raises(NormalizationUnavailable):
            await service.all_vs_all(INSTRUCTOR, "t1")

        assert store.comparisons == {}

    @pytest.mark.asyncio
    async def test_failure_cancels_outstanding_adjustments(self, store):
        """No adjustment is still running once a failed request returns."""

        class FailFastAdjuster(StaticVocabularyAdjuster):
            def __init__(self):
                super().__init__()
                self.in_flight = 0
                self.cancelled = 0

            async def adjust_map_vocabulary(self, nodes, links, reference_nodes=None, reference_links=None):
                self.map_calls += 1
                if self.map_calls == 1:
                    raise NormalizationUnavailable("Normalization service unreachable", reason="connection_failed")
                self.in_flight += 1
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    self.cancelled += 1
                    raise
                finally:
                    self.in_flight -= 1

        adjuster = FailFastAdjuster()
        service = ComparisonService(store, adjuster, max_concurrent=6)

        with pytest.raises(NormalizationUnavailable):
            await service.all_vs_all(INSTRUCTOR, "t1")

        assert adjuster.in_flight == 0
        assert adjuster.cancelled == adjuster.map_calls - 1
        assert store.comparisons == {}

    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self, store):
        """In-flight adjuster calls never exceed max_concurrent."""
        adjuster = SlowAdjuster()
        service = ComparisonService(store, adjuster, max_concurrent=2)

        await service.all_vs_all(INSTRUCTOR, "t1")

        assert adjuster.map_calls == 6
        assert adjuster.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_results_follow_enumeration_order_under_concurrency(self, store):
        service = ComparisonService(store, SlowAdjuster(), max_concurrent=3)

        comparison = await service.reference_to_all(INSTRUCTOR, "t1", "ref")

        assert [r.map2_id for r in comparison.results] == ["s1", "s2", "s3"]

    @pytest.mark.asyncio
    async def test_results_are_snapshots(self, store):
        """Editing a map after creation does not change the stored comparison."""
        service = ComparisonService(store, StaticVocabularyAdjuster())
        comparison = await service.pair(INSTRUCTOR, "t1", "s1", "s2")
        before = comparison.model_dump()

        store.maps["s1"].nodes[0].label = "shrub"
        store.save_map(store.maps["s1"].without_node("s1-n1"))

        assert store.get_comparison(comparison.id).model_dump() == before
        assert [a.original_label for a in comparison.results[0].adjusted_nodes1] == ["plant", "absorb"]

    @pytest.mark.asyncio
    async def test_edit_during_run_does_not_leak(self, store):
        """Maps are copied before normalization starts."""

        class EditingAdjuster(StaticVocabularyAdjuster):
            async def adjust_map_vocabulary(self, nodes, links, reference_nodes=None, reference_links=None):
                store.maps["s2"].nodes[0].label = "changed"
                return await super().adjust_map_vocabulary(nodes, links, reference_nodes, reference_links)

        service = ComparisonService(store, EditingAdjuster())

        comparison = await service.pair(INSTRUCTOR, "t1", "s1", "s2")

        assert comparison.results[0].adjusted_nodes2[0].original_label == "tree"


class TestScenario:
    @pytest.mark.asyncio
    async def test_reference_vs_learner_end_to_end(self):
        store = InMemoryStore()
        store.save_topic(Topic(id="t1", name="Photosynthesis"))
        store.save_map(_cmap("ref", "t1", [("light", "subject"), ("absorb", "action")],
                             is_reference=True, owner="instr-1"))
        store.save_map(_cmap("stu", "t1", [("sunlight", "subject"), ("absorb", "action")]))
        service = ComparisonService(store, StaticVocabularyAdjuster({"sunlight": "light"}))

        comparison = await service.reference_to_all(INSTRUCTOR, "t1", "ref")

        (result,) = comparison.results
        assert ("ref-n0", "stu-n0") in [(m.node1_id, m.node2_id) for m in result.matched_nodes]
        assert result.similarity_score == 1.0
        assert result.unique_nodes_map1 == ()
        assert result.unique_nodes_map2 == ()


class TestReads:
    @pytest.mark.asyncio
    async def test_get_comparison_respects_gate(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())
        comparison = await service.pair(INSTRUCTOR, "t1", "s1", "s2")

        assert service.get_comparison(comparison.id, INSTRUCTOR) == comparison
        assert service.get_comparison(comparison.id, OTHER_INSTRUCTOR) == comparison
        with pytest.raises(PermissionDenied):
            service.get_comparison(comparison.id, LEARNER)

        service.gate.grant(comparison.id, "s-1", INSTRUCTOR)
        assert service.get_comparison(comparison.id, LEARNER) == comparison

    def test_get_unknown_comparison(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())

        with pytest.raises(ComparisonNotFound):
            service.get_comparison("missing", INSTRUCTOR)

    @pytest.mark.asyncio
    async def test_comparisons_for_topic_filters_by_access(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())
        first = await service.pair(INSTRUCTOR, "t1", "s1", "s2")
        await service.pair(INSTRUCTOR, "t1", "s2", "s3")
        service.gate.grant(first.id, "s-1", INSTRUCTOR)

        assert len(service.comparisons_for_topic("t1", INSTRUCTOR)) == 2
        assert [c.id for c in service.comparisons_for_topic("t1", LEARNER)] == [first.id]

    @pytest.mark.asyncio
    async def test_accessible_comparisons(self, store):
        service = ComparisonService(store, StaticVocabularyAdjuster())
        shared = await service.pair(INSTRUCTOR, "t1", "s1", "s2")
        await service.pair(INSTRUCTOR, "t1", "s2", "s3")

        assert service.accessible_comparisons(LEARNER) == []

        service.gate.grant(shared.id, "s-1", INSTRUCTOR)

        assert [c.id for c in service.accessible_comparisons(LEARNER)] == [shared.id]
        assert len(service.accessible_comparisons(INSTRUCTOR)) == 2
