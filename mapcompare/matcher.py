"""Greedy matching of nodes and links between two adjusted concept maps.

The matcher is a deliberate first-fit heuristic, not a globally optimal
assignment: for each element of map 1 (in map order) the first unconsumed
element of map 2 (in map order) that satisfies the match rule wins. Keeping
this order stable is what makes results reproducible.
"""

from dataclasses import dataclass, field
from typing import Sequence

from mapcompare.models import (
    ComparisonResult,
    ConceptMap,
    Link,
    LinkMatch,
    MapAdjustment,
    Node,
    NodeMatch,
)


@dataclass
class MatchOutcome:
    """Matched pairs plus the elements of each side left unmatched."""

    matched_nodes: list[NodeMatch] = field(default_factory=list)
    matched_links: list[LinkMatch] = field(default_factory=list)
    unique_nodes1: list[str] = field(default_factory=list)
    unique_nodes2: list[str] = field(default_factory=list)
    unique_links1: list[str] = field(default_factory=list)
    unique_links2: list[str] = field(default_factory=list)


def _same_text(a: str, b: str) -> bool:
    return a.strip().casefold() == b.strip().casefold()


def match_nodes(
    nodes1: Sequence[Node],
    adj1: MapAdjustment,
    nodes2: Sequence[Node],
    adj2: MapAdjustment,
) -> list[NodeMatch]:
    """Pair nodes with equal adjusted labels and equal grammatical category."""
    by_id1 = {n.id: n for n in nodes1}
    by_id2 = {n.id: n for n in nodes2}
    used1: set[str] = set()
    used2: set[str] = set()
    matches = []

    for a1 in adj1.nodes:
        node1 = by_id1.get(a1.node_id)
        if node1 is None or a1.node_id in used1:
            continue
        for a2 in adj2.nodes:
            if a2.node_id in used2:
                continue
            node2 = by_id2.get(a2.node_id)
            if node2 is None or node2.category != node1.category:
                continue
            if not _same_text(a1.adjusted_label, a2.adjusted_label):
                continue
            matches.append(
                NodeMatch(
                    node1_id=a1.node_id,
                    node2_id=a2.node_id,
                    original_label1=a1.original_label,
                    original_label2=a2.original_label,
                    adjusted_label=a1.adjusted_label,
                    similarity=min(a1.confidence, a2.confidence),
                )
            )
            used1.add(a1.node_id)
            used2.add(a2.node_id)
            break

    return matches


def match_links(
    links1: Sequence[Link],
    adj1: MapAdjustment,
    links2: Sequence[Link],
    adj2: MapAdjustment,
    node_matches: Sequence[NodeMatch],
) -> list[LinkMatch]:
    """Pair links with equal role and adjusted relationship text.

    A link pair also needs one confirmed endpoint: both sources, or both
    targets, must be matched nodes of their maps. They need not be matched
    to each other, and one endpoint is enough.
    """
    by_id1 = {lk.id: lk for lk in links1}
    by_id2 = {lk.id: lk for lk in links2}
    matched1 = {m.node1_id for m in node_matches}
    matched2 = {m.node2_id for m in node_matches}
    used1: set[str] = set()
    used2: set[str] = set()
    matches = []

    for a1 in adj1.links:
        link1 = by_id1.get(a1.link_id)
        if link1 is None or a1.link_id in used1:
            continue
        for a2 in adj2.links:
            if a2.link_id in used2:
                continue
            link2 = by_id2.get(a2.link_id)
            if link2 is None or link2.semantic_role != link1.semantic_role:
                continue
            if not _same_text(a1.adjusted_relationship, a2.adjusted_relationship):
                continue
            sources = link1.source_node_id in matched1 and link2.source_node_id in matched2
            targets = link1.target_node_id in matched1 and link2.target_node_id in matched2
            if not (sources or targets):
                continue
            matches.append(
                LinkMatch(
                    link1_id=a1.link_id,
                    link2_id=a2.link_id,
                    original_relationship1=a1.original_relationship,
                    original_relationship2=a2.original_relationship,
                    adjusted_relationship=a1.adjusted_relationship,
                    similarity=min(a1.confidence, a2.confidence),
                )
            )
            used1.add(a1.link_id)
            used2.add(a2.link_id)
            break

    return matches


def match(
    nodes1: Sequence[Node],
    links1: Sequence[Link],
    adj1: MapAdjustment,
    nodes2: Sequence[Node],
    links2: Sequence[Link],
    adj2: MapAdjustment,
) -> MatchOutcome:
    """Match two maps; unmatched ids (in map order) form the unique sets."""
    node_matches = match_nodes(nodes1, adj1, nodes2, adj2)
    link_matches = match_links(links1, adj1, links2, adj2, node_matches)

    matched_n1 = {m.node1_id for m in node_matches}
    matched_n2 = {m.node2_id for m in node_matches}
    matched_l1 = {m.link1_id for m in link_matches}
    matched_l2 = {m.link2_id for m in link_matches}

    return MatchOutcome(
        matched_nodes=node_matches,
        matched_links=link_matches,
        unique_nodes1=[n.id for n in nodes1 if n.id not in matched_n1],
        unique_nodes2=[n.id for n in nodes2 if n.id not in matched_n2],
        unique_links1=[lk.id for lk in links1 if lk.id not in matched_l1],
        unique_links2=[lk.id for lk in links2 if lk.id not in matched_l2],
    )


def score(matched: int, total: int) -> float:
    """Similarity score: ``2 * matched / total``.

    Args:
        matched: Matched node pairs plus matched link pairs
        total: Nodes and links of both maps combined

    Returns:
        Score in [0, 1]; 1.0 when both maps are empty
    """
    if total <= 0:
        return 1.0
    return min(1.0, max(0.0, 2 * matched / total))


def compare_maps(
    map1: ConceptMap,
    adj1: MapAdjustment,
    map2: ConceptMap,
    adj2: MapAdjustment,
) -> ComparisonResult:
    """Match two maps and package the outcome as a ComparisonResult."""
    outcome = match(map1.nodes, map1.links, adj1, map2.nodes, map2.links, adj2)
    total = len(map1.nodes) + len(map2.nodes) + len(map1.links) + len(map2.links)

    return ComparisonResult(
        map1_id=map1.id,
        map2_id=map2.id,
        similarity_score=score(len(outcome.matched_nodes) + len(outcome.matched_links), total),
        matched_nodes=tuple(outcome.matched_nodes),
        matched_links=tuple(outcome.matched_links),
        unique_nodes_map1=tuple(outcome.unique_nodes1),
        unique_nodes_map2=tuple(outcome.unique_nodes2),
        unique_links_map1=tuple(outcome.unique_links1),
        unique_links_map2=tuple(outcome.unique_links2),
        adjusted_nodes1=adj1.nodes,
        adjusted_nodes2=adj2.nodes,
        adjusted_links1=adj1.links,
        adjusted_links2=adj2.links,
    )
