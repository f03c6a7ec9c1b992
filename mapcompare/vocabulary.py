"""Vocabulary adjustment - normalize node labels and link relationships per map.

Adjustment is non-destructive: every node and link of the input gets exactly
one entry, and anything the service does not (or may not) adjust keeps its
original text with confidence 1.0.
"""

import logging
import re
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from mapcompare.llm import NormalizerConfig, complete_with_retries, probe
from mapcompare.models import (
    Link,
    LinkAdjustment,
    MapAdjustment,
    Node,
    NodeAdjustment,
    NodeCategory,
    VocabularyAdjustment,
)

logger = logging.getLogger(__name__)

# Load prompt templates
PROMPTS_DIR = Path(__file__).parent / "prompts"
LABEL_PROMPT_PATH = PROMPTS_DIR / "normalize_label.txt"
MAP_SYSTEM_PROMPT_PATH = PROMPTS_DIR / "normalize_map_system.txt"
MAP_PROMPT_PATH = PROMPTS_DIR / "normalize_map.txt"

# "original -> adjusted (confidence: 0.95)", optionally bulleted or numbered
ADJUSTMENT_LINE = re.compile(
    r"^\s*(?:[-*]\s+|\d+[.)]\s+)?(?P<original>.+?)\s*->\s*(?P<adjusted>.+?)"
    r"\s*\(confidence:\s*(?P<confidence>[\d.]+)\)\s*$"
)

UNPARSED_LABEL_CONFIDENCE = 0.9


class VocabularyAdjuster(Protocol):
    """Capability interface for anything that normalizes map vocabulary."""

    async def adjust_label(self, text: str, context: str | None = None) -> VocabularyAdjustment:
        ...

    async def adjust_map_vocabulary(
        self,
        nodes: Sequence[Node],
        links: Sequence[Link],
        reference_nodes: Sequence[Node] | None = None,
        reference_links: Sequence[Link] | None = None,
    ) -> MapAdjustment:
        ...

    async def is_available(self) -> bool:
        ...


def load_label_prompt() -> str:
    """Load the single-label system prompt."""
    return LABEL_PROMPT_PATH.read_text()


def load_map_system_prompt() -> str:
    """Load the batch system prompt template."""
    return MAP_SYSTEM_PROMPT_PATH.read_text()


def load_map_prompt() -> str:
    """Load the batch user prompt template."""
    return MAP_PROMPT_PATH.read_text()


def _clean(text: str) -> str:
    return text.strip().strip("\"'").strip()


def parse_adjustment_lines(text: str) -> list[VocabularyAdjustment]:
    """Parse ``original -> adjusted (confidence: X.XX)`` lines from a reply.

    Lines that do not follow the format are skipped. Confidence is clamped
    into [0, 1].

    Args:
        text: Raw reply from the normalization service

    Returns:
        Adjustments in reply order
    """
    adjustments = []
    for line in (text or "").splitlines():
        match = ADJUSTMENT_LINE.match(line)
        if not match:
            continue
        original = _clean(match.group("original"))
        adjusted = _clean(match.group("adjusted"))
        try:
            confidence = float(match.group("confidence"))
        except ValueError:
            continue
        if not original or not adjusted:
            continue
        adjustments.append(
            VocabularyAdjustment(
                original_label=original,
                adjusted_label=adjusted,
                confidence=min(max(confidence, 0.0), 1.0),
            )
        )
    return adjustments


def format_reference_vocabulary(
    reference_nodes: Sequence[Node] | None,
    reference_links: Sequence[Link] | None,
) -> str:
    """Format the reference vocabulary, partitioned by grammatical category."""
    lines = []
    if reference_nodes:
        subjects = [n.label for n in reference_nodes if n.category == NodeCategory.SUBJECT]
        actions = [n.label for n in reference_nodes if n.category == NodeCategory.ACTION]
        if subjects:
            lines.append(f"Reference SUBJECT vocabulary: {', '.join(subjects)}")
        if actions:
            lines.append(f"Reference ACTION vocabulary: {', '.join(actions)}")
    if reference_links:
        relationships = list(dict.fromkeys(link.relationship for link in reference_links))
        lines.append(f"Reference RELATIONSHIP vocabulary: {', '.join(relationships)}")
    return "\n".join(lines)


def format_nodes(nodes: Sequence[Node]) -> str:
    return "\n".join(f'{n.category.value.upper()} "{n.id}": "{n.label}"' for n in nodes)


def format_links(links: Sequence[Link]) -> str:
    return "\n".join(f'Link "{link.id}": "{link.relationship}"' for link in links)


def _reference_categories(reference_nodes: Sequence[Node] | None) -> dict[str, set[NodeCategory]]:
    categories: dict[str, set[NodeCategory]] = {}
    for n in reference_nodes or ():
        categories.setdefault(n.label.casefold(), set()).add(n.category)
    return categories


def crosses_category(
    node: Node,
    adjusted_label: str,
    reference_categories: Mapping[str, set[NodeCategory]],
) -> bool:
    """True if the adjusted label is a reference term of the other category only."""
    categories = reference_categories.get(adjusted_label.casefold())
    return bool(categories) and node.category not in categories


def assign_adjustments(
    nodes: Sequence[Node],
    links: Sequence[Link],
    adjustments: Sequence[VocabularyAdjustment],
    reference_nodes: Sequence[Node] | None = None,
) -> MapAdjustment:
    """Attribute parsed adjustments to map elements and fill the gaps.

    Each adjustment goes to the first not-yet-adjusted node whose label equals
    its original text (ignoring case), and independently to the first link
    matched the same way. Only when neither matches by text does an element
    whose id appears in the original text receive it. Elements left without
    an adjustment keep their original text with confidence 1.0.
    """
    node_hits: dict[str, VocabularyAdjustment] = {}
    link_hits: dict[str, VocabularyAdjustment] = {}

    for adj in adjustments:
        original = adj.original_label
        folded = original.casefold()
        node = _first_unassigned(nodes, node_hits, lambda n: n.label.casefold() == folded)
        link = _first_unassigned(links, link_hits, lambda lk: lk.relationship.casefold() == folded)
        if node is None and link is None:
            node = _first_unassigned(nodes, node_hits, lambda n: n.id in original)
            link = _first_unassigned(links, link_hits, lambda lk: lk.id in original)
        if node is not None:
            node_hits[node.id] = adj
        if link is not None:
            link_hits[link.id] = adj

    reference_categories = _reference_categories(reference_nodes)

    node_results = []
    for n in nodes:
        adj = node_hits.get(n.id)
        if adj is not None and crosses_category(n, adj.adjusted_label, reference_categories):
            logger.debug(
                "Discarding cross-category adjustment %r -> %r for node %s",
                n.label, adj.adjusted_label, n.id,
            )
            adj = None
        node_results.append(
            NodeAdjustment(
                node_id=n.id,
                original_label=n.label,
                adjusted_label=adj.adjusted_label if adj else n.label,
                confidence=adj.confidence if adj else 1.0,
            )
        )

    link_results = []
    for lk in links:
        adj = link_hits.get(lk.id)
        link_results.append(
            LinkAdjustment(
                link_id=lk.id,
                original_relationship=lk.relationship,
                adjusted_relationship=adj.adjusted_label if adj else lk.relationship,
                confidence=adj.confidence if adj else 1.0,
            )
        )

    return MapAdjustment(nodes=tuple(node_results), links=tuple(link_results))


def _first_unassigned(elements, assigned, predicate):
    for element in elements:
        if element.id not in assigned and predicate(element):
            return element
    return None


class LLMVocabularyAdjuster:
    """Adjuster backed by an OpenAI-compatible chat endpoint via LiteLLM.

    One request per map, batched across all of its nodes and links.
    """

    def __init__(self, config: NormalizerConfig | None = None):
        self.config = config or NormalizerConfig()

    async def adjust_label(self, text: str, context: str | None = None) -> VocabularyAdjustment:
        if context:
            prompt = f'Standardize this label in the context of "{context}": "{text}"'
        else:
            prompt = f'Standardize this label: "{text}"'

        reply = await complete_with_retries(self.config, load_label_prompt(), prompt)
        parsed = parse_adjustment_lines(reply)
        if not parsed:
            return VocabularyAdjustment(
                original_label=text,
                adjusted_label=text,
                confidence=UNPARSED_LABEL_CONFIDENCE,
            )
        return VocabularyAdjustment(
            original_label=text,
            adjusted_label=parsed[0].adjusted_label,
            confidence=parsed[0].confidence,
        )

    async def adjust_map_vocabulary(
        self,
        nodes: Sequence[Node],
        links: Sequence[Link],
        reference_nodes: Sequence[Node] | None = None,
        reference_links: Sequence[Link] | None = None,
    ) -> MapAdjustment:
        if not nodes and not links:
            return MapAdjustment()

        system = load_map_system_prompt().replace(
            "{reference_vocabulary}",
            format_reference_vocabulary(reference_nodes, reference_links),
        )
        prompt = load_map_prompt()
        prompt = prompt.replace("{nodes}", format_nodes(nodes))
        prompt = prompt.replace("{links}", format_links(links))

        reply = await complete_with_retries(self.config, system, prompt)
        parsed = parse_adjustment_lines(reply)
        logger.debug(
            "Parsed %d adjustment lines for %d nodes / %d links",
            len(parsed), len(nodes), len(links),
        )
        return assign_adjustments(nodes, links, parsed, reference_nodes)

    async def is_available(self) -> bool:
        return await probe(self.config)


class StaticVocabularyAdjuster:
    """Deterministic, table-driven adjuster.

    Lookups are case-insensitive. Used offline and as a test double.

    Args:
        labels: Node label normalizations, e.g. {"sunlight": "light"}
        relationships: Link relationship normalizations
        available: Value reported by ``is_available``
    """

    def __init__(
        self,
        labels: Mapping[str, str] | None = None,
        relationships: Mapping[str, str] | None = None,
        available: bool = True,
    ):
        self.labels = {k.casefold(): v for k, v in (labels or {}).items()}
        self.relationships = {k.casefold(): v for k, v in (relationships or {}).items()}
        self.available = available
        self.map_calls = 0

    async def adjust_label(self, text: str, context: str | None = None) -> VocabularyAdjustment:
        adjusted = self.labels.get(text.casefold()) or text
        return VocabularyAdjustment(
            original_label=text,
            adjusted_label=adjusted,
            confidence=1.0 if adjusted == text else 0.85,
        )

    async def adjust_map_vocabulary(
        self,
        nodes: Sequence[Node],
        links: Sequence[Link],
        reference_nodes: Sequence[Node] | None = None,
        reference_links: Sequence[Link] | None = None,
    ) -> MapAdjustment:
        self.map_calls += 1
        reference_categories = _reference_categories(reference_nodes)

        node_results = []
        for n in nodes:
            adjusted = self.labels.get(n.label.casefold()) or n.label
            if crosses_category(n, adjusted, reference_categories):
                adjusted = n.label
            node_results.append(
                NodeAdjustment(
                    node_id=n.id,
                    original_label=n.label,
                    adjusted_label=adjusted,
                    confidence=1.0 if adjusted == n.label else 0.85,
                )
            )

        link_results = []
        for lk in links:
            adjusted = self.relationships.get(lk.relationship.strip().casefold()) or lk.relationship
            link_results.append(
                LinkAdjustment(
                    link_id=lk.id,
                    original_relationship=lk.relationship,
                    adjusted_relationship=adjusted,
                    confidence=1.0 if adjusted == lk.relationship else 0.85,
                )
            )
        return MapAdjustment(nodes=tuple(node_results), links=tuple(link_results))

    async def is_available(self) -> bool:
        return self.available
