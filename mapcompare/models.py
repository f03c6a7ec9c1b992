"""Data models for concept maps and comparison aggregates."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeCategory(str, Enum):
    """Grammatical category of a node. Matching never crosses categories."""

    SUBJECT = "subject"
    ACTION = "action"


class SemanticRole(str, Enum):
    """Semantic role carried by a link (who / what / to whom / where / when)."""

    AGENT = "agent"
    PATIENT = "patient"
    RECIPIENT = "recipient"
    LOCATION = "location"
    TIME = "time"


class NodeShape(str, Enum):
    RECTANGLE = "rectangle"
    ROUNDED_RECTANGLE = "rounded-rectangle"


class Role(str, Enum):
    INSTRUCTOR = "instructor"
    LEARNER = "learner"


class ComparisonMode(str, Enum):
    PAIR = "pair"
    REFERENCE_TO_ALL = "reference_to_all"
    ALL_VS_ALL = "all_vs_all"
    PARTIAL_SUBSET = "partial_subset"


# Cool colors for subject nodes, warm colors for action nodes
SUBJECT_COLORS = (
    "#3B82F6", "#2563EB", "#1D4ED8", "#1E40AF", "#1E3A8A",
    "#10B981", "#059669", "#047857", "#8B5CF6", "#7C3AED", "#6D28D9",
)
ACTION_COLORS = (
    "#EF4444", "#DC2626", "#B91C1C", "#F97316", "#EA580C",
    "#C2410C", "#F59E0B", "#D97706", "#B45309",
)

MAX_LABEL_LENGTH = 100
MAX_RELATIONSHIP_LENGTH = 200


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class NodeStyle(BaseModel):
    shape: NodeShape
    color: str
    border_radius: int = 0


def default_node_style(category: NodeCategory, color_index: int = 0) -> NodeStyle:
    """Visual style derived from a node's category.

    Args:
        category: Grammatical category of the node
        color_index: Palette index; wraps around the palette length

    Returns:
        NodeStyle with the category's shape and a palette color
    """
    if category == NodeCategory.ACTION:
        colors = ACTION_COLORS
        return NodeStyle(
            shape=NodeShape.ROUNDED_RECTANGLE,
            color=colors[color_index % len(colors)],
            border_radius=12,
        )
    colors = SUBJECT_COLORS
    return NodeStyle(shape=NodeShape.RECTANGLE, color=colors[color_index % len(colors)])


class Node(BaseModel):
    """A typed concept in a map."""

    id: str = Field(min_length=1)
    label: str = Field(min_length=1, max_length=MAX_LABEL_LENGTH)
    category: NodeCategory
    position: Position = Field(default_factory=Position)
    style: NodeStyle | None = None

    @field_validator("label")
    @classmethod
    def _label_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("node label cannot be blank")
        return value

    @model_validator(mode="after")
    def _derive_style(self):
        if self.style is None:
            self.style = default_node_style(self.category)
        return self


class Link(BaseModel):
    """A labeled, directed edge between two nodes of the same map."""

    id: str = Field(min_length=1)
    source_node_id: str
    target_node_id: str
    semantic_role: SemanticRole
    relationship: str = Field(min_length=1, max_length=MAX_RELATIONSHIP_LENGTH)

    @field_validator("relationship")
    @classmethod
    def _relationship_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("link relationship cannot be blank")
        return value


class Topic(BaseModel):
    id: str
    name: str
    description: str = ""
    created_by: str = ""


class ConceptMap(BaseModel):
    """A learner's (or instructor's reference) graph for one topic."""

    id: str
    topic_id: str
    owner_id: str
    is_reference: bool = False
    nodes: list[Node] = Field(default_factory=list)
    links: list[Link] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_graph(self):
        node_ids = [n.id for n in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError(f"map {self.id} has duplicate node ids")
        link_ids = [link.id for link in self.links]
        if len(set(link_ids)) != len(link_ids):
            raise ValueError(f"map {self.id} has duplicate link ids")

        known = set(node_ids)
        for link in self.links:
            for endpoint in (link.source_node_id, link.target_node_id):
                if endpoint not in known:
                    raise ValueError(
                        f"link {link.id} references node {endpoint} not in map {self.id}"
                    )
        return self

    def node(self, node_id: str) -> Node | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def without_node(self, node_id: str) -> "ConceptMap":
        """Return a copy with the node and every link touching it removed."""
        return self.model_copy(
            update={
                "nodes": [n for n in self.nodes if n.id != node_id],
                "links": [
                    link for link in self.links
                    if node_id not in (link.source_node_id, link.target_node_id)
                ],
            }
        )


class Caller(BaseModel):
    """Identity and role of whoever invokes an engine operation."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role

    @property
    def is_instructor(self) -> bool:
        return self.role == Role.INSTRUCTOR


class VocabularyAdjustment(BaseModel):
    """A single label normalized by the text-normalization service."""

    model_config = ConfigDict(frozen=True)

    original_label: str
    adjusted_label: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class NodeAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    original_label: str
    adjusted_label: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class LinkAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    link_id: str
    original_relationship: str
    adjusted_relationship: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class MapAdjustment(BaseModel):
    """Adjusted vocabulary for one map: exactly one entry per node and link."""

    model_config = ConfigDict(frozen=True)

    nodes: tuple[NodeAdjustment, ...] = ()
    links: tuple[LinkAdjustment, ...] = ()


class NodeMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    node1_id: str
    node2_id: str
    original_label1: str
    original_label2: str
    adjusted_label: str
    similarity: float  # min of both adjustment confidences


class LinkMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    link1_id: str
    link2_id: str
    original_relationship1: str
    original_relationship2: str
    adjusted_relationship: str
    similarity: float


class ComparisonResult(BaseModel):
    """Outcome of comparing one pair of maps."""

    model_config = ConfigDict(frozen=True)

    map1_id: str
    map2_id: str
    similarity_score: float = Field(ge=0.0, le=1.0)
    matched_nodes: tuple[NodeMatch, ...] = ()
    matched_links: tuple[LinkMatch, ...] = ()
    unique_nodes_map1: tuple[str, ...] = ()
    unique_nodes_map2: tuple[str, ...] = ()
    unique_links_map1: tuple[str, ...] = ()
    unique_links_map2: tuple[str, ...] = ()
    adjusted_nodes1: tuple[NodeAdjustment, ...] = ()
    adjusted_nodes2: tuple[NodeAdjustment, ...] = ()
    adjusted_links1: tuple[LinkAdjustment, ...] = ()
    adjusted_links2: tuple[LinkAdjustment, ...] = ()


class Comparison(BaseModel):
    """Immutable aggregate of pairwise results produced under one mode."""

    model_config = ConfigDict(frozen=True)

    id: str
    mode: ComparisonMode
    topic_id: str
    map_ids: tuple[str, ...]
    created_by: str
    results: tuple[ComparisonResult, ...]
    created_at: datetime


class Permission(BaseModel):
    """Explicit grant letting a learner view a comparison."""

    model_config = ConfigDict(frozen=True)

    comparison_id: str
    student_id: str
    granted_by: str
    granted_at: datetime
