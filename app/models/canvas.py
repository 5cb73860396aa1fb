from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List


class ElementKind(str, Enum):
    """Closed set of element kinds reported by the canvas host."""

    TEXT = "text"
    IMAGE = "image"
    SHAPE = "shape"
    ICON = "icon"
    UNCLASSIFIED = "unclassified"

    @classmethod
    def from_type_tag(cls, tag: str | None) -> "ElementKind":
        """
        Map a raw canvas type tag (e.g. "textbox", "rect", "path") to a kind.

        Unknown or missing tags map to UNCLASSIFIED so that every element
        record lands in exactly one branch downstream.
        """
        if not tag:
            return cls.UNCLASSIFIED
        return _TAG_TO_KIND.get(tag.strip().lower(), cls.UNCLASSIFIED)


_TAG_TO_KIND: Dict[str, ElementKind] = {
    "text": ElementKind.TEXT,
    "textbox": ElementKind.TEXT,
    "i-text": ElementKind.TEXT,
    "image": ElementKind.IMAGE,
    "rect": ElementKind.SHAPE,
    "circle": ElementKind.SHAPE,
    "triangle": ElementKind.SHAPE,
    "ellipse": ElementKind.SHAPE,
    "polygon": ElementKind.SHAPE,
    "path": ElementKind.ICON,
    "icon": ElementKind.ICON,
    "svg": ElementKind.ICON,
}

# Tags that describe free-form vector paths rather than primitive shapes.
PATH_LIKE_TAGS = frozenset({"path", "icon", "svg"})


class ElementType(str, Enum):
    """Semantic role inferred by the content classifier."""

    TEXT = "text"
    IMAGE = "image"
    SHAPE = "shape"
    ICON = "icon"
    LOGO = "logo"
    DECORATION = "decoration"
    UNKNOWN = "unknown"


class Importance(str, Enum):
    """Importance tier driving scaling and positioning priority."""

    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"
    DECORATIVE = "decorative"


class OverflowDirection(str, Enum):
    NONE = "none"
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    BOTH = "both"


class OverflowSeverity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


@dataclass(slots=True, frozen=True)
class Size:
    """Canvas dimensions in pixels."""

    width: float
    height: float

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(slots=True)
class CanvasElement:
    """
    One positioned object on the design canvas.

    Geometry follows the canvas host convention: `left`/`top` locate the
    unscaled bounding box origin, and the rendered size is
    `width * scale_x` by `height * scale_y`.
    """

    id: str
    kind: ElementKind
    left: float
    top: float
    width: float
    height: float
    scale_x: float = 1.0
    scale_y: float = 1.0
    text: str | None = None
    fill: str | None = None
    stroke: str | None = None
    # Raw type tag from the host, kept for path-vs-primitive heuristics.
    type_tag: str | None = None
    font_size: float | None = None
    font_weight: str | None = None

    @property
    def scaled_width(self) -> float:
        return self.width * self.scale_x

    @property
    def scaled_height(self) -> float:
        return self.height * self.scale_y

    @property
    def area(self) -> float:
        """Unscaled bounding box area."""
        return self.width * self.height

    @property
    def scaled_area(self) -> float:
        return self.scaled_width * self.scaled_height

    @property
    def is_path_like(self) -> bool:
        tag = (self.type_tag or "").lower()
        if tag:
            return tag in PATH_LIKE_TAGS
        return self.kind is ElementKind.ICON


@dataclass(slots=True)
class Placement:
    """A proposed position and scale for one element."""

    id: str
    left: float
    top: float
    scale_x: float
    scale_y: float


@dataclass(slots=True, frozen=True)
class ScalingRules:
    """Relative scale limits applied on top of an element's current scale."""

    min_scale: float
    max_scale: float
    preferred_scale: float
    lock_aspect: bool = False


@dataclass(slots=True, frozen=True)
class PositioningHints:
    # One of "top-left", "top-right", "bottom-left", "bottom-right", "center", "any".
    preferred_quadrant: str = "any"
    # One of "left", "center", "right", "flexible".
    alignment: str = "flexible"
    # Minimum distance to keep from the canvas edges, in pixels.
    margin: int = 20


@dataclass(slots=True, frozen=True)
class VisualProperties:
    # Integer weight in [1, 10].
    visual_weight: int = 5
    # "high", "medium" or "low".
    color_dominance: str = "medium"
    detail_level: str = "medium"


@dataclass(slots=True)
class ContentAnalysis:
    """
    Classifier output for a single element.

    Derived and ephemeral: recomputed on each resize attempt and never
    persisted on its own.
    """

    element_id: str
    element_type: ElementType
    importance: Importance
    scaling_rules: ScalingRules
    positioning_hints: PositioningHints
    visual_properties: VisualProperties


@dataclass(slots=True)
class LayoutItem:
    """
    Resolved on-canvas geometry for one element of a candidate layout.

    This is what the aesthetic scorer consumes: absolute bounding boxes plus
    the importance tier and visual weight from the classifier.
    """

    id: str
    left: float
    top: float
    width: float
    height: float
    importance: Importance = Importance.TERTIARY
    visual_weight: int = 5

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    @property
    def center_x(self) -> float:
        return self.left + self.width / 2

    @property
    def center_y(self) -> float:
        return self.top + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height


SCORE_WEIGHTS: Dict[str, float] = {
    "visual_balance": 0.25,
    "hierarchy_clarity": 0.20,
    "spacing_rhythm": 0.15,
    "alignment": 0.15,
    "proximity_grouping": 0.15,
    "contrast_balance": 0.10,
}


@dataclass(slots=True)
class ScoreComponents:
    """
    Six aesthetic sub-scores in [0, 100].

    Every component defaults to the neutral midpoint so that the weighted
    total is always defined, even when a component cannot be measured.
    """

    visual_balance: float = 50.0
    hierarchy_clarity: float = 50.0
    spacing_rhythm: float = 50.0
    alignment: float = 50.0
    proximity_grouping: float = 50.0
    contrast_balance: float = 50.0

    @property
    def total(self) -> float:
        return sum(getattr(self, name) * weight for name, weight in SCORE_WEIGHTS.items())

    def as_dict(self) -> Dict[str, float]:
        values = {name: getattr(self, name) for name in SCORE_WEIGHTS}
        values["total"] = self.total
        return values


@dataclass(slots=True)
class LayoutCandidate:
    """A full placement set for a target canvas plus its justification."""

    canvas: Size
    placements: List[Placement]
    scores: ScoreComponents = field(default_factory=ScoreComponents)

    def placement_for(self, element_id: str) -> Placement | None:
        for placement in self.placements:
            if placement.id == element_id:
                return placement
        return None


@dataclass(slots=True)
class Adjustment:
    """One optimizer change, kept for explainability."""

    element_id: str
    adjustment_type: str
    before: Placement
    after: Placement
    reasoning: str


@dataclass(slots=True)
class OptimizationResult:
    candidate: LayoutCandidate
    score_before: float
    score_after: float
    improvements: List[str] = field(default_factory=list)
    adjustments: List[Adjustment] = field(default_factory=list)


@dataclass(slots=True)
class OverflowReport:
    """
    How far a set of placements spills outside the canvas safe area.

    `affected_ids` are the elements that had to be corrected, in input
    order. `max_overflow_px` is the worst single-axis spill of any element.
    """

    direction: OverflowDirection = OverflowDirection.NONE
    severity: OverflowSeverity = OverflowSeverity.NONE
    affected_ids: List[str] = field(default_factory=list)
    max_overflow_px: float = 0.0
    # Spilled area relative to the whole canvas.
    overflow_area_ratio: float = 0.0
    recommended_actions: List[str] = field(default_factory=list)

    @property
    def has_overflow(self) -> bool:
        return bool(self.affected_ids)
