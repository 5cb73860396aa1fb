"""
Content classification for canvas elements.

Labels every element with a semantic role, an importance tier and the
geometric constraints that later stages (fallback planner, optimizer and the
vision model prompt) must respect. Everything here is a pure function of the
element list.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Dict, Iterable, List

from app.models.canvas import (
    CanvasElement,
    ContentAnalysis,
    ElementKind,
    ElementType,
    Importance,
    PositioningHints,
    ScalingRules,
    Size,
    VisualProperties,
)


logger = logging.getLogger(__name__)

# Fixed reference point used by the importance heuristic. It approximates the
# centre of the common 800x600 editor canvas.
REFERENCE_POINT = (400.0, 300.0)
REFERENCE_RADIUS = 200.0

ICON_MAX_SIDE = 100.0
LARGE_ELEMENT_AREA = 50_000.0
SMALL_IMAGE_AREA = 10_000.0
TITLE_MAX_CHARS = 50
BODY_MIN_CHARS = 100
PRIMARY_SHARE = 0.3

SCALING_RULES: Dict[ElementType, ScalingRules] = {
    ElementType.TEXT: ScalingRules(min_scale=0.5, max_scale=1.4, preferred_scale=0.9, lock_aspect=False),
    ElementType.IMAGE: ScalingRules(min_scale=0.4, max_scale=1.2, preferred_scale=0.85, lock_aspect=True),
    ElementType.LOGO: ScalingRules(min_scale=0.4, max_scale=1.2, preferred_scale=0.85, lock_aspect=True),
    ElementType.ICON: ScalingRules(min_scale=0.6, max_scale=1.0, preferred_scale=0.8, lock_aspect=True),
    ElementType.SHAPE: ScalingRules(min_scale=0.3, max_scale=1.6, preferred_scale=0.9, lock_aspect=False),
    ElementType.DECORATION: ScalingRules(min_scale=0.2, max_scale=1.4, preferred_scale=0.7, lock_aspect=False),
    ElementType.UNKNOWN: ScalingRules(min_scale=0.3, max_scale=1.8, preferred_scale=1.0, lock_aspect=False),
}

_TRANSPARENT_FILLS = {"transparent", "none", ""}
_BLACK_FILLS = {"black", "#000", "#000000"}
_SATURATED_NAMES = ("red", "blue", "green")
_BOLD_WEIGHTS = {"bold", "bolder"}


def is_well_formed(element: CanvasElement) -> bool:
    if not isinstance(element.id, str) or not element.id.strip():
        return False
    numbers = (element.left, element.top, element.width, element.height, element.scale_x, element.scale_y)
    if not all(isinstance(value, (int, float)) and math.isfinite(value) for value in numbers):
        return False
    return element.width > 0 and element.height > 0 and element.scale_x > 0 and element.scale_y > 0


def infer_element_type(element: CanvasElement) -> ElementType:
    """
    Infer the semantic element type.

    Explicit kinds reported by the host win; path-like and unclassified
    records fall through to size, text and stroke heuristics in a fixed
    priority order.
    """
    kind = element.kind
    if kind is ElementKind.TEXT:
        return ElementType.TEXT
    if kind is ElementKind.IMAGE:
        return ElementType.IMAGE
    if kind is ElementKind.SHAPE and not element.is_path_like:
        return ElementType.SHAPE

    # ICON, UNCLASSIFIED and path-like shapes.
    if element.is_path_like and element.width < ICON_MAX_SIDE and element.height < ICON_MAX_SIDE:
        return ElementType.ICON
    if element.text and "logo" in element.text.lower():
        return ElementType.LOGO
    if element.area > LARGE_ELEMENT_AREA:
        return ElementType.IMAGE
    fill = (element.fill or "").strip().lower()
    if element.fill is not None and fill in _TRANSPARENT_FILLS and element.stroke:
        return ElementType.DECORATION
    return ElementType.UNKNOWN


def _is_bold(element: CanvasElement) -> bool:
    weight = (element.font_weight or "").strip().lower()
    if weight in _BOLD_WEIGHTS:
        return True
    return weight.isdigit() and int(weight) >= 600


def _is_title(element: CanvasElement) -> bool:
    text = (element.text or "").strip()
    if not text or len(text) >= TITLE_MAX_CHARS:
        return False
    return (element.font_size or 0) > 20 or _is_bold(element)


def _is_saturated(fill: str) -> bool:
    if any(name in fill for name in _SATURATED_NAMES):
        return True
    match = re.fullmatch(r"#([0-9a-f]{6})", fill)
    if match is None:
        return False
    channels = [int(match.group(1)[i : i + 2], 16) for i in (0, 2, 4)]
    return max(channels) - min(channels) > 128


def analyze_visual_properties(element: CanvasElement, element_type: ElementType) -> VisualProperties:
    """Estimate how much visual attention an element attracts (weight 1-10)."""
    weight = 5
    area = element.scaled_area
    if area > LARGE_ELEMENT_AREA:
        weight += 2
    elif area > 20_000:
        weight += 1
    elif area < 5_000:
        weight -= 1

    fill = (element.fill or "").strip().lower()
    if not fill or fill in _TRANSPARENT_FILLS:
        dominance = "low"
    elif _is_saturated(fill):
        weight += 1
        dominance = "high"
    else:
        dominance = "medium"
    if fill in _BLACK_FILLS:
        weight += 1

    if element.is_path_like or len(element.text or "") > TITLE_MAX_CHARS:
        detail = "high"
    elif (element.type_tag or "").lower() in {"rect", "circle"}:
        detail = "low"
    else:
        detail = "medium"

    return VisualProperties(
        visual_weight=max(1, min(10, weight)),
        color_dominance=dominance,
        detail_level=detail,
    )


def determine_importance(
    element: CanvasElement,
    element_type: ElementType,
    mean_area: float,
) -> Importance:
    """
    Combine size, position and content cues into an importance tier.

    Short prominent text (titles) and small images (likely logos) are
    promoted to primary outright; long text is body copy and sits at
    secondary. Everything else is scored on relative size, distance to the
    reference point and top-left placement.
    """
    if element_type is ElementType.TEXT:
        if _is_title(element):
            return Importance.PRIMARY
        if len(element.text or "") > BODY_MIN_CHARS:
            return Importance.SECONDARY
    if element_type is ElementType.IMAGE and element.scaled_area <= SMALL_IMAGE_AREA:
        return Importance.PRIMARY

    score = 0
    size_ratio = element.scaled_area / mean_area if mean_area > 0 else 0.0
    if size_ratio > 1.5:
        score += 2
    elif size_ratio > 1.0:
        score += 1

    # Measured from the element origin, not its centre.
    distance = math.hypot(element.left - REFERENCE_POINT[0], element.top - REFERENCE_POINT[1])
    if distance < REFERENCE_RADIUS:
        score += 1

    if element.left < 200 and element.top < 200:
        score += 1

    if score >= 3:
        return Importance.PRIMARY
    if score == 2:
        return Importance.SECONDARY
    if score == 1:
        return Importance.TERTIARY
    return Importance.DECORATIVE


def positioning_hints_for(element: CanvasElement, element_type: ElementType) -> PositioningHints:
    if element_type is ElementType.LOGO:
        return PositioningHints(preferred_quadrant="top-left", alignment="left", margin=30)
    if element_type is ElementType.TEXT:
        if (element.font_size or 0) > 24:
            return PositioningHints(preferred_quadrant="top-left", alignment="left", margin=15)
        return PositioningHints(margin=15)
    if element_type is ElementType.DECORATION:
        return PositioningHints(margin=10)
    return PositioningHints()


def enforce_primary_cap(analyses: Dict[str, ContentAnalysis]) -> None:
    """
    Demote excess primaries so at most ceil(30%) of elements stay primary.

    Survivors are chosen by descending visual weight, ties broken by
    ascending element id; the rest become secondary. Mutates in place.
    """
    cap = math.ceil(PRIMARY_SHARE * len(analyses))
    primaries = [a for a in analyses.values() if a.importance is Importance.PRIMARY]
    if len(primaries) <= cap:
        return

    primaries.sort(key=lambda a: (-a.visual_properties.visual_weight, a.element_id))
    for analysis in primaries[cap:]:
        logger.debug("Demoting %s from primary to secondary (cap=%s)", analysis.element_id, cap)
        analysis.importance = Importance.SECONDARY


def default_analysis(element_id: str) -> ContentAnalysis:
    """Neutral analysis for elements the classifier could not label."""
    return ContentAnalysis(
        element_id=element_id,
        element_type=ElementType.UNKNOWN,
        importance=Importance.TERTIARY,
        scaling_rules=SCALING_RULES[ElementType.UNKNOWN],
        positioning_hints=PositioningHints(),
        visual_properties=VisualProperties(),
    )


def classify_elements(elements: Iterable[CanvasElement]) -> Dict[str, ContentAnalysis]:
    """
    Classify every well-formed element.

    Returns a mapping from element id to its ContentAnalysis, in input order.
    Malformed records (missing id, non-finite or non-positive geometry) are
    skipped with a warning rather than failing the whole batch.
    """
    valid: List[CanvasElement] = []
    for element in elements:
        if not is_well_formed(element):
            logger.warning("Skipping malformed canvas element: %r", getattr(element, "id", None))
            continue
        valid.append(element)

    if not valid:
        return {}

    mean_area = sum(e.scaled_area for e in valid) / len(valid)

    analyses: Dict[str, ContentAnalysis] = {}
    for element in valid:
        element_type = infer_element_type(element)
        analyses[element.id] = ContentAnalysis(
            element_id=element.id,
            element_type=element_type,
            importance=determine_importance(element, element_type, mean_area),
            scaling_rules=SCALING_RULES[element_type],
            positioning_hints=positioning_hints_for(element, element_type),
            visual_properties=analyze_visual_properties(element, element_type),
        )

    enforce_primary_cap(analyses)

    logger.info(
        "Classified %s elements (%s primary)",
        len(analyses),
        sum(1 for a in analyses.values() if a.importance is Importance.PRIMARY),
    )
    return analyses


def build_contextual_prompt(
    analyses: Dict[str, ContentAnalysis],
    current: Size,
    target: Size,
) -> str:
    """
    Turn classifier output into guidance text appended to the model prompt.

    The guidance lists elements by tier, states the direction of the resize
    and the aspect-ratio shift, and spells out per-element constraints.
    """
    by_tier: Dict[Importance, List[ContentAnalysis]] = {tier: [] for tier in Importance}
    for analysis in analyses.values():
        by_tier[analysis.importance].append(analysis)

    scale = min(target.width / current.width, target.height / current.height)
    if scale > 1.05:
        direction = f"The canvas is growing (about {scale:.2f}x); enlarge primary content first and keep secondary content restrained."
    elif scale < 0.95:
        direction = f"The canvas is shrinking (about {scale:.2f}x); protect primary content and compress decorative content first."
    else:
        direction = "The canvas size is roughly unchanged; focus on re-balancing positions."

    ar_change = abs(target.aspect_ratio - current.aspect_ratio)
    if ar_change > 0.5:
        ratio_note = "The aspect ratio changes significantly; restructure the composition rather than stretching it."
    elif ar_change > 0.1:
        ratio_note = "The aspect ratio changes moderately; shift elements along the longer axis."
    else:
        ratio_note = "The aspect ratio is preserved; keep relative positions."

    lines = ["CONTENT ANALYSIS:"]
    for tier, label in (
        (Importance.PRIMARY, "Primary elements (preserve prominence)"),
        (Importance.SECONDARY, "Secondary elements"),
        (Importance.DECORATIVE, "Decorative elements (flexible)"),
    ):
        ids = ", ".join(f"{a.element_id} ({a.element_type.value})" for a in by_tier[tier])
        lines.append(f"- {label}: {ids or 'none'}")
    lines.append("")
    lines.append(direction)
    lines.append(ratio_note)
    lines.append("")
    lines.append("ELEMENT CONSTRAINTS:")
    for analysis in analyses.values():
        rules = analysis.scaling_rules
        hints = analysis.positioning_hints
        lock = ", keep scaleX equal to scaleY" if rules.lock_aspect else ""
        lines.append(
            f"- {analysis.element_id}: scale between {rules.min_scale}x and {rules.max_scale}x of current{lock}; "
            f"prefer {hints.preferred_quadrant} area, align {hints.alignment}, margin {hints.margin}px"
        )
    lines.append("")
    lines.append(
        "COMPOSITION: place primary elements in the upper-left third, group related elements, "
        "and keep consistent spacing between neighbours."
    )
    return "\n".join(lines)
