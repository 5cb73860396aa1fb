"""
Aesthetic scoring for candidate layouts.

Computes six sub-scores in [0, 100] (visual balance, hierarchy clarity,
spacing rhythm, alignment, proximity grouping and contrast balance) and a
weighted total. Deterministic and side-effect free.
"""

from __future__ import annotations

import itertools
import logging
import math
from typing import Dict, Iterable, List, Sequence

import numpy as np

from app.models.canvas import (
    CanvasElement,
    ContentAnalysis,
    Importance,
    LayoutItem,
    Placement,
    ScoreComponents,
    Size,
)


logger = logging.getLogger(__name__)

# Target share of the canvas area for each importance tier.
TIER_AREA_SHARE: Dict[Importance, float] = {
    Importance.PRIMARY: 0.15,
    Importance.SECONDARY: 0.08,
    Importance.TERTIARY: 0.05,
    Importance.DECORATIVE: 0.02,
}

ALIGNMENT_TOLERANCE = 10.0
PROXIMITY_RANGE = 200.0
PRIMARY_ANCHOR = (0.3, 0.3)
PRIMARY_ANCHOR_RANGE = 200.0


def _clamp_score(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(100.0, value))


def build_layout_items(
    elements: Iterable[CanvasElement],
    placements: Iterable[Placement],
    analyses: Dict[str, ContentAnalysis],
) -> List[LayoutItem]:
    """
    Resolve placements against source elements into absolute boxes.

    Placements for unknown element ids are ignored.
    """
    by_id = {element.id: element for element in elements}
    items: List[LayoutItem] = []
    for placement in placements:
        element = by_id.get(placement.id)
        if element is None:
            continue
        analysis = analyses.get(placement.id)
        items.append(
            LayoutItem(
                id=placement.id,
                left=placement.left,
                top=placement.top,
                width=element.width * placement.scale_x,
                height=element.height * placement.scale_y,
                importance=analysis.importance if analysis else Importance.TERTIARY,
                visual_weight=analysis.visual_properties.visual_weight if analysis else 5,
            )
        )
    return items


def score_visual_balance(items: Sequence[LayoutItem], canvas: Size) -> float:
    """Distance of the weighted centroid from the canvas centre, inverted."""
    weights = [item.visual_weight * item.area for item in items]
    total_weight = sum(weights)
    if total_weight <= 0:
        return 50.0

    centroid_x = sum(item.center_x * w for item, w in zip(items, weights)) / total_weight
    centroid_y = sum(item.center_y * w for item, w in zip(items, weights)) / total_weight
    distance = math.hypot(centroid_x - canvas.width / 2, centroid_y - canvas.height / 2)
    max_distance = math.hypot(canvas.width / 2, canvas.height / 2)
    return _clamp_score(100.0 - distance / max_distance * 100.0)


def score_hierarchy_clarity(items: Sequence[LayoutItem], canvas: Size) -> float:
    """
    Compare each element's area to its tier target.

    Primary elements additionally earn credit for sitting near the upper-left
    third of the canvas.
    """
    if not items:
        return 50.0

    anchor_x = canvas.width * PRIMARY_ANCHOR[0]
    anchor_y = canvas.height * PRIMARY_ANCHOR[1]
    scores = []
    for item in items:
        expected = canvas.area * TIER_AREA_SHARE[item.importance]
        largest = max(item.area, expected)
        size_score = 1.0 - abs(item.area - expected) / largest if largest > 0 else 0.0
        if item.importance is Importance.PRIMARY:
            distance = math.hypot(item.center_x - anchor_x, item.center_y - anchor_y)
            position_score = max(0.0, 1.0 - distance / PRIMARY_ANCHOR_RANGE)
            scores.append((size_score + position_score) / 2)
        else:
            scores.append(size_score)
    return _clamp_score(float(np.mean(scores)) * 100.0)


def _gaps(items: Sequence[LayoutItem]) -> List[float]:
    gaps = []
    for first, second in itertools.combinations(items, 2):
        horizontal = abs(first.right - second.left)
        vertical = abs(first.bottom - second.top)
        gaps.extend(g for g in (horizontal, vertical) if g > 0)
    return gaps


def score_spacing_rhythm(items: Sequence[LayoutItem]) -> float:
    """100 minus 50x the coefficient of variation of pairwise gaps."""
    if len(items) < 2:
        return 100.0
    gaps = _gaps(items)
    if not gaps:
        return 100.0
    values = np.asarray(gaps, dtype=float)
    mean = float(values.mean())
    if mean <= 0:
        return 100.0
    variation = float(values.std()) / mean
    return _clamp_score(100.0 - 50.0 * variation)


def _shared_edges(first: LayoutItem, second: LayoutItem) -> int:
    checks = (
        abs(first.left - second.left),
        abs(first.center_x - second.center_x),
        abs(first.right - second.right),
        abs(first.top - second.top),
        abs(first.center_y - second.center_y),
    )
    return sum(1 for diff in checks if diff < ALIGNMENT_TOLERANCE)


def score_alignment(items: Sequence[LayoutItem]) -> float:
    """Fraction of the five shared-edge checks satisfied across all pairs."""
    if len(items) < 2:
        return 100.0
    pairs = list(itertools.combinations(items, 2))
    aligned = sum(_shared_edges(first, second) for first, second in pairs)
    return _clamp_score(aligned / (len(pairs) * 5) * 100.0)


def score_proximity_grouping(items: Sequence[LayoutItem]) -> float:
    """Mean pairwise centre distance per tier; 100 at 0 px, 0 at 200 px or more."""
    if len(items) < 2:
        return 100.0

    tier_scores = []
    for tier in Importance:
        members = [item for item in items if item.importance is tier]
        if len(members) < 2:
            continue
        distances = [
            math.hypot(a.center_x - b.center_x, a.center_y - b.center_y)
            for a, b in itertools.combinations(members, 2)
        ]
        mean_distance = float(np.mean(distances))
        tier_scores.append(max(0.0, 100.0 - mean_distance / PROXIMITY_RANGE * 100.0))

    if not tier_scores:
        return 100.0
    return _clamp_score(float(np.mean(tier_scores)))


def score_contrast_balance(items: Sequence[LayoutItem]) -> float:
    if len(items) < 2:
        return 100.0
    weights = [item.visual_weight for item in items]
    heaviest = max(weights)
    if heaviest <= 0:
        return 50.0
    contrast = (heaviest - min(weights)) / heaviest
    if 0.5 <= contrast <= 0.8:
        return 100.0
    if contrast < 0.3:
        return 50.0
    if contrast > 0.9:
        return 70.0
    return 80.0


def score_layout(items: Sequence[LayoutItem], canvas: Size) -> ScoreComponents:
    """
    Score a resolved layout on the target canvas.

    An empty layout keeps every component at its neutral midpoint. Pairwise
    components are trivially satisfied (100) for a single element.
    """
    if not items:
        return ScoreComponents()

    scores = ScoreComponents(
        visual_balance=score_visual_balance(items, canvas),
        hierarchy_clarity=score_hierarchy_clarity(items, canvas),
        spacing_rhythm=score_spacing_rhythm(items),
        alignment=score_alignment(items),
        proximity_grouping=score_proximity_grouping(items),
        contrast_balance=score_contrast_balance(items),
    )
    logger.debug("Layout scores: %s", scores.as_dict())
    return scores


_SUGGESTIONS = {
    "visual_balance": "Improve visual balance by distributing heavy elements more evenly around the centre.",
    "hierarchy_clarity": "Strengthen hierarchy: make primary elements larger and move them towards the upper-left third.",
    "spacing_rhythm": "Use more consistent spacing between neighbouring elements.",
    "alignment": "Align elements to shared left, centre or right edges.",
    "proximity_grouping": "Group related elements of the same importance closer together.",
    "contrast_balance": "Adjust the size and colour contrast between prominent and supporting elements.",
}


def suggest_improvements(scores: ScoreComponents, threshold: float = 70.0) -> List[str]:
    """Human-readable suggestions for every sub-score below `threshold`."""
    suggestions = []
    for name, text in _SUGGESTIONS.items():
        if getattr(scores, name) < threshold:
            suggestions.append(text)
    return suggestions
