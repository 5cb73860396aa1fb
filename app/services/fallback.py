"""
Deterministic fallback placement.

Used whenever the vision model is unavailable, times out or answers with
something unusable. Pure geometry: identical input always yields identical
placements, which also makes this module the reference for reproducibility
tests. The constraint helpers here are shared with the orchestrator (to
sanitise and measure model output) and the optimizer.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Sequence

from app.models.canvas import (
    CanvasElement,
    ContentAnalysis,
    OverflowDirection,
    OverflowReport,
    OverflowSeverity,
    Placement,
    ScalingRules,
    Size,
)
from app.services.classifier import default_analysis


logger = logging.getLogger(__name__)

DEFAULT_MARGIN = 20
CONSERVATIVE_FACTOR = 0.8
MAX_CONSERVATIVE_SCALE = 0.9
OVERSIZE_FILL = 0.9
SPACE_FILL_THRESHOLD = 0.3
# Sub-pixel spill is rounding, not overflow.
OVERFLOW_TOLERANCE = 1e-6


def effective_margin(target: Size, margin: float) -> float:
    """Shrink the margin on tiny canvases so the usable area stays positive."""
    return max(0.0, min(float(margin), target.width / 4, target.height / 4))


def clamp_factor(factor: float, rules: ScalingRules) -> float:
    return max(rules.min_scale, min(rules.max_scale, factor))


def clamp_position(element: CanvasElement, placement: Placement, target: Size, margin: float) -> Placement:
    """Keep the scaled bounding box inside the canvas minus `margin` on every side."""
    width = element.width * placement.scale_x
    height = element.height * placement.scale_y
    max_left = target.width - margin - width
    max_top = target.height - margin - height
    placement.left = max(margin, min(placement.left, max_left)) if max_left >= margin else margin
    placement.top = max(margin, min(placement.top, max_top)) if max_top >= margin else margin
    return placement


def fit_oversized(element: CanvasElement, placement: Placement, target: Size, margin: float) -> Placement:
    """
    Uniformly shrink an element that is larger than the usable canvas.

    The exceeding axis is brought to 90% of the usable dimension and the
    same factor is applied to both axes so the aspect ratio is preserved.
    This may take an element below its minimum scale; staying on the canvas
    takes precedence.
    """
    usable_width = target.width - 2 * margin
    usable_height = target.height - 2 * margin
    width = element.width * placement.scale_x
    height = element.height * placement.scale_y

    factors = []
    if width > usable_width:
        factors.append(usable_width * OVERSIZE_FILL / width)
    if height > usable_height:
        factors.append(usable_height * OVERSIZE_FILL / height)
    if factors:
        factor = min(factors)
        logger.debug("Element %s exceeds usable area, shrinking by %.3f", element.id, factor)
        placement.scale_x *= factor
        placement.scale_y *= factor
    return placement


def _analysis_for(element: CanvasElement, analyses: Dict[str, ContentAnalysis]) -> ContentAnalysis:
    return analyses.get(element.id) or default_analysis(element.id)


def constrain_placements(
    placements: Sequence[Placement],
    elements: Sequence[CanvasElement],
    analyses: Dict[str, ContentAnalysis],
    target: Size,
    margin: float = DEFAULT_MARGIN,
) -> List[Placement]:
    """
    Force proposed placements back inside scaling rules and canvas bounds.

    Scales are interpreted relative to each element's current scale. Aspect
    locked elements get the smaller of the two factors on both axes. The
    output follows element order and skips placements for unknown ids.
    """
    margin = effective_margin(target, margin)
    by_id = {placement.id: placement for placement in placements}
    constrained: List[Placement] = []
    for element in elements:
        proposed = by_id.get(element.id)
        if proposed is None:
            continue
        rules = _analysis_for(element, analyses).scaling_rules
        factor_x = clamp_factor(proposed.scale_x / element.scale_x, rules)
        factor_y = clamp_factor(proposed.scale_y / element.scale_y, rules)
        if rules.lock_aspect:
            factor_x = factor_y = min(factor_x, factor_y)

        placement = Placement(
            id=element.id,
            left=proposed.left,
            top=proposed.top,
            scale_x=element.scale_x * factor_x,
            scale_y=element.scale_y * factor_y,
        )
        fit_oversized(element, placement, target, margin)
        clamp_position(element, placement, target, margin)
        constrained.append(placement)
    return constrained


def _overflow_actions(direction: OverflowDirection, severity: OverflowSeverity, element_ratio: float) -> List[str]:
    actions: List[str] = []
    if severity is OverflowSeverity.SEVERE:
        actions.append("Reduce content density on the target canvas")
        actions.append("Scale decorative elements down aggressively")
        if element_ratio > 0.8:
            actions.append("Restructure the layout rather than nudging elements")
    if direction is OverflowDirection.HORIZONTAL:
        actions.append("Compress horizontally and stack elements vertically")
    elif direction is OverflowDirection.VERTICAL:
        actions.append("Compress vertically and arrange elements side by side")
    elif direction is OverflowDirection.BOTH:
        actions.append("Arrange elements on a grid to use the available space")
    return actions


def analyze_overflow(
    placements: Sequence[Placement],
    elements: Sequence[CanvasElement],
    target: Size,
    margin: float = DEFAULT_MARGIN,
) -> OverflowReport:
    """
    Measure how far placements spill outside the canvas minus `margin`.

    Severity is severe when more than 70% of the elements overflow, the
    spilled area exceeds 30% of the canvas or any element spills more than
    200px; moderate at 40%, 15% and 100px; minor for any other overflow.
    """
    margin = effective_margin(target, margin)
    by_id = {placement.id: placement for placement in placements}
    affected: List[str] = []
    horizontal = vertical = False
    spilled_area = 0.0
    worst = 0.0
    measured = 0
    for element in elements:
        placement = by_id.get(element.id)
        if placement is None:
            continue
        measured += 1
        width = element.width * placement.scale_x
        height = element.height * placement.scale_y
        over_x = max(0.0, placement.left + width - (target.width - margin)) + max(0.0, margin - placement.left)
        over_y = max(0.0, placement.top + height - (target.height - margin)) + max(0.0, margin - placement.top)
        if over_x <= OVERFLOW_TOLERANCE and over_y <= OVERFLOW_TOLERANCE:
            continue
        affected.append(element.id)
        horizontal = horizontal or over_x > OVERFLOW_TOLERANCE
        vertical = vertical or over_y > OVERFLOW_TOLERANCE
        spilled_area += over_x * height + over_y * width
        worst = max(worst, over_x, over_y)

    if horizontal and vertical:
        direction = OverflowDirection.BOTH
    elif horizontal:
        direction = OverflowDirection.HORIZONTAL
    elif vertical:
        direction = OverflowDirection.VERTICAL
    else:
        direction = OverflowDirection.NONE

    element_ratio = len(affected) / measured if measured else 0.0
    area_ratio = spilled_area / target.area
    if not affected:
        severity = OverflowSeverity.NONE
    elif element_ratio > 0.7 or area_ratio > 0.3 or worst > 200:
        severity = OverflowSeverity.SEVERE
    elif element_ratio > 0.4 or area_ratio > 0.15 or worst > 100:
        severity = OverflowSeverity.MODERATE
    else:
        severity = OverflowSeverity.MINOR

    if affected:
        logger.info(
            "Overflow %s (%s): %s of %s elements, worst %.1fpx",
            severity.value,
            direction.value,
            len(affected),
            measured,
            worst,
        )
    return OverflowReport(
        direction=direction,
        severity=severity,
        affected_ids=affected,
        max_overflow_px=worst,
        overflow_area_ratio=area_ratio,
        recommended_actions=_overflow_actions(direction, severity, element_ratio),
    )


def _redistribute_on_grid(
    elements: Sequence[CanvasElement],
    placements: Dict[str, Placement],
    target: Size,
    margin: float,
) -> None:
    count = len(elements)
    cols = math.ceil(math.sqrt(count))
    rows = math.ceil(count / cols)
    cell_width = (target.width - 2 * margin) / cols
    cell_height = (target.height - 2 * margin) / rows

    # Reading order of the source layout keeps the rough arrangement.
    ordered = sorted(elements, key=lambda e: (e.top, e.left, e.id))
    for index, element in enumerate(ordered):
        placement = placements[element.id]
        col = index % cols
        row = index // cols
        width = element.width * placement.scale_x
        height = element.height * placement.scale_y
        placement.left = margin + col * cell_width + (cell_width - width) / 2
        placement.top = margin + row * cell_height + (cell_height - height) / 2
        clamp_position(element, placement, target, margin)


def plan_fallback(
    elements: Sequence[CanvasElement],
    analyses: Dict[str, ContentAnalysis],
    current: Size,
    target: Size,
    margin: float = DEFAULT_MARGIN,
) -> List[Placement]:
    """
    Place every element using pure geometry.

    Steps, in order:
    1. Proportional scale: every element is scaled by
       min(canvas_ratio * 0.8, 0.9) (kept within its scaling rules) and its
       origin is remapped by the width/height ratios.
    2. Boundary clamp to the canvas minus `margin`.
    3. Oversize fit: anything still larger than the usable area is shrunk
       uniformly to 90% of it.
    4. Space-fill: if the scaled elements cover less than 30% of the usable
       area and there is more than one, they are laid out on a
       ceil(sqrt(n)) column grid, centred in their cells.
    5. Final clamp.
    """
    margin = effective_margin(target, margin)
    width_ratio = target.width / current.width
    height_ratio = target.height / current.height
    canvas_ratio = min(width_ratio, height_ratio)
    conservative = min(canvas_ratio * CONSERVATIVE_FACTOR, MAX_CONSERVATIVE_SCALE)

    placements: Dict[str, Placement] = {}
    for element in elements:
        factor = clamp_factor(conservative, _analysis_for(element, analyses).scaling_rules)
        placement = Placement(
            id=element.id,
            left=element.left * width_ratio,
            top=element.top * height_ratio,
            scale_x=element.scale_x * factor,
            scale_y=element.scale_y * factor,
        )
        clamp_position(element, placement, target, margin)
        fit_oversized(element, placement, target, margin)
        clamp_position(element, placement, target, margin)
        placements[element.id] = placement

    usable_area = (target.width - 2 * margin) * (target.height - 2 * margin)
    covered = sum(
        element.width * placements[element.id].scale_x * element.height * placements[element.id].scale_y
        for element in elements
    )
    if len(elements) > 1 and usable_area > 0 and covered < SPACE_FILL_THRESHOLD * usable_area:
        logger.info(
            "Fallback layout covers %.1f%% of usable area, redistributing %s elements on a grid",
            covered / usable_area * 100,
            len(elements),
        )
        _redistribute_on_grid(elements, placements, target, margin)

    logger.info("Fallback planned %s placements (scale factor %.3f)", len(placements), conservative)
    return [placements[element.id] for element in elements]
