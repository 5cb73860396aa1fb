"""
Layout optimizer.

Nudges a scored candidate layout towards a higher aesthetic total with up to
four passes (balance, alignment, spacing, hierarchy). Each pass only runs
when its sub-score is below the threshold, only touches the elements that
contribute most to the weakness, and keeps a change only if it strictly
raises the total. The output total is therefore never below the input.
"""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import replace
from typing import Callable, Dict, List, Sequence

from app.models.canvas import (
    Adjustment,
    CanvasElement,
    ContentAnalysis,
    LayoutCandidate,
    LayoutItem,
    OptimizationResult,
    Placement,
    ScoreComponents,
    Size,
)
from app.services.classifier import default_analysis
from app.services.fallback import DEFAULT_MARGIN, clamp_factor, clamp_position, effective_margin, fit_oversized
from app.services.scoring import TIER_AREA_SHARE, build_layout_items, score_layout


logger = logging.getLogger(__name__)

SNAP_RANGE = 40.0
# Share of elements a single pass may touch.
CONTRIBUTOR_SHARE = 1 / 3
_EPSILON = 1e-9

Proposer = Callable[[LayoutItem, Placement, CanvasElement, Sequence[LayoutItem], Size], Placement | None]


def _contributor_count(total: int) -> int:
    return max(1, math.ceil(total * CONTRIBUTOR_SHARE))


# --- contributor ranking -----------------------------------------------------


def _balance_contributors(items: Sequence[LayoutItem], canvas: Size) -> List[LayoutItem]:
    def pull(item: LayoutItem) -> float:
        offset = math.hypot(item.center_x - canvas.width / 2, item.center_y - canvas.height / 2)
        return item.visual_weight * item.area * offset

    return sorted(items, key=lambda item: (-pull(item), item.id))


def _alignment_contributors(items: Sequence[LayoutItem], canvas: Size) -> List[LayoutItem]:
    def shared(item: LayoutItem) -> int:
        count = 0
        for other in items:
            if other.id == item.id:
                continue
            count += sum(
                1
                for diff in (
                    abs(item.left - other.left),
                    abs(item.center_x - other.center_x),
                    abs(item.right - other.right),
                    abs(item.top - other.top),
                    abs(item.center_y - other.center_y),
                )
                if diff < 10.0
            )
        return count

    return sorted(items, key=lambda item: (shared(item), item.id))


def _median_gap(items: Sequence[LayoutItem]) -> float | None:
    gaps = []
    for index, first in enumerate(items):
        for second in items[index + 1 :]:
            gaps.extend(g for g in (abs(first.right - second.left), abs(first.bottom - second.top)) if g > 0)
    return statistics.median(gaps) if gaps else None


def _spacing_contributors(items: Sequence[LayoutItem], canvas: Size) -> List[LayoutItem]:
    median = _median_gap(items)
    if median is None:
        return []

    def deviation(item: LayoutItem) -> float:
        worst = 0.0
        for other in items:
            if other.id == item.id:
                continue
            for gap in (abs(other.right - item.left), abs(other.bottom - item.top)):
                if gap > 0:
                    worst = max(worst, abs(gap - median))
        return worst

    return sorted(items, key=lambda item: (-deviation(item), item.id))


def _hierarchy_contributors(items: Sequence[LayoutItem], canvas: Size) -> List[LayoutItem]:
    def mismatch(item: LayoutItem) -> float:
        expected = canvas.area * TIER_AREA_SHARE[item.importance]
        largest = max(item.area, expected)
        return abs(item.area - expected) / largest if largest > 0 else 0.0

    return sorted(items, key=lambda item: (-mismatch(item), item.id))


# --- proposals ---------------------------------------------------------------


def _propose_balance(item, placement, element, items, canvas):
    """Move the element halfway towards the canvas centre."""
    dx = (canvas.width / 2 - item.center_x) / 2
    dy = (canvas.height / 2 - item.center_y) / 2
    if abs(dx) < 1 and abs(dy) < 1:
        return None
    return replace(placement, left=placement.left + dx, top=placement.top + dy)


def _nearest_snap(value: float, candidates: Sequence[float]) -> float | None:
    best = None
    for candidate in candidates:
        diff = candidate - value
        if 0 < abs(diff) <= SNAP_RANGE and (best is None or abs(diff) < abs(best)):
            best = diff
    return best


def _propose_alignment(item, placement, element, items, canvas):
    """Snap the element's left/centre/right and top/middle to the closest neighbouring edge."""
    others = [other for other in items if other.id != item.id]
    if not others:
        return None

    x_references = [o.left for o in others] + [o.center_x for o in others] + [o.right for o in others]
    y_references = [o.top for o in others] + [o.center_y for o in others]
    x_options = [
        shift
        for shift in (_nearest_snap(edge, x_references) for edge in (item.left, item.center_x, item.right))
        if shift is not None
    ]
    y_options = [
        shift
        for shift in (_nearest_snap(edge, y_references) for edge in (item.top, item.center_y))
        if shift is not None
    ]

    dx = min(x_options, key=abs) if x_options else 0.0
    dy = min(y_options, key=abs) if y_options else 0.0
    if dx == 0 and dy == 0:
        return None
    return replace(placement, left=placement.left + dx, top=placement.top + dy)


def _propose_spacing(item, placement, element, items, canvas):
    """Reset the gap to the nearest left (or upper) neighbour to the median gap."""
    median = _median_gap(items)
    if median is None:
        return None
    others = [other for other in items if other.id != item.id]

    left_neighbours = [o for o in others if o.right <= item.left]
    if left_neighbours:
        neighbour = max(left_neighbours, key=lambda o: (o.right, o.id))
        return replace(placement, left=neighbour.right + median)

    upper_neighbours = [o for o in others if o.bottom <= item.top]
    if upper_neighbours:
        neighbour = max(upper_neighbours, key=lambda o: (o.bottom, o.id))
        return replace(placement, top=neighbour.bottom + median)
    return None


def _propose_hierarchy(item, placement, element, items, canvas):
    """Scale the element halfway towards its tier's target area, keeping its centre."""
    expected = canvas.area * TIER_AREA_SHARE[item.importance]
    if item.area <= 0 or expected <= 0:
        return None
    full = math.sqrt(expected / item.area)
    step = 1 + (full - 1) / 2
    if abs(step - 1) < 0.01:
        return None
    new_width = item.width * step
    new_height = item.height * step
    return replace(
        placement,
        scale_x=placement.scale_x * step,
        scale_y=placement.scale_y * step,
        left=item.center_x - new_width / 2,
        top=item.center_y - new_height / 2,
    )


PASSES: List[tuple[str, str, Callable, Proposer, str]] = [
    ("balance", "visual_balance", _balance_contributors, _propose_balance, "Shifted towards the canvas centre to rebalance visual weight"),
    ("alignment", "alignment", _alignment_contributors, _propose_alignment, "Snapped to a neighbouring edge to improve alignment"),
    ("spacing", "spacing_rhythm", _spacing_contributors, _propose_spacing, "Reset gap to the median spacing for a steadier rhythm"),
    ("hierarchy", "hierarchy_clarity", _hierarchy_contributors, _propose_hierarchy, "Rescaled towards the target size for its importance tier"),
]


class LayoutOptimizer:
    """
    Runs the improvement passes over one candidate.

    Holds the source elements and classifier output so proposals can be
    re-validated against scaling rules and re-scored after every change.
    """

    def __init__(
        self,
        elements: Sequence[CanvasElement],
        analyses: Dict[str, ContentAnalysis],
        threshold: float = 70.0,
        margin: float = DEFAULT_MARGIN,
    ) -> None:
        self._elements = list(elements)
        self._by_id = {element.id: element for element in self._elements}
        self._analyses = analyses
        self._threshold = threshold
        self._margin = margin

    def _score(self, placements: Sequence[Placement], canvas: Size) -> ScoreComponents:
        return score_layout(build_layout_items(self._elements, placements, self._analyses), canvas)

    def _constrain(self, element: CanvasElement, placement: Placement, canvas: Size) -> Placement:
        rules = (self._analyses.get(element.id) or default_analysis(element.id)).scaling_rules
        factor_x = clamp_factor(placement.scale_x / element.scale_x, rules)
        factor_y = clamp_factor(placement.scale_y / element.scale_y, rules)
        if rules.lock_aspect:
            factor_x = factor_y = min(factor_x, factor_y)
        constrained = replace(placement, scale_x=element.scale_x * factor_x, scale_y=element.scale_y * factor_y)
        margin = effective_margin(canvas, self._margin)
        fit_oversized(element, constrained, canvas, margin)
        return clamp_position(element, constrained, canvas, margin)

    def optimize(self, candidate: LayoutCandidate) -> OptimizationResult:
        canvas = candidate.canvas
        working = [replace(p) for p in candidate.placements]
        scores = self._score(working, canvas)
        score_before = scores.total
        improvements: List[str] = []
        adjustments: List[Adjustment] = []

        for pass_name, component, rank, propose, reasoning in PASSES:
            if getattr(scores, component) >= self._threshold:
                continue

            items = build_layout_items(self._elements, working, self._analyses)
            ranked = rank(items, canvas)[: _contributor_count(len(items))]
            pass_before = scores.total
            accepted = 0
            for target in ranked:
                index = next(i for i, p in enumerate(working) if p.id == target.id)
                element = self._by_id[target.id]
                current_items = build_layout_items(self._elements, working, self._analyses)
                current_item = next(i for i in current_items if i.id == target.id)
                proposal = propose(current_item, working[index], element, current_items, canvas)
                if proposal is None:
                    continue

                proposal = self._constrain(element, proposal, canvas)
                trial = list(working)
                trial[index] = proposal
                trial_scores = self._score(trial, canvas)
                if trial_scores.total <= scores.total + _EPSILON:
                    continue

                adjustments.append(
                    Adjustment(
                        element_id=target.id,
                        adjustment_type=pass_name,
                        before=replace(working[index]),
                        after=replace(proposal),
                        reasoning=reasoning,
                    )
                )
                working = trial
                scores = trial_scores
                accepted += 1

            if accepted:
                improvements.append(
                    f"{pass_name.capitalize()} pass adjusted {accepted} element(s): "
                    f"total {pass_before:.1f} -> {scores.total:.1f}"
                )

        logger.info(
            "Optimizer finished: %.1f -> %.1f (%s adjustments)",
            score_before,
            scores.total,
            len(adjustments),
        )
        return OptimizationResult(
            candidate=LayoutCandidate(canvas=canvas, placements=working, scores=scores),
            score_before=score_before,
            score_after=scores.total,
            improvements=improvements,
            adjustments=adjustments,
        )


def optimize_layout(
    candidate: LayoutCandidate,
    elements: Sequence[CanvasElement],
    analyses: Dict[str, ContentAnalysis],
    threshold: float = 70.0,
    margin: float = DEFAULT_MARGIN,
) -> OptimizationResult:
    """Convenience wrapper around LayoutOptimizer for one-off calls."""
    return LayoutOptimizer(elements, analyses, threshold=threshold, margin=margin).optimize(candidate)
