"""
Prompt variant selection (A/B testing).

Keeps the registry of instruction templates sent to the vision model,
assigns users to variants with sticky weighted-random draws, records
per-variant outcome metrics and rebalances traffic towards the best
performer. All state lives on a VariantRegistry instance so tests can build
isolated registries; the app uses the instance from get_variant_registry().
"""

from __future__ import annotations

import json
import logging
import math
import random
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Sequence

from app.errors import InvalidInputError, VariantNotFoundError
from app.models.canvas import CanvasElement, Size
from app.models.sessions import PromptVariant, VariantMetrics

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"
MAX_USER_ID_LENGTH = 100
MIN_USES_FOR_OPTIMIZATION = 10
MIN_USES_FOR_SIGNIFICANCE = 30
BEST_VARIANT_WEIGHT = 70.0
MIN_VARIANT_WEIGHT = 5.0
Z_CRITICAL = 1.96

_PLACEMENT_FORMAT = """{
  "placements": [
    {"id": "object_id", "left": number, "top": number, "scaleX": number, "scaleY": number}
  ]
}"""

ORIGINAL_TEMPLATE = (
    "You are an expert designer. Look at the canvas image and reposition every object for the new size.\n\n"
    "Current canvas size: {currentWidth}x{currentHeight}\n"
    "New canvas size: {newWidth}x{newHeight}\n\n"
    "Objects to reposition: {objectsData}\n\n"
    "Return JSON in exactly this format:\n" + _PLACEMENT_FORMAT + "\n\n"
    "Rules:\n"
    "- Keep the visual hierarchy and balance\n"
    "- Keep every object inside the canvas\n"
    "- Scale proportionally when needed"
)

ENHANCED_TEMPLATE = (
    "You are a senior designer specialising in responsive layouts. Reposition all objects on the canvas "
    "for the best visual impact at the new size.\n\n"
    "CANVAS CHANGE: {currentWidth}x{currentHeight} -> {newWidth}x{newHeight} (aspect ratio {aspectRatio})\n\n"
    "OBJECTS: {objectsData}\n\n"
    "PRINCIPLES:\n"
    "1. Visual hierarchy: keep the importance order of elements\n"
    "2. White space: leave breathing room around elements\n"
    "3. Alignment: line elements up on shared edges\n"
    "4. Proximity: keep related elements together\n\n"
    "CONSTRAINTS:\n"
    "- Every object stays at least 20px inside the canvas edges\n"
    "- Use scaleX equal to scaleY unless stretching is clearly better\n"
    "- Text must remain readable (at least 12px)\n\n"
    "Return JSON:\n" + _PLACEMENT_FORMAT
)


def default_variants() -> List[PromptVariant]:
    return [
        PromptVariant(id="original", name="Original Prompt", template=ORIGINAL_TEMPLATE, weight=50),
        PromptVariant(id="enhanced", name="Enhanced Prompt v1", template=ENHANCED_TEMPLATE, weight=50),
    ]


def sanitize_user_id(user_id: object) -> str:
    """Limit to 100 characters, keep only [A-Za-z0-9_-]; empty becomes 'anonymous'."""
    if not isinstance(user_id, str):
        return ANONYMOUS_USER
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "", user_id[:MAX_USER_ID_LENGTH])
    return cleaned or ANONYMOUS_USER


def normalize_weights(raw: Dict[str, float]) -> Dict[str, int]:
    """
    Scale non-negative weights to integers summing to exactly 100.

    Uses the largest-remainder method; ties on the remainder go to the
    earlier key. An all-zero input is split evenly.
    """
    if not raw:
        return {}
    total = sum(max(0.0, value) for value in raw.values())
    if total <= 0:
        raw = {key: 1.0 for key in raw}
        total = float(len(raw))

    exact = {key: max(0.0, value) * 100.0 / total for key, value in raw.items()}
    floors = {key: int(math.floor(value)) for key, value in exact.items()}
    shortfall = 100 - sum(floors.values())
    order = sorted(exact, key=lambda key: -(exact[key] - floors[key]))
    for key in order[:shortfall]:
        floors[key] += 1
    return floors


def _normal_cdf(value: float) -> float:
    return 0.5 * (1.0 + math.erf(value / math.sqrt(2.0)))


@dataclass(slots=True, frozen=True)
class SignificanceResult:
    variant_a: str
    variant_b: str
    significant: bool
    z_score: float
    confidence: int
    winner: str | None = None
    reason: str = ""


class VariantRegistry:
    """
    Thread-safe, in-memory registry of prompt variants.

    The registry lock guards membership, weights and the assignment map;
    metrics updates additionally hold a per-variant lock so concurrent
    feedback for the same variant is applied one at a time. Each update
    swaps in a new VariantMetrics, so readers never see half-applied totals.
    """

    def __init__(
        self,
        variants: Sequence[PromptVariant] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._rng = rng or random.Random()
        self._variants: Dict[str, PromptVariant] = {}
        self._metric_locks: Dict[str, threading.Lock] = {}
        self._assignments: Dict[str, str] = {}

        for variant in variants if variants is not None else default_variants():
            self._variants[variant.id] = variant
            self._metric_locks[variant.id] = threading.Lock()
        self._rebalance({v.id: float(v.weight) for v in self._variants.values() if v.active})

    # --- lookup ----------------------------------------------------------

    def get(self, variant_id: str) -> PromptVariant:
        with self._lock:
            variant = self._variants.get(variant_id)
        if variant is None:
            raise VariantNotFoundError(variant_id)
        return variant

    def list_variants(self) -> List[PromptVariant]:
        with self._lock:
            return list(self._variants.values())

    def active_weights(self) -> Dict[str, int]:
        with self._lock:
            return {v.id: v.weight for v in self._variants.values() if v.active}

    def _rebalance(self, raw: Dict[str, float]) -> None:
        normalized = normalize_weights(raw)
        for variant_id, weight in normalized.items():
            self._variants[variant_id].weight = weight

    # --- assignment ------------------------------------------------------

    def _draw(self) -> PromptVariant | None:
        candidates = [v for v in self._variants.values() if v.active and v.weight > 0]
        if not candidates:
            return None
        total = sum(v.weight for v in candidates)
        threshold = self._rng.random() * total
        cumulative = 0
        for variant in candidates:
            cumulative += variant.weight
            if threshold <= cumulative:
                return variant
        return candidates[-1]

    def assign(self, user_id: object) -> PromptVariant | None:
        """
        Return the sticky variant for `user_id`, drawing one on first sight.

        Returns None when no active variant exists. A user whose variant was
        deactivated is re-drawn on the next call.
        """
        key = sanitize_user_id(user_id)
        with self._lock:
            existing = self._assignments.get(key)
            if existing is not None and self._variants[existing].active:
                return self._variants[existing]

            chosen = self._draw()
            if chosen is None:
                logger.warning("No active prompt variants; %s gets no assignment", key)
                return None
            self._assignments[key] = chosen.id
            logger.debug("Assigned user %s to variant %s", key, chosen.id)
            return chosen

    def assignment_for(self, user_id: object) -> str | None:
        with self._lock:
            return self._assignments.get(sanitize_user_id(user_id))

    # --- metrics ---------------------------------------------------------

    def record_metrics(self, variant_id: str, rating: int, processing_time_ms: float) -> PromptVariant:
        """
        Fold one rated outcome into a variant's running metrics.

        Raises InvalidInputError for a rating outside 1-5 or a negative
        processing time, and VariantNotFoundError for an unknown id. Nothing
        is mutated when validation fails.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInputError(f"Rating must be an integer between 1 and 5, got {rating!r}")
        if (
            isinstance(processing_time_ms, bool)
            or not isinstance(processing_time_ms, (int, float))
            or not math.isfinite(processing_time_ms)
            or processing_time_ms < 0
        ):
            raise InvalidInputError(f"Processing time must be a non-negative number, got {processing_time_ms!r}")

        variant = self.get(variant_id)
        with self._metric_locks[variant_id]:
            current = variant.metrics
            previous = current.total_uses
            total = previous + 1
            success_count = current.success_count + (1 if rating >= 4 else 0)
            metrics = VariantMetrics(
                total_uses=total,
                avg_rating=(current.avg_rating * previous + rating) / total,
                success_count=success_count,
                success_rate=success_count / total * 100.0,
                avg_processing_time_ms=(current.avg_processing_time_ms * previous + processing_time_ms) / total,
            )
            # Readers see either the old or the new totals, never a mix.
            variant.metrics = metrics

        logger.info(
            "Variant %s: %s uses, avg rating %.2f, success rate %.1f%%",
            variant_id,
            metrics.total_uses,
            metrics.avg_rating,
            metrics.success_rate,
        )
        return variant

    # --- registry management ---------------------------------------------

    def add_variant(self, variant_id: str, name: str, template: str) -> PromptVariant:
        """Register a new active variant and split traffic evenly across all active variants."""
        if not variant_id or not template:
            raise InvalidInputError("Variant id and template are required")
        with self._lock:
            if variant_id in self._variants:
                raise InvalidInputError(f"Variant {variant_id!r} already exists")
            variant = PromptVariant(id=variant_id, name=name or variant_id, template=template)
            self._variants[variant_id] = variant
            self._metric_locks[variant_id] = threading.Lock()
            self._rebalance({v.id: 1.0 for v in self._variants.values() if v.active})
            logger.info("Added prompt variant %s; weights now %s", variant_id, self.active_weights())
            return variant

    def deactivate_variant(self, variant_id: str) -> PromptVariant:
        """Stop sending traffic to a variant and renormalise the others."""
        with self._lock:
            variant = self.get(variant_id)
            variant.active = False
            variant.weight = 0
            self._rebalance({v.id: float(v.weight) for v in self._variants.values() if v.active})
            logger.info("Deactivated prompt variant %s; weights now %s", variant_id, self.active_weights())
            return variant

    def auto_optimize_weights(self) -> Dict[str, int]:
        """
        Shift traffic towards the best-performing variant.

        Among active variants with more than 10 uses, the best by
        avg_rating * success_rate gets 70; every other active variant gets a
        share of the remaining 30 proportional to its performance (at least
        5). Weights are then renormalised to sum to exactly 100. Without any
        eligible variant the weights are left unchanged.
        """
        with self._lock:
            active = [v for v in self._variants.values() if v.active]
            metrics = {v.id: v.metrics for v in active}
            eligible = [v for v in active if metrics[v.id].total_uses > MIN_USES_FOR_OPTIMIZATION]
            if not eligible:
                logger.info("Not enough data to optimize variant weights")
                return self.active_weights()

            best = sorted(eligible, key=lambda v: (-metrics[v.id].performance, v.id))[0]
            others = [v for v in active if v.id != best.id]
            raw: Dict[str, float] = {best.id: BEST_VARIANT_WEIGHT if others else 100.0}
            remaining = 100.0 - BEST_VARIANT_WEIGHT
            performance_sum = sum(metrics[v.id].performance for v in others)
            for variant in others:
                if performance_sum > 0:
                    share = remaining * metrics[variant.id].performance / performance_sum
                else:
                    share = remaining / len(others)
                raw[variant.id] = max(MIN_VARIANT_WEIGHT, share)

            self._rebalance(raw)
            weights = self.active_weights()
            logger.info("Optimized variant weights (best=%s): %s", best.id, weights)
            return weights

    # --- reporting -------------------------------------------------------

    def performance_comparison(self) -> List[PromptVariant]:
        """All variants, best performer first."""
        with self._lock:
            return sorted(self._variants.values(), key=lambda v: (-v.metrics.performance, v.id))

    def calculate_significance(self, variant_a: str, variant_b: str) -> SignificanceResult:
        """
        Two-proportion z-test on the success rates of two variants.

        Needs at least 30 uses for each variant; otherwise the result is
        reported as not significant with zero confidence.
        """
        first = self.get(variant_a).metrics
        second = self.get(variant_b).metrics
        n1, n2 = first.total_uses, second.total_uses
        if n1 < MIN_USES_FOR_SIGNIFICANCE or n2 < MIN_USES_FOR_SIGNIFICANCE:
            return SignificanceResult(
                variant_a=variant_a,
                variant_b=variant_b,
                significant=False,
                z_score=0.0,
                confidence=0,
                reason=f"Need at least {MIN_USES_FOR_SIGNIFICANCE} uses per variant",
            )

        p1 = first.success_count / n1
        p2 = second.success_count / n2
        pooled = (first.success_count + second.success_count) / (n1 + n2)
        standard_error = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        z_score = (p1 - p2) / standard_error if standard_error > 0 else 0.0
        significant = abs(z_score) > Z_CRITICAL
        confidence = min(99, round((1 - 2 * (1 - _normal_cdf(abs(z_score)))) * 100))
        winner = None
        if significant:
            winner = variant_a if p1 > p2 else variant_b
        return SignificanceResult(
            variant_a=variant_a,
            variant_b=variant_b,
            significant=significant,
            z_score=z_score,
            confidence=confidence,
            winner=winner,
            reason="significant" if significant else "difference within noise",
        )

    def render_prompt(
        self,
        variant_id: str,
        current: Size,
        target: Size,
        elements: Sequence[CanvasElement],
    ) -> str:
        """Fill a variant template's {placeholders} for one resize request."""
        variant = self.get(variant_id)
        objects = [
            {
                "id": element.id,
                "type": element.kind.value,
                "left": round(element.left, 2),
                "top": round(element.top, 2),
                "width": round(element.width, 2),
                "height": round(element.height, 2),
                "scaleX": element.scale_x,
                "scaleY": element.scale_y,
                **({"text": element.text[:100]} if element.text else {}),
            }
            for element in elements
        ]
        replacements = {
            "{currentWidth}": f"{current.width:g}",
            "{currentHeight}": f"{current.height:g}",
            "{newWidth}": f"{target.width:g}",
            "{newHeight}": f"{target.height:g}",
            "{aspectRatio}": f"{current.aspect_ratio:.2f} -> {target.aspect_ratio:.2f}",
            "{objectsData}": json.dumps(objects),
        }
        prompt = variant.template
        for placeholder, value in replacements.items():
            prompt = prompt.replace(placeholder, value)
        return prompt


_default_registry = VariantRegistry()


def get_variant_registry() -> VariantRegistry:
    """
    Return the process-wide variant registry.

    Routes resolve it through FastAPI dependencies so tests can override it
    with an isolated instance.
    """
    return _default_registry
