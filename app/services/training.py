"""
Feedback and training pipeline.

Turns rated resize sessions into quality-scored training examples and mines
them for patterns that become guidance text for future prompt variants.
Retraining is read-only with respect to the live variant weights; shifting
traffic is a separate, explicit auto-optimization call.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Sequence, Tuple
from uuid import uuid4

import numpy as np

from app.errors import InvalidInputError, SessionNotFoundError, VariantNotFoundError
from app.models.canvas import CanvasElement, Placement, Size
from app.models.sessions import ResizeSession, TrainingExample, utcnow
from app.services.sessions import SessionStore
from app.services.variants import VariantRegistry

logger = logging.getLogger(__name__)

MAX_FEATURE_ELEMENTS = 100
MAX_TYPE_LENGTH = 50
MAX_FEEDBACK_LENGTH = 2000
HIGH_QUALITY = 0.8
LOW_QUALITY = 0.4
FEATURE_NAMES = (
    "canvas_complexity",
    "aspect_ratio_change",
    "size_change_ratio",
    "element_count",
)


def _validate_rating(rating: object) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidInputError(f"Rating must be an integer between 1 and 5, got {rating!r}")
    return rating


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def extract_features(
    elements: Sequence[CanvasElement],
    source: Size,
    target: Size,
) -> Dict[str, Any]:
    """
    Derive the numeric feature set of one resize request.

    Source dimensions are clamped to at least 1 px; target dimensions must
    be positive. At most 100 elements are described individually.
    """
    if not isinstance(elements, (list, tuple)):
        raise InvalidInputError("Canvas snapshot must be a list of elements")
    for value in (target.width, target.height):
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise InvalidInputError("Target dimensions must be positive numbers")

    source_width = max(1.0, float(source.width))
    source_height = max(1.0, float(source.height))
    source_ratio = source_width / source_height
    target_ratio = target.width / target.height

    element_features = []
    for element in elements[:MAX_FEATURE_ELEMENTS]:
        scale_x = _clamp(element.scale_x, 0.01, 10.0)
        scale_y = _clamp(element.scale_y, 0.01, 10.0)
        element_features.append(
            {
                "type": element.kind.value[:MAX_TYPE_LENGTH],
                "left": max(0.0, element.left),
                "top": max(0.0, element.top),
                "width": max(0.0, element.width * scale_x),
                "height": max(0.0, element.height * scale_y),
            }
        )

    return {
        "canvas_complexity": min(len(elements) / 10.0, 1.0),
        "aspect_ratio_change": _clamp(abs(target_ratio - source_ratio) / max(source_ratio, 0.1), 0.0, 10.0),
        "size_change_ratio": _clamp((target.width * target.height) / (source_width * source_height), 0.01, 100.0),
        "element_count": len(elements),
        "source_width": source_width,
        "source_height": source_height,
        "target_width": float(target.width),
        "target_height": float(target.height),
        "elements": element_features,
    }


def calculate_quality_score(
    rating: int,
    helpful: bool | None = None,
    has_corrections: bool = False,
) -> float:
    """
    Map user feedback to a quality score in [0, 1].

    base = rating / 5, then x1.1 (capped at 1) when marked helpful or x0.9
    when marked unhelpful, then x0.8 (floored at 0.1) when the user had to
    correct the result manually. Ratings outside 1-5 are rejected.
    """
    score = _clamp(_validate_rating(rating) / 5.0, 0.0, 1.0)
    if helpful is True:
        score = min(1.0, score * 1.1)
    elif helpful is False:
        score *= 0.9
    if has_corrections:
        score = max(score * 0.8, 0.1)
    return _clamp(score, 0.0, 1.0)


@dataclass(slots=True)
class PatternSummary:
    count: int = 0
    avg_complexity: float = 0.0
    avg_aspect_ratio_change: float = 0.0
    avg_size_change_ratio: float = 0.0


@dataclass(slots=True)
class PatternAnalysis:
    total_examples: int
    high_quality: PatternSummary
    low_quality: PatternSummary


def _summarize(examples: Sequence[TrainingExample]) -> PatternSummary:
    if not examples:
        return PatternSummary()
    return PatternSummary(
        count=len(examples),
        avg_complexity=float(np.mean([e.input_features.get("canvas_complexity", 0.0) for e in examples])),
        avg_aspect_ratio_change=float(np.mean([e.input_features.get("aspect_ratio_change", 0.0) for e in examples])),
        avg_size_change_ratio=float(np.mean([e.input_features.get("size_change_ratio", 1.0) for e in examples])),
    )


def analyze_patterns(examples: Sequence[TrainingExample]) -> PatternAnalysis:
    """Split examples into high (>= 0.8) and low (<= 0.4) quality and summarise each set."""
    high = [e for e in examples if e.quality_score >= HIGH_QUALITY]
    low = [e for e in examples if e.quality_score <= LOW_QUALITY]
    return PatternAnalysis(
        total_examples=len(examples),
        high_quality=_summarize(high),
        low_quality=_summarize(low),
    )


def generate_improved_prompts(patterns: PatternAnalysis) -> List[str]:
    """Turn pattern summaries into guidance sentences for new prompt variants."""
    guidance: List[str] = []
    high = patterns.high_quality
    low = patterns.low_quality

    if high.count and high.avg_complexity > 0.5:
        guidance.append(
            "For complex canvases, group related elements together and keep a clear visual hierarchy."
        )
    if high.count and high.avg_aspect_ratio_change < 0.3:
        guidance.append(
            "When the aspect ratio barely changes, scale elements proportionally and keep their relative positions."
        )
    if low.count and low.avg_size_change_ratio > 2.0:
        guidance.append(
            "When the canvas grows a lot, avoid empty space: enlarge key elements and spread content across the canvas."
        )
    if low.count and low.avg_aspect_ratio_change > 1.0:
        guidance.append(
            "When the aspect ratio changes drastically, restructure the layout instead of stretching the original arrangement."
        )
    return guidance


def prepare_training_batch(examples: Sequence[TrainingExample]) -> Tuple[np.ndarray, np.ndarray]:
    """Stack examples into a (n, 4) feature matrix and a quality label vector."""
    if not examples:
        return np.zeros((0, len(FEATURE_NAMES))), np.zeros(0)
    features = np.array(
        [[float(e.input_features.get(name, 0.0)) for name in FEATURE_NAMES] for e in examples],
        dtype=float,
    )
    labels = np.array([e.quality_score for e in examples], dtype=float)
    return features, labels


@dataclass(slots=True)
class FeedbackOutcome:
    session: ResizeSession
    training_example: TrainingExample | None = None


@dataclass(slots=True)
class RetrainReport:
    metrics: Dict[str, float] = field(default_factory=dict)
    patterns: PatternAnalysis | None = None
    improved_prompts: List[str] = field(default_factory=list)


class FeedbackService:
    """Applies user feedback to sessions and runs the retraining analysis."""

    def __init__(self, store: SessionStore, registry: VariantRegistry) -> None:
        self._store = store
        self._registry = registry

    async def submit_feedback(
        self,
        session_id: str,
        rating: int,
        helpful: bool | None = None,
        feedback_text: str | None = None,
        manual_corrections: List[Placement] | None = None,
    ) -> FeedbackOutcome:
        """
        Record feedback on a session.

        Updates the session, folds the rating into its variant's metrics the
        first time the session is rated, and creates a training example when
        the rating is decisive (>= 4 or <= 2). Manual corrections, when given,
        become the example's expected output.
        """
        _validate_rating(rating)
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        corrections = list(manual_corrections or [])
        text = feedback_text.strip()[:MAX_FEEDBACK_LENGTH] if feedback_text else None
        first_rating = session.rating is None

        updated = await self._store.update_session(
            session_id,
            rating=rating,
            helpful=helpful,
            feedback_text=text,
            manual_corrections=corrections,
        )

        if first_rating and updated.variant_id:
            try:
                self._registry.record_metrics(updated.variant_id, rating, updated.processing_time_ms)
            except VariantNotFoundError:
                logger.warning("Session %s references unknown variant %s", session_id, updated.variant_id)

        example = None
        if rating >= 4 or rating <= 2:
            example = TrainingExample(
                id=str(uuid4()),
                session_id=session_id,
                input_features=extract_features(updated.elements, updated.source_size, updated.target_size),
                expected_output=corrections or list(updated.placements),
                quality_score=calculate_quality_score(rating, helpful, bool(corrections)),
            )
            await self._store.add_training_example(example)

        logger.info("Feedback recorded for session %s (rating=%s, helpful=%s)", session_id, rating, helpful)
        return FeedbackOutcome(session=updated, training_example=example)

    async def _rated_sessions(self, days_back: int, min_rating: int) -> List[ResizeSession]:
        since = utcnow() - timedelta(days=days_back)
        sessions: List[ResizeSession] = []
        offset = 0
        page_size = 500
        while True:
            page = await self._store.list_sessions(min_rating=min_rating, since=since, limit=page_size, offset=offset)
            sessions.extend(page)
            if len(page) < page_size:
                return sessions
            offset += page_size

    async def retrain(self, days_back: int = 30, min_rating: int = 1) -> RetrainReport:
        """
        Analyse rated sessions from the last `days_back` days.

        Each rated session is scored with calculate_quality_score, the
        resulting examples are split into high/low quality patterns, and
        guidance text is generated. Variant weights are not touched.
        """
        if isinstance(days_back, bool) or not isinstance(days_back, int) or days_back <= 0:
            raise InvalidInputError("days_back must be a positive integer")
        _validate_rating(min_rating)

        sessions = await self._rated_sessions(days_back, min_rating)
        examples = [
            TrainingExample(
                id=session.id,
                session_id=session.id,
                input_features=extract_features(session.elements, session.source_size, session.target_size),
                expected_output=session.manual_corrections or session.placements,
                quality_score=calculate_quality_score(
                    session.rating, session.helpful, bool(session.manual_corrections)
                ),
            )
            for session in sessions
        ]

        features, labels = prepare_training_batch(examples)
        helpful_votes = [s.helpful for s in sessions if s.helpful is not None]
        metrics = {
            "sessions_analyzed": float(len(sessions)),
            "avg_rating": float(np.mean([s.rating for s in sessions])) if sessions else 0.0,
            "avg_quality": float(labels.mean()) if labels.size else 0.0,
            "helpful_rate": sum(helpful_votes) / len(helpful_votes) if helpful_votes else 0.0,
            "fallback_rate": sum(1 for s in sessions if s.used_fallback) / len(sessions) if sessions else 0.0,
            "feature_dimensions": float(features.shape[1]),
        }

        patterns = analyze_patterns(examples)
        improved = generate_improved_prompts(patterns)
        logger.info(
            "Retrain over %s sessions: %s high-quality, %s low-quality, %s suggestions",
            len(sessions),
            patterns.high_quality.count,
            patterns.low_quality.count,
            len(improved),
        )
        return RetrainReport(metrics=metrics, patterns=patterns, improved_prompts=improved)
