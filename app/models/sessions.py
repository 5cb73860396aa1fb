from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from app.api.v1.schemas import SessionStatus
from app.models.canvas import CanvasElement, Placement, Size


def utcnow() -> datetime:
    """Return an explicit, timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ResizeSession:
    """
    Persisted record of a single resize operation.

    Created once the orchestrator reaches its terminal state (whether the
    model or the fallback planner produced the placements) and updated only
    when user feedback arrives.
    """

    id: str
    user_id: str
    source_size: Size
    target_size: Size
    # Snapshot of the source elements as received.
    elements: List[CanvasElement]
    placements: List[Placement]
    status: SessionStatus = SessionStatus.PENDING
    processing_time_ms: float = 0.0
    project_id: str | None = None
    # Prompt variant used for the model call (None if no variant was drawn).
    variant_id: str | None = None
    used_fallback: bool = False
    # Weighted aesthetic total of the returned placements.
    score: float | None = None
    # Feedback fields, populated by the feedback pipeline.
    rating: int | None = None
    helpful: bool | None = None
    feedback_text: str | None = None
    manual_corrections: List[Placement] = field(default_factory=list)
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class TrainingExample:
    """Quality-scored (input features, output placements) pair."""

    id: str
    session_id: str
    input_features: Dict[str, Any]
    expected_output: List[Placement]
    # Quality in [0, 1]; see training.calculate_quality_score.
    quality_score: float
    validated: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class VariantMetrics:
    """Running outcome totals. Replaced as a whole on every update, never edited in place."""

    total_uses: int = 0
    avg_rating: float = 0.0
    success_count: int = 0
    # Percentage (0-100) of ratings >= 4.
    success_rate: float = 0.0
    avg_processing_time_ms: float = 0.0

    @property
    def performance(self) -> float:
        return self.avg_rating * self.success_rate


@dataclass(slots=True)
class PromptVariant:
    """
    Named instruction template sent to the vision model.

    `weight` is an integer traffic share; the registry keeps the weights of
    active variants summing to exactly 100.
    """

    id: str
    name: str
    template: str
    active: bool = True
    weight: int = 0
    metrics: VariantMetrics = field(default_factory=VariantMetrics)
    created_at: datetime = field(default_factory=utcnow)
