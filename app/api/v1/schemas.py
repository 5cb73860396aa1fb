from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Lifecycle states for a resize session."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CanvasSize(BaseModel):
    """Canvas dimensions in pixels."""

    width: float = Field(..., gt=0, description="Canvas width in pixels.")
    height: float = Field(..., gt=0, description="Canvas height in pixels.")


class CanvasElementIn(BaseModel):
    """One element as reported by the canvas host."""

    id: str = Field(..., min_length=1, max_length=200, description="Stable element identifier.")
    type: str | None = Field(
        default=None,
        description="Raw host type tag, e.g. 'textbox', 'image', 'rect', 'path'.",
    )
    left: float = Field(..., description="Left edge of the unscaled bounding box.")
    top: float = Field(..., description="Top edge of the unscaled bounding box.")
    width: float = Field(..., gt=0, description="Unscaled width in pixels.")
    height: float = Field(..., gt=0, description="Unscaled height in pixels.")
    scale_x: float = Field(default=1.0, gt=0, description="Horizontal scale factor.")
    scale_y: float = Field(default=1.0, gt=0, description="Vertical scale factor.")
    text: str | None = Field(default=None, description="Text content for text elements.")
    fill: str | None = Field(default=None, description="Fill colour (CSS notation).")
    stroke: str | None = Field(default=None, description="Stroke colour (CSS notation).")
    font_size: float | None = Field(default=None, gt=0, description="Font size for text elements.")
    font_weight: str | None = Field(default=None, description="Font weight, e.g. 'bold' or '700'.")


class PlacementModel(BaseModel):
    """Position and scale for one element."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., min_length=1, description="Element identifier.")
    left: float = Field(..., description="New left edge.")
    top: float = Field(..., description="New top edge.")
    scale_x: float = Field(..., gt=0, description="New horizontal scale factor.")
    scale_y: float = Field(..., gt=0, description="New vertical scale factor.")


class ResizeRequest(BaseModel):
    """Request body for a layout resize."""

    current_size: CanvasSize = Field(..., description="Size the elements were laid out for.")
    target_size: CanvasSize = Field(..., description="Size to lay the elements out for.")
    elements: List[CanvasElementIn] = Field(default_factory=list, description="Canvas elements to place.")
    user_id: str | None = Field(default=None, description="Caller identity used for sticky A/B assignment.")
    project_id: str | None = Field(default=None, description="Optional project the canvas belongs to.")
    canvas_image_b64: str | None = Field(
        default=None,
        description="Optional base64-encoded screenshot of the current canvas for the vision model.",
    )
    optimize: bool = Field(
        default=False,
        description="Run the layout optimizer on the result before returning it.",
    )


class ScoreBreakdown(BaseModel):
    """Aesthetic sub-scores and weighted total, all in [0, 100]."""

    visual_balance: float
    hierarchy_clarity: float
    spacing_rhythm: float
    alignment: float
    proximity_grouping: float
    contrast_balance: float
    total: float


class OverflowReportModel(BaseModel):
    """How far the proposed placements spilled past the canvas safe area before correction."""

    direction: str = Field(default="none", description="none, horizontal, vertical or both.")
    severity: str = Field(default="none", description="none, minor, moderate or severe.")
    affected_ids: List[str] = Field(default_factory=list, description="Elements that were pulled back inside.")
    max_overflow_px: float = 0.0
    overflow_area_ratio: float = 0.0
    recommended_actions: List[str] = Field(default_factory=list)


class ResizeResponse(BaseModel):
    """Placements for every element plus how they were produced."""

    placements: List[PlacementModel] = Field(default_factory=list)
    used_fallback: bool = Field(..., description="True when the deterministic planner produced the placements.")
    score: ScoreBreakdown
    session_id: str | None = Field(
        default=None,
        description="Stored session id; null if the session could not be persisted.",
    )
    variant_id: str | None = Field(default=None, description="Prompt variant assigned to the caller.")
    session_error: str | None = Field(default=None, description="Persistence error, if any.")
    fallback_reason: str | None = Field(default=None, description="Why the model result was not used.")
    rationale: str | None = Field(default=None, description="Model-provided explanation, when available.")
    suggestions: List[str] = Field(default_factory=list, description="Advice for weak sub-scores.")
    optimization_notes: List[str] = Field(default_factory=list)
    overflow: OverflowReportModel = Field(default_factory=OverflowReportModel)
    processing_time_ms: float


class SessionSummary(BaseModel):
    """Lightweight view of a session suitable for listings."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: SessionStatus
    user_id: str
    variant_id: str | None = None
    used_fallback: bool
    score: float | None = None
    rating: int | None = None
    created_at: str = Field(..., description="Creation timestamp in ISO 8601 format (UTC).")


class SessionDetail(SessionSummary):
    """Full view of a single session."""

    project_id: str | None = None
    source_size: CanvasSize
    target_size: CanvasSize
    placements: List[PlacementModel] = Field(default_factory=list)
    processing_time_ms: float
    helpful: bool | None = None
    feedback_text: str | None = None
    manual_corrections: List[PlacementModel] = Field(default_factory=list)
    error_message: str | None = None
    updated_at: str = Field(..., description="Last modification timestamp in ISO 8601 format (UTC).")


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="User rating from 1 (poor) to 5 (great).")
    helpful: bool | None = Field(default=None, description="Whether the resize was helpful.")
    feedback_text: str | None = Field(default=None, max_length=2000)
    manual_corrections: List[PlacementModel] = Field(
        default_factory=list,
        description="Placements the user ended up applying instead.",
    )


class FeedbackResponse(BaseModel):
    session: SessionDetail
    training_example_created: bool
    quality_score: float | None = Field(
        default=None,
        description="Quality score of the created training example, if any.",
    )


class RetrainRequest(BaseModel):
    days_back: int = Field(default=30, ge=1, le=365, description="Look-back window in days.")
    min_rating: int = Field(default=1, ge=1, le=5, description="Ignore sessions rated below this.")


class PatternSummaryModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    count: int
    avg_complexity: float
    avg_aspect_ratio_change: float
    avg_size_change_ratio: float


class PatternAnalysisModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_examples: int
    high_quality: PatternSummaryModel
    low_quality: PatternSummaryModel


class RetrainResponse(BaseModel):
    metrics: Dict[str, float] = Field(default_factory=dict)
    patterns: PatternAnalysisModel
    improved_prompts: List[str] = Field(default_factory=list)


class VariantMetricsModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_uses: int
    avg_rating: float
    success_rate: float = Field(..., description="Percentage of ratings >= 4.")
    avg_processing_time_ms: float


class VariantModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    active: bool
    weight: int = Field(..., ge=0, le=100, description="Traffic share in percent.")
    metrics: VariantMetricsModel


class VariantCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(default="", max_length=200)
    template: str = Field(..., min_length=1, description="Prompt template with {placeholders}.")


class WeightsResponse(BaseModel):
    weights: Dict[str, int] = Field(default_factory=dict)


class SignificanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    variant_a: str
    variant_b: str
    significant: bool
    z_score: float
    confidence: int
    winner: str | None = None
    reason: str = ""
