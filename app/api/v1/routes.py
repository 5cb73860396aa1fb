import base64
import binascii
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.v1.schemas import (
    CanvasElementIn,
    CanvasSize,
    FeedbackRequest,
    FeedbackResponse,
    OverflowReportModel,
    PatternAnalysisModel,
    PlacementModel,
    ResizeRequest,
    ResizeResponse,
    RetrainRequest,
    RetrainResponse,
    ScoreBreakdown,
    SessionDetail,
    SessionSummary,
    SignificanceResponse,
    VariantCreate,
    VariantModel,
    WeightsResponse,
)
from app.errors import (
    InvalidInputError,
    SessionNotFoundError,
    SessionStorageError,
    VariantNotFoundError,
)
from app.models.canvas import CanvasElement, ElementKind, Placement, Size
from app.models.sessions import ResizeSession
from app.services.orchestrator import ResizeOrchestrator
from app.services.sessions import SessionStore, get_session_store
from app.services.training import FeedbackService
from app.services.variants import VariantRegistry, get_variant_registry
from app.services.vision_client import VisionClient, get_vision_client

router = APIRouter(prefix="/api/v1")


def get_orchestrator(
    store: SessionStore = Depends(get_session_store),
    registry: VariantRegistry = Depends(get_variant_registry),
    client: VisionClient = Depends(get_vision_client),
) -> ResizeOrchestrator:
    return ResizeOrchestrator(vision_client=client, registry=registry, store=store)


def get_feedback_service(
    store: SessionStore = Depends(get_session_store),
    registry: VariantRegistry = Depends(get_variant_registry),
) -> FeedbackService:
    return FeedbackService(store=store, registry=registry)


def _to_element(item: CanvasElementIn) -> CanvasElement:
    return CanvasElement(
        id=item.id,
        kind=ElementKind.from_type_tag(item.type),
        left=item.left,
        top=item.top,
        width=item.width,
        height=item.height,
        scale_x=item.scale_x,
        scale_y=item.scale_y,
        text=item.text,
        fill=item.fill,
        stroke=item.stroke,
        type_tag=item.type,
        font_size=item.font_size,
        font_weight=item.font_weight,
    )


def _to_placement(item: PlacementModel) -> Placement:
    return Placement(id=item.id, left=item.left, top=item.top, scale_x=item.scale_x, scale_y=item.scale_y)


def _session_summary(session: ResizeSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        status=session.status,
        user_id=session.user_id,
        variant_id=session.variant_id,
        used_fallback=session.used_fallback,
        score=session.score,
        rating=session.rating,
        created_at=session.created_at.isoformat(),
    )


def _session_detail(session: ResizeSession) -> SessionDetail:
    return SessionDetail(
        **_session_summary(session).model_dump(),
        project_id=session.project_id,
        source_size=CanvasSize(width=session.source_size.width, height=session.source_size.height),
        target_size=CanvasSize(width=session.target_size.width, height=session.target_size.height),
        placements=[PlacementModel.model_validate(p) for p in session.placements],
        processing_time_ms=session.processing_time_ms,
        helpful=session.helpful,
        feedback_text=session.feedback_text,
        manual_corrections=[PlacementModel.model_validate(p) for p in session.manual_corrections],
        error_message=session.error_message,
        updated_at=session.updated_at.isoformat(),
    )


@router.get("/health", tags=["health"])
async def health_check() -> dict:
    """API v1 health check endpoint."""
    return {"status": "ok", "api_version": "v1"}


@router.post(
    "/resize",
    response_model=ResizeResponse,
    tags=["resize"],
    summary="Compute placements for a new canvas size",
)
async def resize_canvas(
    payload: ResizeRequest,
    orchestrator: ResizeOrchestrator = Depends(get_orchestrator),
) -> ResizeResponse:
    """
    Lay the given elements out for `target_size`.

    The vision model is tried first with the caller's assigned prompt
    variant; if it is unavailable, slow or returns something unusable, the
    deterministic fallback planner is used. Either way every element gets a
    placement. A failure to store the session is reported in
    `session_error` and does not fail the request.
    """
    image_bytes = None
    if payload.canvas_image_b64:
        try:
            image_bytes = base64.b64decode(payload.canvas_image_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="`canvas_image_b64` is not valid base64.",
            ) from exc

    try:
        result = await orchestrator.resize(
            current=Size(payload.current_size.width, payload.current_size.height),
            target=Size(payload.target_size.width, payload.target_size.height),
            elements=[_to_element(item) for item in payload.elements],
            user_id=payload.user_id,
            project_id=payload.project_id,
            image_bytes=image_bytes,
            optimize=payload.optimize,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return ResizeResponse(
        placements=[PlacementModel.model_validate(p) for p in result.placements],
        used_fallback=result.used_fallback,
        score=ScoreBreakdown(**result.score.as_dict()),
        session_id=result.session_id,
        variant_id=result.variant_id,
        session_error=result.session_error,
        fallback_reason=result.fallback_reason,
        rationale=result.rationale,
        suggestions=result.suggestions,
        optimization_notes=result.optimization_notes,
        overflow=OverflowReportModel(
            direction=result.overflow.direction.value,
            severity=result.overflow.severity.value,
            affected_ids=result.overflow.affected_ids,
            max_overflow_px=result.overflow.max_overflow_px,
            overflow_area_ratio=result.overflow.overflow_area_ratio,
            recommended_actions=result.overflow.recommended_actions,
        ),
        processing_time_ms=result.processing_time_ms,
    )


@router.get(
    "/sessions",
    response_model=list[SessionSummary],
    tags=["sessions"],
    summary="List resize sessions",
)
async def list_sessions(
    min_rating: int | None = Query(default=None, ge=1, le=5),
    since: datetime | None = Query(default=None, description="Only sessions created at or after this time."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: SessionStore = Depends(get_session_store),
) -> list[SessionSummary]:
    """List sessions newest first. Naive `since` values are taken as UTC."""
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    sessions = await store.list_sessions(min_rating=min_rating, since=since, limit=limit, offset=offset)
    return [_session_summary(session) for session in sessions]


@router.get(
    "/sessions/{session_id}",
    response_model=SessionDetail,
    tags=["sessions"],
    summary="Get a single resize session",
)
async def get_session(session_id: str, store: SessionStore = Depends(get_session_store)) -> SessionDetail:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found.",
        )
    return _session_detail(session)


@router.post(
    "/sessions/{session_id}/feedback",
    response_model=FeedbackResponse,
    tags=["sessions"],
    summary="Rate a resize result",
)
async def submit_feedback(
    session_id: str,
    payload: FeedbackRequest,
    service: FeedbackService = Depends(get_feedback_service),
) -> FeedbackResponse:
    """
    Attach a rating (and optional comments or corrections) to a session.

    Decisive ratings (>= 4 or <= 2) also create a training example.
    """
    try:
        outcome = await service.submit_feedback(
            session_id=session_id,
            rating=payload.rating,
            helpful=payload.helpful,
            feedback_text=payload.feedback_text,
            manual_corrections=[_to_placement(item) for item in payload.manual_corrections],
        )
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found.") from exc
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except SessionStorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist feedback.",
        ) from exc

    example = outcome.training_example
    return FeedbackResponse(
        session=_session_detail(outcome.session),
        training_example_created=example is not None,
        quality_score=example.quality_score if example else None,
    )


@router.post(
    "/training/retrain",
    response_model=RetrainResponse,
    tags=["training"],
    summary="Analyse recent feedback and propose prompt guidance",
)
async def retrain(
    payload: RetrainRequest,
    service: FeedbackService = Depends(get_feedback_service),
) -> RetrainResponse:
    """Read-only analysis: live variant weights are not changed."""
    try:
        report = await service.retrain(days_back=payload.days_back, min_rating=payload.min_rating)
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return RetrainResponse(
        metrics=report.metrics,
        patterns=PatternAnalysisModel.model_validate(report.patterns),
        improved_prompts=report.improved_prompts,
    )


@router.get(
    "/variants",
    response_model=list[VariantModel],
    tags=["variants"],
    summary="Compare prompt variant performance",
)
async def list_variants(registry: VariantRegistry = Depends(get_variant_registry)) -> list[VariantModel]:
    """All variants, best performer (avg rating x success rate) first."""
    return [VariantModel.model_validate(v) for v in registry.performance_comparison()]


@router.post(
    "/variants",
    response_model=VariantModel,
    status_code=status.HTTP_201_CREATED,
    tags=["variants"],
    summary="Register a new prompt variant",
)
async def add_variant(
    payload: VariantCreate,
    registry: VariantRegistry = Depends(get_variant_registry),
) -> VariantModel:
    try:
        variant = registry.add_variant(payload.id, payload.name, payload.template)
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return VariantModel.model_validate(variant)


@router.delete(
    "/variants/{variant_id}",
    response_model=VariantModel,
    tags=["variants"],
    summary="Deactivate a prompt variant",
)
async def deactivate_variant(
    variant_id: str,
    registry: VariantRegistry = Depends(get_variant_registry),
) -> VariantModel:
    try:
        variant = registry.deactivate_variant(variant_id)
    except VariantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant not found.") from exc
    return VariantModel.model_validate(variant)


@router.post(
    "/variants/optimize",
    response_model=WeightsResponse,
    tags=["variants"],
    summary="Shift traffic towards the best variant",
)
async def optimize_variants(registry: VariantRegistry = Depends(get_variant_registry)) -> WeightsResponse:
    return WeightsResponse(weights=registry.auto_optimize_weights())


@router.get(
    "/variants/significance",
    response_model=SignificanceResponse,
    tags=["variants"],
    summary="Test whether two variants differ significantly",
)
async def variant_significance(
    a: str = Query(..., description="First variant id."),
    b: str = Query(..., description="Second variant id."),
    registry: VariantRegistry = Depends(get_variant_registry),
) -> SignificanceResponse:
    try:
        result = registry.calculate_significance(a, b)
    except VariantNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Variant not found.") from exc
    return SignificanceResponse.model_validate(result)
