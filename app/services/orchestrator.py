"""
Resize orchestration.

Drives one resize request through

    REQUESTING -> (MODEL_SUCCEEDED | MODEL_FAILED) -> SCORING -> DONE

The vision model call produces an explicit ModelSucceeded / ModelFailed
outcome rather than an exception, and a ModelFailed outcome is routed to the
deterministic fallback planner. DONE always carries a placement for every
element.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Sequence, Union
from uuid import uuid4

from app.api.v1.schemas import SessionStatus
from app.config import Settings, get_settings
from app.errors import InvalidInputError, SessionStorageError, VisionModelError
from app.models.canvas import (
    CanvasElement,
    ContentAnalysis,
    LayoutCandidate,
    OverflowReport,
    Placement,
    ScoreComponents,
    Size,
)
from app.models.sessions import ResizeSession
from app.services.classifier import build_contextual_prompt, classify_elements, is_well_formed
from app.services.fallback import analyze_overflow, constrain_placements, plan_fallback
from app.services.optimizer import LayoutOptimizer
from app.services.preview import render_canvas_preview
from app.services.scoring import build_layout_items, score_layout, suggest_improvements
from app.services.sessions import SessionStore
from app.services.variants import VariantRegistry, sanitize_user_id
from app.services.vision_client import ModelProposal, VisionClient

logger = logging.getLogger(__name__)


class ResizeState(str, Enum):
    REQUESTING = "requesting"
    MODEL_SUCCEEDED = "model_succeeded"
    MODEL_FAILED = "model_failed"
    SCORING = "scoring"
    DONE = "done"


@dataclass(slots=True)
class ModelSucceeded:
    placements: List[Placement]
    rationale: str | None = None


@dataclass(slots=True)
class ModelFailed:
    reason: str
    # True when the failure was an unexpected error rather than a known
    # model condition (unavailable, timeout, malformed reply).
    unexpected: bool = False


ModelOutcome = Union[ModelSucceeded, ModelFailed]


@dataclass(slots=True)
class ResizeResult:
    """Terminal output of one resize call."""

    placements: List[Placement]
    used_fallback: bool
    score: ScoreComponents
    variant_id: str | None = None
    session_id: str | None = None
    session_error: str | None = None
    fallback_reason: str | None = None
    rationale: str | None = None
    suggestions: List[str] = field(default_factory=list)
    optimization_notes: List[str] = field(default_factory=list)
    # Overflow of the placements before they were forced onto the canvas.
    overflow: OverflowReport = field(default_factory=OverflowReport)
    processing_time_ms: float = 0.0
    # States visited, in order; useful for debugging and tests.
    states: List[ResizeState] = field(default_factory=list)


def _validate_size(size: Size, label: str) -> None:
    for value in (size.width, size.height):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            raise InvalidInputError(f"{label} dimensions must be positive numbers")


def validate_request(current: Size, target: Size, elements: Sequence[CanvasElement]) -> None:
    """Reject the request before any work or state change happens."""
    _validate_size(current, "Current canvas")
    _validate_size(target, "Target canvas")
    seen = set()
    for element in elements:
        if not is_well_formed(element):
            raise InvalidInputError(f"Malformed canvas element: {getattr(element, 'id', None)!r}")
        if element.id in seen:
            raise InvalidInputError(f"Duplicate element id: {element.id!r}")
        seen.add(element.id)


class ResizeOrchestrator:
    """
    Coordinates classification, the model call, fallback and scoring.

    Collaborators are injected so tests can supply stub clients and isolated
    stores and registries.
    """

    def __init__(
        self,
        vision_client: VisionClient,
        registry: VariantRegistry,
        store: SessionStore,
        settings: Settings | None = None,
    ) -> None:
        self._client = vision_client
        self._registry = registry
        self._store = store
        self._settings = settings or get_settings()

    def _call_model(
        self,
        image_bytes: bytes | None,
        elements: List[CanvasElement],
        current: Size,
        target: Size,
        instructions: str,
    ) -> ModelProposal:
        # Runs in a worker thread; rendering the preview is CPU bound too.
        image = image_bytes or render_canvas_preview(elements, current)
        return self._client.propose_placements(image, elements, current, target, instructions)

    async def _request_model(
        self,
        elements: Sequence[CanvasElement],
        current: Size,
        target: Size,
        instructions: str,
        image_bytes: bytes | None,
    ) -> ModelOutcome:
        if not self._client.is_available():
            return ModelFailed("vision model not configured")

        try:
            proposal = await asyncio.wait_for(
                asyncio.to_thread(
                    self._call_model,
                    image_bytes,
                    list(elements),
                    current,
                    target,
                    instructions,
                ),
                timeout=self._settings.model_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ModelFailed(f"vision model timed out after {self._settings.model_timeout_seconds}s")
        except VisionModelError as exc:
            return ModelFailed(str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error from vision model")
            return ModelFailed(f"unexpected error: {exc}", unexpected=True)

        proposed_ids = {placement.id for placement in proposal.placements}
        missing = [element.id for element in elements if element.id not in proposed_ids]
        if missing:
            return ModelFailed(f"model response missing placements for {', '.join(missing[:5])}")
        return ModelSucceeded(placements=proposal.placements, rationale=proposal.rationale)

    def _instructions(
        self,
        variant_id: str | None,
        analyses: Dict[str, ContentAnalysis],
        elements: Sequence[CanvasElement],
        current: Size,
        target: Size,
    ) -> str:
        guidance = build_contextual_prompt(analyses, current, target)
        if variant_id is None:
            return guidance
        return self._registry.render_prompt(variant_id, current, target, elements) + "\n\n" + guidance

    async def resize(
        self,
        current: Size,
        target: Size,
        elements: Sequence[CanvasElement],
        user_id: str | None = None,
        project_id: str | None = None,
        image_bytes: bytes | None = None,
        optimize: bool = False,
    ) -> ResizeResult:
        """
        Resize a canvas layout from `current` to `target`.

        Raises InvalidInputError for bad input. Any model failure is handled
        by the fallback planner; a session storage failure is reported on
        the result (`session_error`) instead of losing the placements.
        """
        validate_request(current, target, elements)
        started = time.perf_counter()
        states = [ResizeState.REQUESTING]
        margin = self._settings.layout_margin

        analyses = classify_elements(elements)
        variant = self._registry.assign(user_id)
        variant_id = variant.id if variant else None

        if elements:
            instructions = self._instructions(variant_id, analyses, elements, current, target)
            outcome = await self._request_model(elements, current, target, instructions, image_bytes)
        else:
            outcome = ModelSucceeded(placements=[])

        if isinstance(outcome, ModelSucceeded):
            states.append(ResizeState.MODEL_SUCCEEDED)
            overflow = analyze_overflow(outcome.placements, elements, target, margin)
            if overflow.has_overflow:
                logger.warning(
                    "Model placements overflow the canvas (%s, %s): correcting %s",
                    overflow.severity.value,
                    overflow.direction.value,
                    ", ".join(overflow.affected_ids[:5]),
                )
            placements = constrain_placements(outcome.placements, elements, analyses, target, margin)
            rationale = outcome.rationale
            fallback_reason = None
        else:
            states.append(ResizeState.MODEL_FAILED)
            logger.warning("Falling back to deterministic planner: %s", outcome.reason)
            placements = plan_fallback(elements, analyses, current, target, margin)
            overflow = analyze_overflow(placements, elements, target, margin)
            rationale = None
            fallback_reason = outcome.reason

        states.append(ResizeState.SCORING)
        scores = score_layout(build_layout_items(elements, placements, analyses), target)
        notes: List[str] = []
        if optimize and placements:
            optimizer = LayoutOptimizer(elements, analyses, threshold=self._settings.optimizer_threshold, margin=margin)
            result = optimizer.optimize(LayoutCandidate(canvas=target, placements=placements, scores=scores))
            placements = result.candidate.placements
            scores = result.candidate.scores
            notes = result.improvements
        suggestions = suggest_improvements(scores, self._settings.optimizer_threshold)

        processing_time_ms = (time.perf_counter() - started) * 1000.0
        unexpected = isinstance(outcome, ModelFailed) and outcome.unexpected
        session = ResizeSession(
            id=str(uuid4()),
            user_id=sanitize_user_id(user_id),
            source_size=current,
            target_size=target,
            elements=list(elements),
            placements=placements,
            status=SessionStatus.FAILED if unexpected else SessionStatus.COMPLETED,
            processing_time_ms=processing_time_ms,
            project_id=project_id,
            variant_id=variant_id,
            used_fallback=fallback_reason is not None,
            score=scores.total,
            error_message=fallback_reason if unexpected else None,
        )
        session_id: str | None = session.id
        session_error = None
        try:
            await self._store.create_session(session)
        except SessionStorageError as exc:
            logger.error("Resize succeeded but session could not be stored: %s", exc)
            session_id = None
            session_error = str(exc)

        states.append(ResizeState.DONE)
        logger.info(
            "Resize %sx%s -> %sx%s done in %.1fms (fallback=%s, score=%.1f)",
            current.width,
            current.height,
            target.width,
            target.height,
            processing_time_ms,
            fallback_reason is not None,
            scores.total,
        )
        return ResizeResult(
            placements=placements,
            used_fallback=fallback_reason is not None,
            score=scores,
            variant_id=variant_id,
            session_id=session_id,
            session_error=session_error,
            fallback_reason=fallback_reason,
            rationale=rationale,
            suggestions=suggestions,
            optimization_notes=notes,
            processing_time_ms=processing_time_ms,
            overflow=overflow,
            states=states,
        )
