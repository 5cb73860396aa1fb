"""
End-to-end tests for the HTTP API.

Builds the app with create_app() and swaps the store, the variant registry
and the vision client through FastAPI dependency overrides, so no network or
real storage directory is touched.
"""

import base64
import logging
import random
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from app.models.canvas import Placement
from app.services.sessions import SessionStore, get_session_store
from app.services.variants import VariantRegistry, get_variant_registry
from app.services.vision_client import ModelProposal, get_vision_client

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RESIZE_PAYLOAD = {
    "current_size": {"width": 800, "height": 600},
    "target_size": {"width": 1600, "height": 900},
    "user_id": "user-42",
    "elements": [
        {"id": "box", "type": "rect", "left": 100, "top": 100, "width": 100, "height": 100},
        {"id": "title", "type": "textbox", "left": 400, "top": 300, "width": 150, "height": 80, "text": "Title"},
        {"id": "icon", "type": "path", "left": 700, "top": 500, "width": 50, "height": 50},
    ],
}


@pytest.fixture
def vision():
    client = MagicMock()
    client.is_available.return_value = False
    return client


@pytest.fixture
def registry():
    return VariantRegistry(rng=random.Random(9))


@pytest.fixture
def api(tmp_path, vision, registry):
    app = create_app()
    store = SessionStore(tmp_path)
    app.dependency_overrides[get_session_store] = lambda: store
    app.dependency_overrides[get_variant_registry] = lambda: registry
    app.dependency_overrides[get_vision_client] = lambda: vision
    return TestClient(app)


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}
    assert api.get("/api/v1/health").json() == {"status": "ok", "api_version": "v1"}
    logger.info("✓ Health endpoints")


def test_resize_with_fallback(api):
    """Without a configured model the planner answers and a session is stored."""
    response = api.post("/api/v1/resize", json=RESIZE_PAYLOAD)
    assert response.status_code == 200
    body = response.json()

    assert body["used_fallback"] is True
    assert [p["id"] for p in body["placements"]] == ["box", "title", "icon"]
    assert 0 <= body["score"]["total"] <= 100
    assert body["variant_id"] in {"original", "enhanced"}
    assert body["session_id"]

    detail = api.get(f"/api/v1/sessions/{body['session_id']}")
    assert detail.status_code == 200
    assert detail.json()["used_fallback"] is True
    assert detail.json()["target_size"] == {"width": 1600.0, "height": 900.0}
    logger.info("✓ Resize via fallback, session %s", body["session_id"])


def test_resize_with_model(api, vision):
    vision.is_available.return_value = True
    vision.propose_placements.return_value = ModelProposal(
        placements=[
            Placement(id="box", left=100, top=100, scale_x=1.0, scale_y=1.0),
            Placement(id="title", left=700, top=400, scale_x=1.2, scale_y=1.2),
            Placement(id="icon", left=1400, top=700, scale_x=1.0, scale_y=1.0),
        ],
        rationale="Title centred",
    )
    payload = dict(RESIZE_PAYLOAD, canvas_image_b64=base64.b64encode(b"png-bytes").decode())
    body = api.post("/api/v1/resize", json=payload).json()

    assert body["used_fallback"] is False
    assert body["rationale"] == "Title centred"
    assert vision.propose_placements.call_args.args[0] == b"png-bytes"
    assert body["overflow"] == {
        "direction": "none",
        "severity": "none",
        "affected_ids": [],
        "max_overflow_px": 0.0,
        "overflow_area_ratio": 0.0,
        "recommended_actions": [],
    }
    logger.info("✓ Resize via model")


def test_resize_validation_errors(api):
    bad_size = dict(RESIZE_PAYLOAD, target_size={"width": 0, "height": 900})
    assert api.post("/api/v1/resize", json=bad_size).status_code == 422

    duplicate = dict(RESIZE_PAYLOAD, elements=RESIZE_PAYLOAD["elements"] + [RESIZE_PAYLOAD["elements"][0]])
    response = api.post("/api/v1/resize", json=duplicate)
    assert response.status_code == 422
    assert "Duplicate" in response.json()["detail"]

    bad_image = dict(RESIZE_PAYLOAD, canvas_image_b64="***")
    assert api.post("/api/v1/resize", json=bad_image).status_code == 422
    logger.info("✓ Invalid requests rejected with 422")


def test_feedback_flow(api, registry):
    """Rating a session updates it, records variant metrics and creates an example."""
    session_id = api.post("/api/v1/resize", json=RESIZE_PAYLOAD).json()["session_id"]

    response = api.post(
        f"/api/v1/sessions/{session_id}/feedback",
        json={"rating": 5, "helpful": True, "feedback_text": "Looks great"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["session"]["rating"] == 5
    assert body["training_example_created"] is True
    assert body["quality_score"] == 1.0

    variant_id = body["session"]["variant_id"]
    assert registry.get(variant_id).metrics.total_uses == 1

    assert api.post("/api/v1/sessions/missing/feedback", json={"rating": 4}).status_code == 404
    assert api.post(f"/api/v1/sessions/{session_id}/feedback", json={"rating": 7}).status_code == 422
    logger.info("✓ Feedback flow")


def test_list_sessions_filters(api):
    first = api.post("/api/v1/resize", json=RESIZE_PAYLOAD).json()["session_id"]
    api.post("/api/v1/resize", json=RESIZE_PAYLOAD)
    api.post(f"/api/v1/sessions/{first}/feedback", json={"rating": 4})

    assert len(api.get("/api/v1/sessions").json()) == 2
    rated = api.get("/api/v1/sessions", params={"min_rating": 3}).json()
    assert [s["id"] for s in rated] == [first]
    assert api.get("/api/v1/sessions/unknown").status_code == 404


def test_retrain(api):
    session_id = api.post("/api/v1/resize", json=RESIZE_PAYLOAD).json()["session_id"]
    api.post(f"/api/v1/sessions/{session_id}/feedback", json={"rating": 1, "helpful": False})

    body = api.post("/api/v1/training/retrain", json={"days_back": 7}).json()
    assert body["metrics"]["sessions_analyzed"] == 1
    assert body["metrics"]["fallback_rate"] == 1.0
    assert body["patterns"]["low_quality"]["count"] == 1
    logger.info("✓ Retrain report")


def test_variant_management(api):
    listed = api.get("/api/v1/variants").json()
    assert {v["id"] for v in listed} == {"original", "enhanced"}

    created = api.post(
        "/api/v1/variants",
        json={"id": "compact", "name": "Compact", "template": "Resize {objectsData}"},
    )
    assert created.status_code == 201
    assert api.post("/api/v1/variants", json={"id": "compact", "template": "x"}).status_code == 409

    weights = api.post("/api/v1/variants/optimize").json()["weights"]
    assert sum(weights.values()) == 100

    removed = api.delete("/api/v1/variants/compact")
    assert removed.status_code == 200
    assert removed.json()["active"] is False
    assert api.delete("/api/v1/variants/nope").status_code == 404

    significance = api.get("/api/v1/variants/significance", params={"a": "original", "b": "enhanced"}).json()
    assert significance["significant"] is False
    assert api.get("/api/v1/variants/significance", params={"a": "original", "b": "nope"}).status_code == 404
    logger.info("✓ Variant endpoints")


def test_resize_reports_model_overflow(api, vision):
    """Placements the model pushed off the canvas come back corrected with an overflow report."""
    vision.is_available.return_value = True
    vision.propose_placements.return_value = ModelProposal(
        placements=[
            Placement(id="box", left=100, top=100, scale_x=1.0, scale_y=1.0),
            Placement(id="title", left=700, top=400, scale_x=1.0, scale_y=1.0),
            Placement(id="icon", left=1900, top=700, scale_x=1.0, scale_y=1.0),
        ],
    )
    body = api.post("/api/v1/resize", json=RESIZE_PAYLOAD).json()

    assert body["used_fallback"] is False
    assert body["overflow"]["affected_ids"] == ["icon"]
    assert body["overflow"]["direction"] == "horizontal"
    assert body["overflow"]["severity"] == "severe"
    icon = next(p for p in body["placements"] if p["id"] == "icon")
    assert icon["left"] + 50 * icon["scale_x"] <= 1600 - 20 + 1e-6
    logger.info("✓ Overflow surfaced in the resize response")
