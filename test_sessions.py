"""Tests for the JSON-backed session store."""

import asyncio
import json
import logging
from datetime import timedelta

import pytest

from app.api.v1.schemas import SessionStatus
from app.errors import SessionNotFoundError, SessionStorageError
from app.models.canvas import CanvasElement, ElementKind, Placement, Size
from app.models.sessions import ResizeSession, TrainingExample, utcnow
from app.services.sessions import SessionStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _session(session_id, created_at=None, rating=None):
    session = ResizeSession(
        id=session_id,
        user_id="user-1",
        source_size=Size(800, 600),
        target_size=Size(400, 400),
        elements=[CanvasElement(id="a", kind=ElementKind.SHAPE, left=0, top=0, width=10, height=10)],
        placements=[Placement(id="a", left=20, top=20, scale_x=0.5, scale_y=0.5)],
        status=SessionStatus.COMPLETED,
        rating=rating,
    )
    if created_at is not None:
        session.created_at = created_at
    return session


def test_create_and_get_round_trip(tmp_path):
    """A created session is readable and written to disk as JSON."""
    store = SessionStore(tmp_path)
    asyncio.run(store.create_session(_session("s1")))

    loaded = asyncio.run(store.get_session("s1"))
    assert loaded is not None
    assert loaded.placements[0].scale_x == 0.5

    on_disk = json.loads((tmp_path / "sessions" / "s1.json").read_text(encoding="utf-8"))
    assert on_disk["status"] == "completed"
    assert on_disk["target_size"] == {"width": 400, "height": 400}
    assert asyncio.run(store.get_session("missing")) is None
    logger.info("✓ Session persisted")


def test_update_session_changes_fields(tmp_path):
    store = SessionStore(tmp_path)
    asyncio.run(store.create_session(_session("s1")))
    updated = asyncio.run(store.update_session("s1", rating=5, helpful=True))

    assert updated.rating == 5
    assert updated.helpful is True
    assert updated.updated_at >= updated.created_at
    assert asyncio.run(store.get_session("s1")).rating == 5

    with pytest.raises(SessionNotFoundError):
        asyncio.run(store.update_session("missing", rating=1))
    logger.info("✓ Session updated")


def test_failed_write_leaves_store_unchanged(tmp_path):
    """Storage failures surface as SessionStorageError and nothing becomes visible."""
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    store = SessionStore(blocker)

    with pytest.raises(SessionStorageError):
        asyncio.run(store.create_session(_session("s1")))
    assert asyncio.run(store.get_session("s1")) is None
    logger.info("✓ Failed write is not visible")


def test_list_sessions_filters_and_pages(tmp_path):
    """Newest first, unrated excluded by min_rating, since and paging applied."""
    store = SessionStore(tmp_path)
    now = utcnow()
    asyncio.run(store.create_session(_session("old", now - timedelta(days=40), rating=5)))
    asyncio.run(store.create_session(_session("mid", now - timedelta(days=2), rating=2)))
    asyncio.run(store.create_session(_session("new", now - timedelta(hours=1), rating=4)))
    asyncio.run(store.create_session(_session("unrated", now)))

    assert [s.id for s in asyncio.run(store.list_sessions())] == ["unrated", "new", "mid", "old"]
    assert [s.id for s in asyncio.run(store.list_sessions(min_rating=3))] == ["new", "old"]
    recent = asyncio.run(store.list_sessions(min_rating=1, since=now - timedelta(days=30)))
    assert [s.id for s in recent] == ["new", "mid"]
    assert [s.id for s in asyncio.run(store.list_sessions(limit=2, offset=1))] == ["new", "mid"]
    logger.info("✓ Session listing")


def test_training_examples_are_unique(tmp_path):
    store = SessionStore(tmp_path)
    example = TrainingExample(
        id="ex-1",
        session_id="s1",
        input_features={"element_count": 1},
        expected_output=[Placement(id="a", left=0, top=0, scale_x=1, scale_y=1)],
        quality_score=0.9,
    )
    asyncio.run(store.add_training_example(example))
    with pytest.raises(SessionStorageError):
        asyncio.run(store.add_training_example(example))

    assert [e.id for e in asyncio.run(store.list_training_examples("s1"))] == ["ex-1"]
    assert asyncio.run(store.list_training_examples("other")) == []
    assert (tmp_path / "training" / "ex-1.json").exists()
    logger.info("✓ Training examples stored once")
