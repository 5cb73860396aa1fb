from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from app.config import get_settings
from app.errors import SessionNotFoundError, SessionStorageError
from app.models.sessions import ResizeSession, TrainingExample, utcnow


logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SessionStore:
    """
    In-memory session and training-example store with JSON files on disk.

    Every record is written to `<base_dir>/sessions/<id>.json` (or
    `<base_dir>/training/<id>.json`) before it becomes visible in memory, so
    a failed write leaves the in-memory view unchanged. This is a minimal
    stand-in for a database and can be swapped without touching callers.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir
        self._sessions: Dict[str, ResizeSession] = {}
        self._examples: Dict[str, TrainingExample] = {}
        self._lock = threading.RLock()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _write(self, folder: str, record_id: str, record: Any) -> None:
        directory = self._base_dir / folder
        path = directory / f"{record_id}.json"
        tmp_path = path.with_suffix(".json.tmp")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(asdict(record), default=_json_default, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError) as exc:
            logger.error("Failed to persist %s record %s: %s", folder, record_id, exc)
            raise SessionStorageError(f"Failed to persist {folder} record {record_id}.") from exc

    async def create_session(self, session: ResizeSession) -> ResizeSession:
        """Persist a new session. Raises SessionStorageError if the write fails."""
        with self._lock:
            self._write("sessions", session.id, session)
            self._sessions[session.id] = session
        logger.info("Stored resize session %s (status=%s)", session.id, session.status.value)
        return session

    async def get_session(self, session_id: str) -> ResizeSession | None:
        """Retrieve a session by its identifier, if it exists."""
        with self._lock:
            return self._sessions.get(session_id)

    async def update_session(self, session_id: str, **changes: Any) -> ResizeSession:
        """
        Apply field changes to a session and persist the result.

        The stored object is replaced only after the write succeeds.
        """
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            updated = replace(current, updated_at=utcnow(), **changes)
            self._write("sessions", session_id, updated)
            self._sessions[session_id] = updated
            return updated

    async def list_sessions(
        self,
        min_rating: int | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ResizeSession]:
        """
        Return sessions, newest first, filtered by rating and creation time.

        `min_rating` excludes unrated sessions. `limit` and `offset` page the
        filtered result.
        """
        with self._lock:
            sessions = list(self._sessions.values())
        if min_rating is not None:
            sessions = [s for s in sessions if s.rating is not None and s.rating >= min_rating]
        if since is not None:
            sessions = [s for s in sessions if s.created_at >= since]
        sessions.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return sessions[offset : offset + max(0, limit)]

    async def add_training_example(self, example: TrainingExample) -> TrainingExample:
        with self._lock:
            if example.id in self._examples:
                raise SessionStorageError(f"Training example {example.id} already exists.")
            self._write("training", example.id, example)
            self._examples[example.id] = example
        logger.info(
            "Stored training example %s for session %s (quality=%.2f)",
            example.id,
            example.session_id,
            example.quality_score,
        )
        return example

    async def list_training_examples(self, session_id: str | None = None) -> List[TrainingExample]:
        with self._lock:
            examples = list(self._examples.values())
        if session_id is not None:
            examples = [e for e in examples if e.session_id == session_id]
        return sorted(examples, key=lambda e: (e.created_at, e.id))


_default_store = SessionStore(base_dir=get_settings().session_storage_dir)


def get_session_store() -> SessionStore:
    """
    Return the process-wide session store instance.

    Abstracted behind a function so routes can resolve it as a dependency
    and tests can inject a store rooted in a temporary directory.
    """
    return _default_store
