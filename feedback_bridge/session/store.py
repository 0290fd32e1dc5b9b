"""JSON-file persistence for sessions."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from feedback_bridge.session.models import Session, SessionStatus


class SessionStore:
    """Persist sessions to a single JSON document.

    Sessions are never deleted; expiry only flips ``status``.
    """

    def __init__(self, path: Path | None = None):
        self.path = path
        self._sessions: dict[str, Session] = {}
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read sessions from {self.path}: {e}")
            return
        items = raw.get("sessions", []) if isinstance(raw, dict) else []
        for item in items:
            try:
                session = Session.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping invalid session record: {e}")
                continue
            self._sessions[session.session_id] = session

    def _save(self) -> None:
        if self.path is None:
            return
        payload: dict[str, Any] = {
            "version": 1,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "sessions": [s.model_dump(mode="json") for s in self._sessions.values()],
        }
        try:
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write sessions to {self.path}: {e}")

    def add_session(self, session: Session) -> Session:
        self._sessions[session.session_id] = session
        self._save()
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def update_session(self, session_id: str, **changes: Any) -> Session | None:
        """Apply ``changes`` and bump ``last_activity``; returns the new record."""
        current = self._sessions.get(session_id)
        if current is None:
            return None
        changes.setdefault("last_activity", datetime.now(timezone.utc))
        updated = current.model_copy(update=changes)
        self._sessions[session_id] = updated
        self._save()
        return updated

    def get_active_sessions(self) -> list[Session]:
        now = datetime.now(timezone.utc)
        return [s for s in self._sessions.values() if s.is_active and not s.is_stale(now)]

    def get_user_sessions(self, user_id: str) -> list[Session]:
        return [s for s in self.get_active_sessions() if s.user_id == user_id]

    def expire_old_sessions(self) -> int:
        """Flag sessions idle for more than 24h as expired; returns how many changed."""
        now = datetime.now(timezone.utc)
        changed = 0
        for session_id, session in list(self._sessions.items()):
            if session.is_active and session.is_stale(now):
                self._sessions[session_id] = session.model_copy(
                    update={"status": SessionStatus.EXPIRED}
                )
                changed += 1
        if changed:
            self._save()
        return changed
