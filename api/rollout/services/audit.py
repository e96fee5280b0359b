import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from rollout.models import Feature

logger = logging.getLogger(__name__)


def record_audit(db: Session, feature_key: str, actor: str, action: str, before_state: Optional[dict], after_state: Optional[dict]):
    db.execute(
        text(
            """INSERT INTO audits (feature_key, actor, action, before_state, after_state)
            VALUES (:feature_key, :actor, :action, :before_state, :after_state)"""
        ),
        {
            "feature_key": feature_key,
            "actor": actor,
            "action": action,
            "before_state": before_state and json.dumps(before_state),
            "after_state": after_state and json.dumps(after_state),
        },
    )


def _row_to_event(row) -> dict:
    return {
        "id": row[0],
        "feature": row[1],
        "actor": row[2],
        "action": row[3],
        "before": json.loads(row[4]) if row[4] else None,
        "after": json.loads(row[5]) if row[5] else None,
        "created_at": row[6],
    }


class AuditLog:
    """Observer that keeps a change history per feature in SQL."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._context: ContextVar[Dict[str, Any]] = ContextVar(f"audit_context_{id(self)}", default={})

    @property
    def actor(self) -> str:
        return self._context.get().get("actor") or "anonymous"

    @contextmanager
    def with_context(self, **context):
        token = self._context.set({**self._context.get(), **context})
        try:
            yield
        finally:
            self._context.reset(token)

    def __call__(self, event: str, before: Feature, after: Feature):
        self._write(after.name, event, before.to_dict(), after.to_dict())

    def record_delete(self, name: str):
        self._write(name, "delete", None, None)

    def _write(self, name: str, action: str, before: Optional[dict], after: Optional[dict]):
        db = self.session_factory()
        try:
            record_audit(db, name, self.actor, action, before_state=before, after_state=after)
            db.commit()
        finally:
            db.close()
        logger.debug("audited %s of %s by %s", action, name, self.actor)

    def events(self, name: str, limit: int = 50) -> List[dict]:
        db = self.session_factory()
        try:
            rs = db.execute(
                text(
                    """SELECT id, feature_key, actor, action, before_state, after_state, created_at
                    FROM audits WHERE feature_key=:k ORDER BY id DESC LIMIT :limit"""
                ),
                {"k": name, "limit": limit},
            )
            return [_row_to_event(r) for r in rs.fetchall()]
        finally:
            db.close()

    def last_event(self, name: str) -> Optional[dict]:
        events = self.events(name, limit=1)
        return events[0] if events else None
