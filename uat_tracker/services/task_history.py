"""
Task history recorder.

``record()`` appends one immutable TaskHistory row inside a SAVEPOINT so a
failing insert cannot poison the caller's transaction. A failed append is
logged and swallowed: the primary mutation (a user's test result, a
sign-off) always wins over the secondary audit trail.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from uat_tracker.core.exceptions import AuditWriteFailure
from uat_tracker.models import db
from uat_tracker.models.history import TaskHistory

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 40


def _dump(value):
    if value is None:
        return None
    return json.dumps(value, default=str)


def _build_entry(task_id, actor_id, action, message, before, after, metadata) -> TaskHistory:
    return TaskHistory(
        task_id=task_id,
        actor_id=actor_id,
        action=action,
        message=message,
        before_json=_dump(before),
        after_json=_dump(after),
        metadata_json=_dump(metadata),
    )


def record(
    task_id: int,
    actor_id: int | None,
    action: str,
    message: str,
    before: dict | None = None,
    after: dict | None = None,
    metadata: dict | None = None,
) -> TaskHistory | None:
    """Append one history entry; returns None if the write failed.

    The caller's pending changes are flushed first, outside the guard, so a
    failing primary write raises here instead of being logged as an audit
    failure. Only the history insert itself is swallowed.
    """
    db.session.flush()
    try:
        with db.session.begin_nested():
            entry = _build_entry(task_id, actor_id, action, message, before, after, metadata)
            db.session.add(entry)
        return entry
    except SQLAlchemyError as exc:
        failure = AuditWriteFailure(task_id, action, exc)
        logger.warning(
            "%s", failure,
            extra={"task_id": task_id, "event_type": "audit_write_failure"},
        )
        return None


def list_history(task_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> list[dict]:
    """Return the most recent history entries for a task, newest first."""
    rows = db.session.execute(
        select(TaskHistory)
        .where(TaskHistory.task_id == task_id)
        .order_by(TaskHistory.created_at.desc(), TaskHistory.id.desc())
        .limit(limit)
    ).scalars().all()
    return [r.to_dict() for r in rows]
