"""
Activity feed and comment inbox.

The activity feed is the task history seen across tasks, newest first, with
a per-user read flag (TaskHistoryRead). The inbox groups the caller's unread
comments by task. Both follow the task access rule: a stakeholder sees
entries for tasks assigned to them in their own country, plus anything they
did themselves.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import and_, exists, or_, select

from uat_tracker.core.exceptions import NotFoundError
from uat_tracker.models import db
from uat_tracker.models.history import ACTION_COMMENT_ADDED, TaskHistory, TaskHistoryRead
from uat_tracker.models.task import Comment, CommentRead, Task
from uat_tracker.services import task_service
from uat_tracker.services.access import Actor
from uat_tracker.services.status_mapping import to_label
from uat_tracker.utils.helpers import isoformat_utc

logger = logging.getLogger(__name__)

ACTIVITY_PAGE_SIZE = 50
MARK_ALL_LIMIT = 200
INBOX_SCAN_LIMIT = 200


def _visible_tasks(actor: Actor):
    return and_(Task.assignee_id == actor.id, Task.country_code == actor.country_code)


def _scoped_history(actor: Actor, *columns):
    query = select(*columns) if columns else select(TaskHistory)
    if actor.is_admin:
        return query
    return (
        query.outerjoin(Task, Task.id == TaskHistory.task_id)
        .where(or_(TaskHistory.actor_id == actor.id, _visible_tasks(actor)))
    )


def _unread_history_ids(actor: Actor, history_ids) -> list[int]:
    if not history_ids:
        return []
    already = set(db.session.execute(
        select(TaskHistoryRead.history_id)
        .where(TaskHistoryRead.user_id == actor.id, TaskHistoryRead.history_id.in_(history_ids))
    ).scalars())
    return [hid for hid in history_ids if hid not in already]


# ═══════════════════════════════════════════════════════════════════════════
# Activity feed
# ═══════════════════════════════════════════════════════════════════════════


def list_activity(actor: Actor, limit: int = ACTIVITY_PAGE_SIZE) -> list[dict]:
    """Newest history entries in the caller's scope, each with ``is_read``."""
    rows = db.session.execute(
        _scoped_history(actor)
        .order_by(TaskHistory.created_at.desc(), TaskHistory.id.desc())
        .limit(limit)
    ).scalars().all()
    unread = set(_unread_history_ids(actor, [r.id for r in rows]))
    items = []
    for row in rows:
        item = row.to_dict()
        item["is_read"] = row.id not in unread
        items.append(item)
    return items


def mark_activity_read(actor: Actor, history_id: int | None = None, mark_all: bool = False) -> int:
    """Mark one entry, or the newest entries in scope, as read. Returns rows written."""
    now = datetime.now(timezone.utc)
    if mark_all:
        ids = db.session.execute(
            _scoped_history(actor, TaskHistory.id)
            .order_by(TaskHistory.created_at.desc(), TaskHistory.id.desc())
            .limit(MARK_ALL_LIMIT)
        ).scalars().all()
        fresh = _unread_history_ids(actor, list(ids))
        for hid in fresh:
            db.session.add(TaskHistoryRead(history_id=hid, user_id=actor.id, read_at=now))
        db.session.commit()
        return len(fresh)

    visible = db.session.execute(
        _scoped_history(actor, TaskHistory.id).where(TaskHistory.id == history_id)
    ).scalar()
    if visible is None:
        raise NotFoundError(resource="Activity", resource_id=history_id)
    marker = db.session.execute(
        select(TaskHistoryRead)
        .where(TaskHistoryRead.history_id == history_id, TaskHistoryRead.user_id == actor.id)
    ).scalar()
    if marker is None:
        db.session.add(TaskHistoryRead(history_id=history_id, user_id=actor.id, read_at=now))
    else:
        marker.read_at = now
    db.session.commit()
    return 1


# ═══════════════════════════════════════════════════════════════════════════
# Comment inbox
# ═══════════════════════════════════════════════════════════════════════════


def _unread_comments(actor: Actor, *columns):
    read_exists = exists().where(and_(
        CommentRead.comment_id == Comment.id,
        CommentRead.user_id == actor.id,
    ))
    query = (
        select(*(columns or (Comment, Task)))
        .select_from(Comment)
        .join(Task, Task.id == Comment.task_id)
        .where(~read_exists)
        .where(or_(Comment.author_id.is_(None), Comment.author_id != actor.id))
    )
    if not actor.is_admin:
        query = query.where(_visible_tasks(actor))
    return query


def list_inbox(actor: Actor) -> list[dict]:
    """Unread comments by others, one row per task, most recent first."""
    rows = db.session.execute(
        _unread_comments(actor)
        .order_by(Comment.created_at.desc(), Comment.id.desc())
        .limit(INBOX_SCAN_LIMIT)
    ).all()

    groups: dict[int, dict] = {}
    for comment, task in rows:
        group = groups.get(task.id)
        if group is None:
            author = comment.author.display_name if comment.author else "Unknown"
            group = groups[task.id] = {
                "task_id": task.id,
                "task_title": task.title,
                "country_code": task.country_code,
                "status": task.status,
                "status_label": to_label(task.status),
                "assignee_id": task.assignee_id,
                "unread_count": 0,
                "latest_message": f"{author}: {comment.body}",
                "latest_at": isoformat_utc(comment.created_at),
                "latest_step_order": comment.step_order,
                "latest_comment_id": comment.id,
            }
        group["unread_count"] += 1
    return list(groups.values())


def mark_inbox_read(actor: Actor, task_id: int | None = None, mark_all: bool = False) -> int:
    """Mark other users' comments read, with their COMMENT_ADDED activity entries.

    ``task_id`` goes through the normal access check; ``mark_all`` covers
    every task the caller can see. Returns the number of comments marked.
    """
    if mark_all:
        scope = select(Task.id)
        if not actor.is_admin:
            scope = scope.where(_visible_tasks(actor))
        task_ids = list(db.session.execute(scope).scalars())
    else:
        task_ids = [task_service.get_task(task_id, actor).id]
    if not task_ids:
        return 0

    now = datetime.now(timezone.utc)
    comment_ids = db.session.execute(
        _unread_comments(actor, Comment.id).where(Comment.task_id.in_(task_ids))
    ).scalars().all()
    for cid in comment_ids:
        db.session.add(CommentRead(comment_id=cid, user_id=actor.id, read_at=now))

    activity_ids = db.session.execute(
        select(TaskHistory.id)
        .where(TaskHistory.task_id.in_(task_ids), TaskHistory.action == ACTION_COMMENT_ADDED)
    ).scalars().all()
    for hid in _unread_history_ids(actor, list(activity_ids)):
        db.session.add(TaskHistoryRead(history_id=hid, user_id=actor.id, read_at=now))

    db.session.commit()
    logger.info(
        "Inbox marked read: %d comment(s) on %d task(s)", len(comment_ids), len(task_ids),
        extra={"actor_id": actor.id, "event_type": "INBOX_READ"},
    )
    return len(comment_ids)
